"""Payment and subscription reconciliation service"""
