"""
Mercado Pago Integration Models
Database models for storing per-tenant Mercado Pago OAuth tokens
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from .database import Base
from .models import generate_uuid


class MercadoPagoConnection(Base):
    """Store Mercado Pago OAuth tokens for a tenant's seller account"""

    __tablename__ = "mercadopago_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, unique=True)
    provider_user_id = Column(String(100), nullable=True)
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    public_key = Column(String(255), nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
