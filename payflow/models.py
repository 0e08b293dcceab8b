import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_uuid():
    return str(uuid.uuid4())


# ============================================================================
# TENANT & CATALOG (owned by the CRM side, read here)
# ============================================================================


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, index=True, nullable=False)
    # allow_online_payment, require_prepayment, prepayment_percentage,
    # subscription_grace_hours, cycle_reminders_enabled, cycle_reminder_days
    settings = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class TenantPlan(Base):
    """Platform (SaaS) plan the tenant pays us for; carries the take-rate"""

    __tablename__ = "tenant_plans"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    plan = Column(String(50), nullable=True)
    status = Column(String(50), nullable=False, default="active")  # active, trialing, cancelled
    commission_rate = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(30), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    staff_id = Column(String(36), nullable=True, index=True)
    customer_package_id = Column(String(36), ForeignKey("customer_packages.id"), nullable=True)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    # pending_payment, pending, confirmed, completed, cancelled, expired
    status = Column(String(50), nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant")
    customer = relationship("Customer")
    service = relationship("Service")


class ServicePackage(Base):
    __tablename__ = "service_packages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    services = relationship("PackageService", back_populates="package")


class PackageService(Base):
    __tablename__ = "package_services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    package_id = Column(String(36), ForeignKey("service_packages.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    sessions_count = Column(Integer, nullable=False, default=1)

    package = relationship("ServicePackage", back_populates="services")


class CustomerPackage(Base):
    __tablename__ = "customer_packages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    package_id = Column(String(36), ForeignKey("service_packages.id"), nullable=False)
    sessions_total = Column(Integer, nullable=False, default=0)
    sessions_used = Column(Integer, nullable=False, default=0)
    status = Column(String(50), nullable=False, default="active")
    payment_status = Column(String(50), nullable=False, default="pending")  # pending, confirmed
    purchased_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CustomerPackageService(Base):
    __tablename__ = "customer_package_services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    customer_package_id = Column(
        String(36), ForeignKey("customer_packages.id"), nullable=False, index=True
    )
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    sessions_total = Column(Integer, nullable=False, default=0)
    sessions_used = Column(Integer, nullable=False, default=0)


# ============================================================================
# PAYMENTS, LEDGER & FEES
# ============================================================================


class Payment(Base):
    """
    Local source of truth for one booking/package charge.

    Inserted as pending before the provider is called, so a webhook that beats
    the synchronous response always finds a row.
    """

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    customer_package_id = Column(
        String(36), ForeignKey("customer_packages.id"), nullable=True, index=True
    )
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    provider = Column(String(50), nullable=False, default="mercadopago")
    external_id = Column(String(255), nullable=True, index=True)  # preference id, then payment id
    # pending, paid, failed, cancelled, refund_required, expired
    status = Column(String(50), nullable=False, default="pending")
    checkout_url = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    commission_rate = Column(Float, nullable=True)  # take-rate locked at checkout time
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    booking = relationship("Booking")


class CashEntry(Base):
    """Append-only cash ledger"""

    __tablename__ = "cash_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    booking_id = Column(String(36), nullable=True)
    payment_id = Column(String(36), nullable=True)
    staff_id = Column(String(36), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)  # income, expense
    source = Column(String(50), nullable=True)  # booking, package, subscription, manual
    payment_method = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)  # carries reference tokens, e.g. "booking:<id>"
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, server_default=func.now())


class PlatformFee(Base):
    __tablename__ = "platform_fees"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)
    provider_payment_id = Column(String(255), nullable=True)
    transaction_amount_cents = Column(Integer, nullable=False)
    commission_rate = Column(Float, nullable=False)
    fee_amount_cents = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, default="collected")
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# CUSTOMER SUBSCRIPTIONS
# ============================================================================


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False)
    billing_cycle = Column(String(20), nullable=False, default="monthly")
    active = Column(Boolean, default=True, nullable=False)

    tenant = relationship("Tenant")
    services = relationship("SubscriptionPlanService", back_populates="plan")


class SubscriptionPlanService(Base):
    __tablename__ = "subscription_plan_services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    sessions_per_cycle = Column(Integer, nullable=True)  # None = unlimited

    plan = relationship("SubscriptionPlan", back_populates="services")


class CustomerSubscription(Base):
    __tablename__ = "customer_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False)
    provider_subscription_id = Column(String(255), nullable=True, index=True)  # MP preapproval id
    # pending, active, paused, past_due, suspended, cancelled
    status = Column(String(50), nullable=False, default="pending", index=True)
    checkout_url = Column(Text, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_payment_date = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)  # start of the current failure episode
    started_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant")
    customer = relationship("Customer")
    plan = relationship("SubscriptionPlan")


class SubscriptionUsage(Base):
    __tablename__ = "subscription_usage"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "service_id", "period_start", name="uq_subscription_usage_period"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_id = Column(
        String(36), ForeignKey("customer_subscriptions.id"), nullable=False, index=True
    )
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    sessions_used = Column(Integer, nullable=False, default=0)
    sessions_limit = Column(Integer, nullable=True)
    booking_ids = Column(JSON, default=list, nullable=False)


# ============================================================================
# NOTIFICATION DEDUP LOG
# ============================================================================


class NotificationLog(Base):
    """A row for a dedup_key means the notification was already dispatched"""

    __tablename__ = "notification_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    dedup_key = Column(String(255), nullable=False, unique=True)
    customer_id = Column(String(36), nullable=True)
    subscription_id = Column(String(36), nullable=True)
    booking_id = Column(String(36), nullable=True)
    sent_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, server_default=func.now())
