"""Shared fixtures: in-memory database and small model factories"""

import os
from datetime import datetime, timedelta

from cryptography.fernet import Fernet

# Must be set before payflow.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("MP_CLIENT_ID", "test-client-id")
os.environ.setdefault("MP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("MP_WEBHOOK_URL", "https://api.example.com/webhooks/mercadopago")
os.environ.setdefault("WHATSAPP_RELAY_URL", "https://relay.example.com/hook")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from payflow import models, models_mercadopago, models_whatsapp  # noqa: E402
from payflow.database import Base  # noqa: E402
from payflow.shared.crypto import encrypt_token  # noqa: E402


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def make_tenant(db, **kwargs):
    tenant = models.Tenant(
        name=kwargs.get("name", "Studio Bella"),
        slug=kwargs.get("slug", f"studio-{models.generate_uuid()[:8]}"),
        settings=kwargs.get("settings", {}),
    )
    db.add(tenant)
    db.commit()
    return tenant


def make_customer(db, tenant, **kwargs):
    customer = models.Customer(
        tenant_id=tenant.id,
        name=kwargs.get("name", "Ana Souza"),
        phone=kwargs.get("phone", "11988887777"),
        email=kwargs.get("email", "ana@example.com"),
    )
    db.add(customer)
    db.commit()
    return customer


def make_service(db, tenant, **kwargs):
    service = models.Service(
        tenant_id=tenant.id,
        name=kwargs.get("name", "Haircut"),
        price_cents=kwargs.get("price_cents", 10000),
    )
    db.add(service)
    db.commit()
    return service


def make_booking(db, tenant, customer=None, service=None, **kwargs):
    customer = customer or make_customer(db, tenant)
    service = service or make_service(db, tenant)
    starts_at = kwargs.get("starts_at", datetime(2026, 5, 10, 14, 0))
    booking = models.Booking(
        tenant_id=tenant.id,
        customer_id=customer.id,
        service_id=service.id,
        staff_id=kwargs.get("staff_id", "staff-1"),
        starts_at=starts_at,
        ends_at=kwargs.get("ends_at", starts_at + timedelta(hours=1)),
        status=kwargs.get("status", "pending"),
        created_at=kwargs.get("created_at", datetime.utcnow()),
    )
    db.add(booking)
    db.commit()
    return booking


def make_payment(db, tenant, booking=None, **kwargs):
    payment = models.Payment(
        tenant_id=tenant.id,
        booking_id=booking.id if booking else None,
        customer_package_id=kwargs.get("customer_package_id"),
        amount_cents=kwargs.get("amount_cents", 10000),
        status=kwargs.get("status", "pending"),
        commission_rate=kwargs.get("commission_rate", 0.025),
        external_id=kwargs.get("external_id"),
    )
    db.add(payment)
    db.commit()
    return payment


def connect_mercadopago(db, tenant, **kwargs):
    connection = models_mercadopago.MercadoPagoConnection(
        tenant_id=tenant.id,
        provider_user_id=kwargs.get("provider_user_id", "mp-user-1"),
        access_token=encrypt_token(kwargs.get("access_token", f"APP_USR-{tenant.slug}")),
        refresh_token=encrypt_token(kwargs.get("refresh_token", f"TG-{tenant.slug}")),
        public_key=kwargs.get("public_key", "APP_USR-public"),
        token_expires_at=kwargs.get("token_expires_at", datetime.utcnow() + timedelta(days=90)),
    )
    db.add(connection)
    db.commit()
    return connection


def connect_whatsapp(db, tenant, **kwargs):
    connection = models_whatsapp.WhatsAppConnection(
        tenant_id=tenant.id,
        instance_name=kwargs.get("instance_name", f"instance-{tenant.slug}"),
        whatsapp_number=kwargs.get("whatsapp_number", "5511911112222"),
        whatsapp_connected=kwargs.get("whatsapp_connected", True),
    )
    db.add(connection)
    db.commit()
    return connection


def make_plan(db, tenant, service=None, **kwargs):
    plan = models.SubscriptionPlan(
        tenant_id=tenant.id,
        name=kwargs.get("name", "Monthly Care"),
        price_cents=kwargs.get("price_cents", 9900),
    )
    db.add(plan)
    db.commit()
    if service is not None:
        db.add(
            models.SubscriptionPlanService(
                plan_id=plan.id,
                service_id=service.id,
                sessions_per_cycle=kwargs.get("sessions_per_cycle", 4),
            )
        )
        db.commit()
    return plan


def make_subscription(db, tenant, customer=None, plan=None, **kwargs):
    customer = customer or make_customer(db, tenant)
    plan = plan or make_plan(db, tenant)
    subscription = models.CustomerSubscription(
        tenant_id=tenant.id,
        customer_id=customer.id,
        plan_id=plan.id,
        status=kwargs.get("status", "active"),
        provider_subscription_id=kwargs.get("provider_subscription_id"),
        current_period_start=kwargs.get("current_period_start"),
        current_period_end=kwargs.get("current_period_end"),
        failed_at=kwargs.get("failed_at"),
    )
    db.add(subscription)
    db.commit()
    return subscription
