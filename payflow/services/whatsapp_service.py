"""
WhatsApp Notification Service
Sends tenant notifications through the WhatsApp relay, with optional
deduplication through the notification log
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import PLATFORM_NAME, WHATSAPP_HTTP_TIMEOUT, WHATSAPP_RELAY_URL
from ..database import dialect_insert
from ..models import CustomerSubscription, NotificationLog, Tenant, generate_uuid
from ..models_whatsapp import WhatsAppConnection
from ..shared.validators import format_whatsapp_phone

logger = logging.getLogger(__name__)


def format_brl(cents: int) -> str:
    """Format cents as a BRL amount, e.g. R$ 12.34"""
    return f"R$ {(cents or 0) / 100:.2f}"


def is_duplicate(db: Session, dedup_key: str) -> bool:
    """True if a notification with this key was already dispatched"""
    return (
        db.query(NotificationLog.id).filter(NotificationLog.dedup_key == dedup_key).first()
        is not None
    )


def record_notification(
    db: Session,
    tenant_id: str,
    event_type: str,
    dedup_key: str,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    booking_id: Optional[str] = None,
):
    """Upsert the dedup log row for this key"""
    values = {
        "tenant_id": tenant_id,
        "event_type": event_type,
        "dedup_key": dedup_key,
        "customer_id": customer_id,
        "subscription_id": subscription_id,
        "booking_id": booking_id,
        "sent_at": datetime.utcnow(),
    }
    insert = dialect_insert(db, NotificationLog)
    stmt = insert.values(id=generate_uuid(), **values).on_conflict_do_update(
        index_elements=["dedup_key"],
        set_={"event_type": event_type, "sent_at": values["sent_at"]},
    )
    db.execute(stmt)
    db.commit()


async def _dispatch(url: str, payload: Dict[str, Any]) -> bool:
    async with httpx.AsyncClient(timeout=WHATSAPP_HTTP_TIMEOUT) as client:
        response = await client.post(url, json=payload)
    logger.info(f"📱 WhatsApp {payload.get('type')} sent to {payload.get('phone')}: {response.status_code}")
    return response.is_success


async def send_whatsapp_notification(
    db: Session,
    tenant_id: str,
    phone: str,
    message: str,
    event_type: str,
    dedup_key: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    tenant_slug: Optional[str] = None,
) -> bool:
    """
    Send a WhatsApp message to a customer of the tenant

    Args:
        db: Database session
        tenant_id: Tenant whose WhatsApp instance sends the message
        phone: Recipient phone, any format
        message: Message text
        event_type: Notification type (payment_received, subscription_suspended, ...)
        dedup_key: When given, the message is sent at most once per key
        extra: Context forwarded to the relay (customer_id, subscription_id, booking_id, ...)
        tenant_slug: Tenant slug, looked up when omitted

    Returns:
        True if the relay accepted the message. Never raises.
    """
    extra = extra or {}

    try:
        if dedup_key and is_duplicate(db, dedup_key):
            logger.info(f"⏭️ Skipped duplicate {event_type} notification: {dedup_key}")
            return False

        connection = (
            db.query(WhatsAppConnection)
            .filter(
                WhatsAppConnection.tenant_id == tenant_id,
                WhatsAppConnection.whatsapp_connected.is_(True),
            )
            .first()
        )
        if not connection:
            logger.info(f"ℹ️ No WhatsApp connection for tenant {tenant_id}, skipping {event_type}")
            return False

        if not WHATSAPP_RELAY_URL:
            logger.info("ℹ️ WHATSAPP_RELAY_URL not configured, skipping")
            return False

        if not phone:
            logger.debug(f"No phone number for {event_type} notification")
            return False

        if tenant_slug is None:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
            tenant_slug = tenant.slug if tenant else ""

        formatted_phone = format_whatsapp_phone(phone)
        payload = {
            "type": event_type,
            "phone": formatted_phone,
            "message": message,
            "instance": connection.instance_name,
            "tenant_id": tenant_id,
            "tenant_slug": tenant_slug,
            **extra,
        }

        ok = await _dispatch(WHATSAPP_RELAY_URL, payload)

        if dedup_key:
            record_notification(
                db,
                tenant_id=tenant_id,
                event_type=event_type,
                dedup_key=dedup_key,
                customer_id=extra.get("customer_id"),
                subscription_id=extra.get("subscription_id"),
                booking_id=extra.get("booking_id"),
            )

        return ok

    except Exception as e:
        logger.error(f"❌ Error sending WhatsApp {event_type} notification: {str(e)}")
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.error(f"❌ Rollback failed: {rollback_error}")
        return False


async def send_subscription_notification(
    db: Session,
    subscription: CustomerSubscription,
    event_type: str,
    message: str,
    dedup_key: Optional[str] = None,
) -> bool:
    """Notify the subscriber, building the relay context from the subscription"""
    customer = subscription.customer
    plan = subscription.plan

    if not customer or not customer.phone or not plan:
        logger.info(f"ℹ️ Missing customer/plan data for {event_type} on subscription {subscription.id}")
        return False

    tenant = subscription.tenant or plan.tenant

    return await send_whatsapp_notification(
        db,
        tenant_id=subscription.tenant_id,
        phone=customer.phone,
        message=message,
        event_type=event_type,
        dedup_key=dedup_key,
        tenant_slug=tenant.slug if tenant else "",
        extra={
            "subscription_id": subscription.id,
            "customer_id": subscription.customer_id,
            "customer_name": customer.name,
            "plan_name": plan.name,
            "amount_cents": plan.price_cents,
            "tenant_name": tenant.name if tenant else PLATFORM_NAME,
        },
    )
