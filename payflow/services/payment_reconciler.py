"""
Payment Reconciler
Applies Mercado Pago payment state to local payments, bookings, the cash
ledger and platform fees. Safe under redelivery: side effects only run on
the transition into paid.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..database import dialect_insert
from ..models import Booking, CashEntry, CustomerPackage, Payment, PlatformFee, generate_uuid
from .commission import fee_cents, get_commission_rate
from .mp_token import fetch_with_any_token
from .whatsapp_service import format_brl, send_whatsapp_notification

logger = logging.getLogger(__name__)

# Mercado Pago payment status -> local payment status
PAYMENT_STATUS_MAP = {
    "approved": "paid",
    "pending": "pending",
    "in_process": "pending",
    "authorized": "pending",
    "rejected": "failed",
    "cancelled": "cancelled",
    "refunded": "cancelled",
    "charged_back": "cancelled",
}

# Bookings in these states hold their staff/time slot
SLOT_HOLDING_STATUSES = ("confirmed", "pending", "pending_payment", "completed")


def map_payment_status(provider_status: Optional[str]) -> str:
    """Unknown provider statuses are never treated as success"""
    return PAYMENT_STATUS_MAP.get(provider_status or "", "pending")


def resolve_local_payment(db: Session, mp_payment: Dict[str, Any], tenant_id: str) -> Optional[Payment]:
    """
    Resolve the local payment from metadata.payment_id, then external_reference,
    then the latest payment of metadata.booking_id

    Only payments of the tenant whose credential fetched the provider payment
    are considered.
    """
    metadata = mp_payment.get("metadata") or {}
    tenant_payments = db.query(Payment).filter(Payment.tenant_id == tenant_id)

    for candidate in (metadata.get("payment_id"), mp_payment.get("external_reference")):
        if candidate:
            payment = tenant_payments.filter(Payment.id == str(candidate)).first()
            if payment:
                return payment

    booking_id = metadata.get("booking_id")
    if booking_id:
        return (
            tenant_payments.filter(Payment.booking_id == str(booking_id))
            .order_by(Payment.created_at.desc())
            .first()
        )

    return None


async def handle_payment_event(db: Session, provider_payment_id: str) -> Dict[str, Any]:
    """Webhook entry point for `payment` events"""
    mp_payment, token = await fetch_with_any_token(db, provider_payment_id)

    payment = resolve_local_payment(db, mp_payment, token.tenant_id)
    if not payment:
        logger.error(
            f"❌ No local payment of tenant {token.tenant_id} for Mercado Pago payment "
            f"{provider_payment_id} (external_reference={mp_payment.get('external_reference')})"
        )
        raise HTTPException(status_code=404, detail="Payment record not found")

    new_status = await apply_provider_payment(db, payment, mp_payment)
    return {"received": True, "status": new_status}


async def apply_provider_payment(db: Session, payment: Payment, mp_payment: Dict[str, Any]) -> str:
    """
    Write the provider's payment state onto the local row and run the
    paid side effects once. Shared by the webhook and direct charges.

    Returns the resulting local status.
    """
    provider_payment_id = str(mp_payment.get("id") or "")
    previous_status = payment.status
    new_status = map_payment_status(mp_payment.get("status"))

    # refund_required waits for an operator; only a provider reversal overrides it
    if previous_status == "refund_required" and new_status != "cancelled":
        logger.warning(
            f"⚠️ Payment {payment.id} is refund_required, ignoring provider status {mp_payment.get('status')}"
        )
        new_status = "refund_required"

    payment.status = new_status
    if provider_payment_id:
        payment.external_id = provider_payment_id
    payment.updated_at = datetime.utcnow()
    db.commit()

    logger.info(f"💳 Payment {payment.id}: {previous_status} -> {new_status}")

    if previous_status != "paid" and new_status == "paid":
        await _on_payment_paid(db, payment, provider_payment_id)

    return payment.status


async def _on_payment_paid(db: Session, payment: Payment, provider_payment_id: str):
    booking = None
    if payment.booking_id:
        booking = db.query(Booking).filter(Booking.id == payment.booking_id).first()
        if booking:
            db.refresh(booking)

    if booking:
        if booking.status == "expired":
            conflict = find_conflicting_booking(db, booking)
            if conflict:
                payment.status = "refund_required"
                payment.updated_at = datetime.utcnow()
                db.commit()
                logger.warning(
                    f"⚠️ Booking {booking.id} expired and its slot was taken by {conflict.id}; "
                    f"payment {payment.id} requires a refund"
                )
                return

            logger.info(f"♻️ Expired booking {booking.id} restored, slot still free")
            booking.status = "confirmed"
            db.commit()
        else:
            booking.status = "confirmed"
            db.commit()
            logger.info(f"✅ Booking {booking.id} confirmed by payment {payment.id}")
            await _notify_payment_received(db, payment, booking)

    post_payment_ledger_entry(db, payment, provider_payment_id, booking)

    if payment.customer_package_id:
        package = (
            db.query(CustomerPackage).filter(CustomerPackage.id == payment.customer_package_id).first()
        )
        if package and package.payment_status != "confirmed":
            package.payment_status = "confirmed"
            logger.info(f"📦 Customer package {package.id} payment confirmed")

    record_platform_fee(db, payment, provider_payment_id)
    db.commit()


def find_conflicting_booking(db: Session, booking: Booking) -> Optional[Booking]:
    """Another booking for the same staff member overlapping this one's window"""
    return (
        db.query(Booking)
        .filter(
            Booking.tenant_id == booking.tenant_id,
            Booking.staff_id == booking.staff_id,
            Booking.id != booking.id,
            Booking.status.in_(SLOT_HOLDING_STATUSES),
            Booking.starts_at < booking.ends_at,
            Booking.ends_at > booking.starts_at,
        )
        .first()
    )


def post_payment_ledger_entry(
    db: Session, payment: Payment, provider_payment_id: str, booking: Optional[Booking] = None
) -> bool:
    """
    Add the income entry for a paid payment unless the ledger already has it
    Returns True if an entry was created
    """
    if payment.booking_id:
        source = "booking"
        token = f"booking:{payment.booking_id}"
    else:
        source = "package"
        token = f"payment:{payment.id}"

    existing = (
        db.query(CashEntry.id)
        .filter(
            CashEntry.tenant_id == payment.tenant_id,
            CashEntry.source == source,
            CashEntry.notes.contains(token),
        )
        .first()
    )
    if existing:
        logger.info(f"ℹ️ Cash entry already exists for {token}")
        return False

    db.add(
        CashEntry(
            tenant_id=payment.tenant_id,
            booking_id=payment.booking_id,
            payment_id=payment.id,
            staff_id=booking.staff_id if booking else None,
            amount_cents=payment.amount_cents,
            kind="income",
            source=source,
            payment_method="mercadopago",
            notes=f"{token} | MP payment: {provider_payment_id}",
            occurred_at=datetime.utcnow(),
        )
    )
    db.flush()
    logger.info(f"💰 Cash entry created for {token}")
    return True


def record_platform_fee(db: Session, payment: Payment, provider_payment_id: str) -> bool:
    """Insert the commission record for this payment once; returns True if inserted"""
    rate = payment.commission_rate
    if rate is None:
        rate = get_commission_rate(db, payment.tenant_id, at=payment.created_at)
    if not rate or rate <= 0:
        return False

    if db.query(PlatformFee.id).filter(PlatformFee.payment_id == payment.id).first():
        return False

    stmt = (
        dialect_insert(db, PlatformFee)
        .values(
            id=generate_uuid(),
            tenant_id=payment.tenant_id,
            payment_id=payment.id,
            provider_payment_id=provider_payment_id or None,
            transaction_amount_cents=payment.amount_cents,
            commission_rate=rate,
            fee_amount_cents=fee_cents(payment.amount_cents, rate),
            status="collected",
        )
        .on_conflict_do_nothing(index_elements=["payment_id"])
    )
    result = db.execute(stmt)
    inserted = bool(result.rowcount)
    if inserted:
        logger.info(f"🏷️ Platform fee recorded for payment {payment.id} at {rate:.2%}")
    return inserted


async def _notify_payment_received(db: Session, payment: Payment, booking: Booking) -> bool:
    customer = booking.customer
    if not customer or not customer.phone:
        return False

    tenant_name = booking.tenant.name if booking.tenant else ""
    service_name = booking.service.name if booking.service else "your service"
    message = (
        f"💳 *Payment confirmed!*\n\n"
        f"Hi {customer.name}! We received your payment of {format_brl(payment.amount_cents)}.\n\n"
        f"📅 {booking.starts_at.strftime('%d/%m/%Y %H:%M')}\n"
        f"💇 {service_name}\n\n"
        f"Your booking is confirmed ✅\n{tenant_name}"
    )

    return await send_whatsapp_notification(
        db,
        tenant_id=payment.tenant_id,
        phone=customer.phone,
        message=message,
        event_type="payment_received",
        dedup_key=f"payment_received_{booking.id}_{payment.id}",
        tenant_slug=booking.tenant.slug if booking.tenant else None,
        extra={
            "booking_id": booking.id,
            "customer_id": customer.id,
            "customer_name": customer.name,
            "amount_cents": payment.amount_cents,
        },
    )
