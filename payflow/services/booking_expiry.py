"""Release booking slots held for a payment that never arrived"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import BOOKING_HOLD_MINUTES
from ..models import Booking, Payment

logger = logging.getLogger(__name__)


def expire_pending_bookings(
    db: Session, now: Optional[datetime] = None, hold_minutes: int = BOOKING_HOLD_MINUTES
) -> dict:
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=hold_minutes)

    bookings = (
        db.query(Booking)
        .filter(Booking.status == "pending_payment", Booking.created_at < cutoff)
        .all()
    )

    if not bookings:
        logger.info("ℹ️ No expired bookings found")
        return {"expired_count": 0, "booking_ids": []}

    booking_ids = [booking.id for booking in bookings]
    for booking in bookings:
        booking.status = "expired"
        booking.updated_at = now

    payments = (
        db.query(Payment)
        .filter(Payment.booking_id.in_(booking_ids), Payment.status == "pending")
        .all()
    )
    for payment in payments:
        payment.status = "expired"
        payment.updated_at = now

    db.commit()
    logger.info(f"⌛ Expired {len(booking_ids)} booking(s) and {len(payments)} payment(s): {booking_ids}")
    return {"expired_count": len(booking_ids), "booking_ids": booking_ids}
