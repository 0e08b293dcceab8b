from datetime import datetime, timedelta

from conftest import make_booking, make_payment, make_tenant
from payflow.models import Booking, Payment
from payflow.services.booking_expiry import expire_pending_bookings

NOW = datetime(2026, 5, 1, 12, 0)


class TestExpirePendingBookings:
    def test_expires_stale_holds_and_their_pending_payments(self, db):
        tenant = make_tenant(db)
        stale = make_booking(db, tenant, status="pending_payment", created_at=NOW - timedelta(minutes=10))
        fresh = make_booking(db, tenant, status="pending_payment", created_at=NOW - timedelta(minutes=2))
        confirmed = make_booking(db, tenant, status="confirmed", created_at=NOW - timedelta(hours=1))
        pending_payment = make_payment(db, tenant, stale)
        failed_payment = make_payment(db, tenant, stale, status="failed")

        result = expire_pending_bookings(db, now=NOW)

        assert result == {"expired_count": 1, "booking_ids": [stale.id]}
        statuses = {b.id: b.status for b in db.query(Booking).all()}
        assert statuses[stale.id] == "expired"
        assert statuses[fresh.id] == "pending_payment"
        assert statuses[confirmed.id] == "confirmed"
        assert db.query(Payment).filter_by(id=pending_payment.id).one().status == "expired"
        assert db.query(Payment).filter_by(id=failed_payment.id).one().status == "failed"

    def test_nothing_to_expire(self, db):
        assert expire_pending_bookings(db, now=NOW) == {"expired_count": 0, "booking_ids": []}

    def test_custom_hold(self, db):
        tenant = make_tenant(db)
        make_booking(db, tenant, status="pending_payment", created_at=NOW - timedelta(minutes=10))

        assert expire_pending_bookings(db, now=NOW, hold_minutes=15)["expired_count"] == 0
