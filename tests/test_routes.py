"""HTTP-level tests for the webhook, checkout and automation routers"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import connect_mercadopago, make_booking, make_payment, make_tenant
from payflow import config
from payflow.database import get_db
from payflow.main import app
from payflow.models import Booking
from payflow.routes import mercadopago_webhooks
from payflow.services import mercadopago_client as mp


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestMercadoPagoWebhook:
    def test_unknown_type_is_acknowledged(self, client):
        response = client.post("/webhooks/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})

        assert response.status_code == 200
        assert response.json() == {"received": True, "ignored": True}

    def test_payment_event_from_body(self, client, db):
        handler = AsyncMock(return_value={"received": True, "status": "paid"})
        with patch.object(mercadopago_webhooks, "handle_payment_event", handler):
            response = client.post(
                "/webhooks/mercadopago",
                json={"type": "payment", "action": "payment.updated", "data": {"id": "123"}},
            )

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert handler.await_args.args[1] == "123"

    def test_legacy_topic_in_query(self, client):
        handler = AsyncMock(return_value={"received": True, "status": "pending"})
        with patch.object(mercadopago_webhooks, "handle_payment_event", handler):
            response = client.post("/webhooks/mercadopago?topic=payment&id=456")

        assert response.status_code == 200
        assert handler.await_args.args[1] == "456"

    @pytest.mark.parametrize("event_type", ["subscription_preapproval", "preapproval"])
    def test_preapproval_aliases(self, client, event_type):
        handler = AsyncMock(return_value={"received": True, "status": "active"})
        with patch.object(mercadopago_webhooks, "handle_preapproval_event", handler):
            response = client.post(
                "/webhooks/mercadopago", json={"type": event_type, "data": {"id": "pre-1"}}
            )

        assert response.status_code == 200
        assert handler.await_args.args[1] == "pre-1"

    def test_authorized_payment_event(self, client):
        handler = AsyncMock(return_value={"received": True, "status": "active"})
        with patch.object(mercadopago_webhooks, "handle_authorized_payment_event", handler):
            response = client.post(
                "/webhooks/mercadopago?type=subscription_authorized_payment&data.id=7001"
            )

        assert response.status_code == 200
        assert handler.await_args.args[1] == "7001"

    def test_missing_id_is_400(self, client):
        response = client.post("/webhooks/mercadopago", json={"type": "payment"})
        assert response.status_code == 400

    def test_unreconcilable_event_is_404(self, client):
        handler = AsyncMock(side_effect=HTTPException(status_code=404, detail="Payment record not found"))
        with patch.object(mercadopago_webhooks, "handle_payment_event", handler):
            response = client.post("/webhooks/mercadopago", json={"type": "payment", "data": {"id": "1"}})

        assert response.status_code == 404

    def test_unexpected_error_is_500(self, client):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.object(mercadopago_webhooks, "handle_payment_event", handler):
            response = client.post("/webhooks/mercadopago", json={"type": "payment", "data": {"id": "1"}})

        assert response.status_code == 500

    def test_end_to_end_approval(self, client, db):
        tenant = make_tenant(db)
        connect_mercadopago(db, tenant)
        booking = make_booking(db, tenant, status="pending_payment")
        payment = make_payment(db, tenant, booking)
        mp_payment = {"id": 90001, "status": "approved", "external_reference": payment.id, "metadata": {}}

        with patch.object(mp, "get_payment", AsyncMock(return_value=mp_payment)):
            response = client.post(
                "/webhooks/mercadopago", json={"type": "payment", "data": {"id": "90001"}}
            )

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "paid"}
        assert db.query(Booking).filter_by(id=booking.id).one().status == "confirmed"


class TestCheckoutRoutes:
    def test_invalid_booking_id_is_422(self, client):
        response = client.post("/payments/checkout", json={"booking_id": "not-a-uuid"})
        assert response.status_code == 422

    def test_invalid_cpf_is_422(self, client):
        response = client.post(
            "/payments/package-checkout",
            json={
                "tenant_id": "t",
                "package_id": "p",
                "customer_name": "Ana",
                "customer_phone": "11988887777",
                "customer_email": "ana@example.com",
                "customer_document": "123",
            },
        )
        assert response.status_code == 422

    def test_invalid_payment_type_is_422(self, client):
        response = client.post("/payments/process", json={"booking_id": "b", "payment_type": "boleto"})
        assert response.status_code == 422

    def test_checkout_returns_url(self, client, db):
        tenant = make_tenant(db)
        connect_mercadopago(db, tenant)
        booking = make_booking(db, tenant)

        preference = {"id": "pref-1", "init_point": "https://www.mercadopago.com.br/checkout/1"}
        with patch.object(mp, "create_preference", AsyncMock(return_value=preference)):
            response = client.post("/payments/checkout", json={"booking_id": booking.id})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["checkout_url"] == preference["init_point"]


class TestAutomationRoutes:
    def test_cron_secret_required_when_configured(self, client):
        with patch.object(config, "CRON_SECRET", "s3cret"):
            denied = client.post("/automation/expire-bookings")
            wrong = client.post("/automation/expire-bookings", headers={"X-Cron-Secret": "nope"})
            allowed = client.post("/automation/expire-bookings", headers={"X-Cron-Secret": "s3cret"})

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200

    def test_expire_bookings(self, client, db):
        tenant = make_tenant(db)
        booking = make_booking(
            db, tenant, status="pending_payment", created_at=datetime.utcnow() - timedelta(minutes=30)
        )

        with patch.object(config, "CRON_SECRET", None):
            response = client.post("/automation/expire-bookings")

        assert response.json() == {"expired_count": 1, "booking_ids": [booking.id]}

    def test_overdue_and_reminder_sweeps(self, client):
        with patch.object(config, "CRON_SECRET", None):
            overdue = client.post("/automation/overdue-subscriptions")
            reminders = client.post("/automation/cycle-reminders")

        assert overdue.json() == {"processed": 0, "suspended": 0, "warnings": 0}
        assert reminders.json() == {"processed": 0, "sent": 0}


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
