"""Tests for subscription checkout and pause / resume / cancel"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from conftest import (
    connect_mercadopago,
    make_customer,
    make_plan,
    make_service,
    make_subscription,
    make_tenant,
)
from payflow.models import CustomerSubscription, SubscriptionUsage
from payflow.services import mercadopago_client as mp
from payflow.services.subscription_service import (
    SubscriptionService,
    add_months,
    can_transition,
    open_billing_period,
    parse_provider_datetime,
    seed_usage,
)


class TestHelpers:
    def test_add_months_clamps_to_month_end(self):
        assert add_months(datetime(2026, 1, 31, 9, 0)) == datetime(2026, 2, 28, 9, 0)
        assert add_months(datetime(2026, 12, 15)) == datetime(2027, 1, 15)

    def test_parse_provider_datetime_to_naive_utc(self):
        assert parse_provider_datetime("2026-03-01T10:00:00.000-03:00") == datetime(2026, 3, 1, 13, 0)
        assert parse_provider_datetime("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0)
        assert parse_provider_datetime(None) is None
        assert parse_provider_datetime("not a date") is None

    def test_cancelled_is_terminal(self):
        assert can_transition("past_due", "suspended")
        assert can_transition("suspended", "active")
        assert not can_transition("cancelled", "active")
        assert not can_transition("pending", "past_due")

    def test_usage_reseed_keeps_sessions_used(self, db):
        tenant = make_tenant(db)
        service = make_service(db, tenant)
        plan = make_plan(db, tenant, service=service, sessions_per_cycle=4)
        subscription = make_subscription(db, tenant, plan=plan)
        start = datetime(2026, 3, 1)

        seed_usage(db, subscription, start, datetime(2026, 4, 1))
        db.commit()
        usage = db.query(SubscriptionUsage).one()
        usage.sessions_used = 2
        db.commit()

        seed_usage(db, subscription, start, datetime(2026, 4, 1))
        db.commit()

        usage = db.query(SubscriptionUsage).one()
        assert usage.sessions_used == 2
        assert usage.sessions_limit == 4


class TestSubscriptionCheckout:
    def test_creates_preapproval_and_reuses_pending_row(self, db):
        tenant = make_tenant(db)
        connect_mercadopago(db, tenant)
        customer = make_customer(db, tenant)
        plan = make_plan(db, tenant)

        create = AsyncMock(
            side_effect=[
                {"id": "pre-1", "init_point": "https://www.mercadopago.com.br/subscriptions/1"},
                {"id": "pre-2", "init_point": "https://www.mercadopago.com.br/subscriptions/2"},
            ]
        )
        service = SubscriptionService(db)
        with patch.object(mp, "create_preapproval", create):
            first = asyncio.run(service.create_subscription_checkout(tenant.id, customer.id, plan.id))
            second = asyncio.run(service.create_subscription_checkout(tenant.id, customer.id, plan.id))

        assert first["subscription_id"] == second["subscription_id"]
        subscription = db.query(CustomerSubscription).one()
        assert subscription.status == "pending"
        assert subscription.provider_subscription_id == "pre-2"

        body = create.await_args.args[1]
        assert body["external_reference"] == subscription.id
        assert body["payer_email"] == "ana@example.com"
        assert body["auto_recurring"]["transaction_amount"] == 99.0

    def test_customer_without_email(self, db):
        tenant = make_tenant(db)
        customer = make_customer(db, tenant, email=None)
        plan = make_plan(db, tenant)

        with pytest.raises(HTTPException) as exc:
            asyncio.run(SubscriptionService(db).create_subscription_checkout(tenant.id, customer.id, plan.id))
        assert exc.value.status_code == 400

    def test_unknown_plan(self, db):
        tenant = make_tenant(db)
        customer = make_customer(db, tenant)

        with pytest.raises(HTTPException) as exc:
            asyncio.run(SubscriptionService(db).create_subscription_checkout(tenant.id, customer.id, "nope"))
        assert exc.value.status_code == 404


@pytest.fixture
def subscribed(db):
    tenant = make_tenant(db)
    connect_mercadopago(db, tenant)
    service = make_service(db, tenant)
    plan = make_plan(db, tenant, service=service)
    subscription = make_subscription(db, tenant, plan=plan, provider_subscription_id="pre-1")
    return subscription


class TestLifecycle:
    def test_pause_updates_provider_first(self, db, subscribed):
        update = AsyncMock(return_value={"id": "pre-1", "status": "paused"})
        with patch.object(mp, "update_preapproval_status", update):
            result = asyncio.run(SubscriptionService(db).pause_subscription(subscribed.id))

        assert result["status"] == "paused"
        assert update.await_args.args[1:] == ("pre-1", "paused")

    def test_pause_provider_failure_leaves_state(self, db, subscribed):
        failure = AsyncMock(side_effect=mp.MercadoPagoAPIError(400, "cannot pause"))
        with patch.object(mp, "update_preapproval_status", failure):
            with pytest.raises(HTTPException) as exc:
                asyncio.run(SubscriptionService(db).pause_subscription(subscribed.id))

        assert exc.value.status_code == 502
        assert db.query(CustomerSubscription).one().status == "active"

    def test_only_active_can_be_paused(self, db, subscribed):
        subscribed.status = "past_due"
        db.commit()

        with pytest.raises(HTTPException) as exc:
            asyncio.run(SubscriptionService(db).pause_subscription(subscribed.id))
        assert exc.value.status_code == 400

    def test_resume_opens_new_period(self, db, subscribed):
        subscribed.status = "paused"
        db.commit()
        now = datetime(2026, 6, 15, 12, 0)

        update = AsyncMock(return_value={"status": "authorized", "next_payment_date": "2026-07-15T12:00:00.000Z"})
        with patch.object(mp, "update_preapproval_status", update):
            result = asyncio.run(SubscriptionService(db).resume_subscription(subscribed.id, now=now))

        assert result["status"] == "active"
        subscription = db.query(CustomerSubscription).one()
        assert subscription.current_period_start == now
        assert subscription.current_period_end == datetime(2026, 7, 15, 12, 0)
        assert subscription.next_payment_date == datetime(2026, 7, 15, 12, 0)
        usage = db.query(SubscriptionUsage).one()
        assert usage.period_start == now.date()
        assert usage.sessions_limit == 4

    def test_cancel_proceeds_when_remote_is_gone(self, db, subscribed):
        failure = AsyncMock(side_effect=mp.MercadoPagoAPIError(404, "not found"))
        with patch.object(mp, "update_preapproval_status", failure):
            result = asyncio.run(SubscriptionService(db).cancel_subscription(subscribed.id, reason="moving"))

        assert result["status"] == "cancelled"
        subscription = db.query(CustomerSubscription).one()
        assert subscription.cancelled_at is not None
        assert subscription.cancellation_reason == "moving"

    def test_cancel_proceeds_when_already_cancelled_remotely(self, db, subscribed):
        failure = AsyncMock(side_effect=mp.MercadoPagoAPIError(400, "already cancelled"))
        remote = AsyncMock(return_value={"id": "pre-1", "status": "cancelled"})
        with patch.object(mp, "update_preapproval_status", failure), patch.object(mp, "get_preapproval", remote):
            result = asyncio.run(SubscriptionService(db).cancel_subscription(subscribed.id))

        assert result["status"] == "cancelled"

    def test_cancel_refused_by_provider_keeps_state(self, db, subscribed):
        failure = AsyncMock(side_effect=mp.MercadoPagoAPIError(400, "bad request"))
        remote = AsyncMock(return_value={"id": "pre-1", "status": "authorized"})
        with patch.object(mp, "update_preapproval_status", failure), patch.object(mp, "get_preapproval", remote):
            with pytest.raises(HTTPException) as exc:
                asyncio.run(SubscriptionService(db).cancel_subscription(subscribed.id))

        assert exc.value.status_code == 502
        assert db.query(CustomerSubscription).one().status == "active"

    def test_cancel_twice_is_a_no_op(self, db, subscribed):
        subscribed.status = "cancelled"
        db.commit()

        update = AsyncMock()
        with patch.object(mp, "update_preapproval_status", update):
            result = asyncio.run(SubscriptionService(db).cancel_subscription(subscribed.id))

        assert result == {"success": True, "status": "cancelled"}
        update.assert_not_awaited()

    def test_without_provider_id_is_local_only(self, db):
        tenant = make_tenant(db)
        subscription = make_subscription(db, tenant)

        update = AsyncMock()
        with patch.object(mp, "update_preapproval_status", update):
            result = asyncio.run(SubscriptionService(db).pause_subscription(subscription.id))

        assert result["status"] == "paused"
        update.assert_not_awaited()


def test_open_billing_period_defaults_to_one_month(db):
    tenant = make_tenant(db)
    subscription = make_subscription(db, tenant)

    open_billing_period(db, subscription, datetime(2026, 1, 31), end=datetime(2026, 1, 1))

    assert subscription.current_period_end == datetime(2026, 2, 28)
