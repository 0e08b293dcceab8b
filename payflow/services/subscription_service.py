"""Subscription service - Customer subscription checkout and lifecycle operations"""

import calendar
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..config import DEFAULT_CURRENCY, FRONTEND_URL, PLATFORM_NAME
from ..database import dialect_insert
from ..models import (
    Customer,
    CustomerSubscription,
    SubscriptionPlan,
    SubscriptionPlanService,
    SubscriptionUsage,
    generate_uuid,
)
from . import mercadopago_client as mp
from .mp_token import get_valid_token
from .whatsapp_service import format_brl, send_subscription_notification

logger = logging.getLogger(__name__)

# Preapproval status sent to Mercado Pago for each local operation
PROVIDER_STATUS_FOR = {
    "pause": "paused",
    "resume": "authorized",
    "cancel": "cancelled",
}

# Allowed local status moves; cancelled is terminal
SUBSCRIPTION_TRANSITIONS = {
    "pending": {"active", "cancelled"},
    "active": {"paused", "past_due", "cancelled"},
    "paused": {"active", "cancelled"},
    "past_due": {"active", "suspended", "cancelled"},
    "suspended": {"active", "cancelled"},
    "cancelled": set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in SUBSCRIPTION_TRANSITIONS.get(current, set())


def add_months(value: datetime, months: int = 1) -> datetime:
    """Same day next month, clamped to the month's last day"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """Mercado Pago ISO timestamps -> naive UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"⚠️ Unparseable provider date: {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def seed_usage(
    db: Session, subscription: CustomerSubscription, period_start: datetime, period_end: datetime
) -> int:
    """
    Upsert one usage row per plan service for the period
    Re-running keeps the sessions already used
    """
    plan_services = (
        db.query(SubscriptionPlanService)
        .filter(SubscriptionPlanService.plan_id == subscription.plan_id)
        .all()
    )

    for ps in plan_services:
        stmt = (
            dialect_insert(db, SubscriptionUsage)
            .values(
                id=generate_uuid(),
                subscription_id=subscription.id,
                service_id=ps.service_id,
                period_start=period_start.date(),
                period_end=period_end.date(),
                sessions_used=0,
                sessions_limit=ps.sessions_per_cycle,
                booking_ids=[],
            )
            .on_conflict_do_update(
                index_elements=["subscription_id", "service_id", "period_start"],
                set_={"period_end": period_end.date(), "sessions_limit": ps.sessions_per_cycle},
            )
        )
        db.execute(stmt)

    return len(plan_services)


def open_billing_period(
    db: Session,
    subscription: CustomerSubscription,
    start: datetime,
    end: Optional[datetime] = None,
):
    """Start a new one-month period (or until `end`) and seed its usage rows"""
    end = end if end and end > start else add_months(start)
    subscription.current_period_start = start
    subscription.current_period_end = end
    seed_usage(db, subscription, start, end)


class SubscriptionService:
    """Customer subscriptions backed by Mercado Pago preapprovals"""

    def __init__(self, db: Session):
        self.db = db

    def get_subscription(self, subscription_id: str) -> CustomerSubscription:
        subscription = (
            self.db.query(CustomerSubscription)
            .filter(CustomerSubscription.id == subscription_id)
            .first()
        )
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
        return subscription

    async def create_subscription_checkout(
        self, tenant_id: str, customer_id: str, plan_id: str
    ) -> dict:
        """Create (or retry) a subscription checkout for a customer"""
        plan = (
            self.db.query(SubscriptionPlan)
            .filter(
                SubscriptionPlan.id == plan_id,
                SubscriptionPlan.tenant_id == tenant_id,
                SubscriptionPlan.active.is_(True),
            )
            .first()
        )
        if not plan:
            raise HTTPException(status_code=404, detail="Subscription plan not found")

        customer = (
            self.db.query(Customer)
            .filter(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            .first()
        )
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        if not customer.email:
            raise HTTPException(status_code=400, detail="Customer email is required for subscriptions")

        subscription = (
            self.db.query(CustomerSubscription)
            .filter(
                CustomerSubscription.tenant_id == tenant_id,
                CustomerSubscription.customer_id == customer_id,
                CustomerSubscription.plan_id == plan_id,
                CustomerSubscription.status == "pending",
            )
            .order_by(CustomerSubscription.created_at.desc())
            .first()
        )
        if not subscription:
            subscription = CustomerSubscription(
                tenant_id=tenant_id,
                customer_id=customer_id,
                plan_id=plan_id,
                status="pending",
            )
            self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)

        token = await get_valid_token(self.db, tenant_id)
        if not token:
            raise HTTPException(status_code=400, detail="Mercado Pago is not connected")

        tenant = plan.tenant
        tenant_name = tenant.name if tenant else PLATFORM_NAME
        tenant_slug = tenant.slug if tenant else ""

        try:
            result = await mp.create_preapproval(
                token.access_token,
                {
                    "reason": f"{plan.name} - {tenant_name}",
                    "auto_recurring": {
                        "frequency": 1,
                        "frequency_type": "months",
                        "transaction_amount": plan.price_cents / 100,
                        "currency_id": DEFAULT_CURRENCY,
                    },
                    "payer_email": customer.email,
                    "back_url": f"{FRONTEND_URL}/{tenant_slug}/subscription/callback",
                    "external_reference": subscription.id,
                    "status": "pending",
                },
            )
        except mp.MercadoPagoAPIError as e:
            logger.error(f"❌ Preapproval creation failed for subscription {subscription.id}: {e}")
            raise HTTPException(status_code=502, detail="Failed to create subscription in Mercado Pago") from None

        subscription.provider_subscription_id = str(result.get("id") or "") or None
        subscription.checkout_url = result.get("init_point")
        self.db.commit()

        logger.info(
            f"✅ Subscription checkout created: {subscription.id} -> preapproval {subscription.provider_subscription_id}"
        )

        return {
            "success": True,
            "subscription_id": subscription.id,
            "checkout_url": subscription.checkout_url,
            "provider_subscription_id": subscription.provider_subscription_id,
        }

    async def _update_provider_status(self, subscription: CustomerSubscription, operation: str):
        """Mirror a local operation on the preapproval; raises if the provider refuses"""
        token = await get_valid_token(self.db, subscription.tenant_id)
        if not token:
            raise HTTPException(status_code=400, detail="Mercado Pago not connected or token expired")

        try:
            return await mp.update_preapproval_status(
                token.access_token,
                subscription.provider_subscription_id,
                PROVIDER_STATUS_FOR[operation],
            )
        except mp.MercadoPagoAPIError as e:
            if operation != "cancel":
                logger.error(f"❌ Mercado Pago refused to {operation} subscription {subscription.id}: {e}")
                raise HTTPException(
                    status_code=502, detail=e.message or f"Mercado Pago refused to {operation}"
                ) from None

            if e.status_code == 404:
                logger.info(f"ℹ️ Preapproval for {subscription.id} no longer exists, cancelling locally")
                return {}

            try:
                remote = await mp.get_preapproval(token.access_token, subscription.provider_subscription_id)
            except mp.MercadoPagoAPIError as fetch_error:
                if fetch_error.status_code == 404:
                    return {}
                logger.error(f"❌ Could not verify preapproval for {subscription.id}: {fetch_error}")
                raise HTTPException(status_code=502, detail="Failed to cancel subscription") from None

            if remote.get("status") == "cancelled":
                logger.info(f"ℹ️ Preapproval for {subscription.id} already cancelled remotely")
                return remote

            logger.error(f"❌ Mercado Pago refused to cancel subscription {subscription.id}: {e}")
            raise HTTPException(status_code=502, detail="Failed to cancel subscription") from None

    async def pause_subscription(self, subscription_id: str) -> dict:
        subscription = self.get_subscription(subscription_id)
        if subscription.status != "active":
            raise HTTPException(
                status_code=400,
                detail=f"Only active subscriptions can be paused. Current status: {subscription.status}",
            )

        if subscription.provider_subscription_id:
            await self._update_provider_status(subscription, "pause")

        subscription.status = "paused"
        subscription.updated_at = datetime.utcnow()
        self.db.commit()
        logger.info(f"⏸️ Subscription {subscription.id} paused")

        plan = subscription.plan
        await send_subscription_notification(
            self.db,
            subscription,
            "subscription_paused",
            f"⏸️ *Subscription paused*\n\nHi {subscription.customer.name}! Your *{plan.name}* "
            f"subscription is paused and automatic billing is on hold. "
            f"Get in touch whenever you want to resume.",
        )

        return {"success": True, "status": subscription.status}

    async def resume_subscription(self, subscription_id: str, now: Optional[datetime] = None) -> dict:
        subscription = self.get_subscription(subscription_id)
        if subscription.status != "paused":
            raise HTTPException(
                status_code=400,
                detail=f"Only paused subscriptions can be resumed. Current status: {subscription.status}",
            )

        remote = {}
        if subscription.provider_subscription_id:
            remote = await self._update_provider_status(subscription, "resume") or {}

        now = now or datetime.utcnow()
        next_payment_date = parse_provider_datetime(remote.get("next_payment_date"))

        subscription.status = "active"
        subscription.updated_at = now
        if next_payment_date:
            subscription.next_payment_date = next_payment_date
        open_billing_period(self.db, subscription, now)
        self.db.commit()
        logger.info(f"▶️ Subscription {subscription.id} resumed until {subscription.current_period_end}")

        plan = subscription.plan
        await send_subscription_notification(
            self.db,
            subscription,
            "subscription_resumed",
            f"▶️ *Subscription resumed!*\n\nHi {subscription.customer.name}! Your *{plan.name}* "
            f"subscription is active again.\n\n💰 {format_brl(plan.price_cents)}/month",
        )

        return {"success": True, "status": subscription.status}

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> dict:
        subscription = self.get_subscription(subscription_id)
        if subscription.status == "cancelled":
            logger.info(f"ℹ️ Subscription {subscription.id} already cancelled")
            return {"success": True, "status": subscription.status}

        if subscription.provider_subscription_id:
            await self._update_provider_status(subscription, "cancel")

        now = datetime.utcnow()
        subscription.status = "cancelled"
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        subscription.updated_at = now
        self.db.commit()
        logger.info(f"🛑 Subscription {subscription.id} cancelled")

        return {"success": True, "status": subscription.status}
