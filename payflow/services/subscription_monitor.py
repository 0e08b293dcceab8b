"""
Subscription Lifecycle Monitor
Periodic sweeps: suspend subscriptions whose grace period ran out after a
failed charge, and remind customers when their billing cycle is ending
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..config import (
    DEFAULT_CYCLE_REMINDER_DAYS,
    DEFAULT_GRACE_HOURS,
    NEAR_BLOCK_WARNING_HOURS,
    PLATFORM_NAME,
    REMINDER_TIMEZONE,
)
from ..models import CustomerSubscription, Tenant
from .subscription_service import can_transition
from .whatsapp_service import send_subscription_notification

logger = logging.getLogger(__name__)


def _tenant_settings(db: Session, tenant_id: str, cache: Dict[str, dict]) -> dict:
    if tenant_id not in cache:
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
        cache[tenant_id] = (tenant.settings if tenant else None) or {}
    return cache[tenant_id]


def grace_hours_for(settings: dict) -> float:
    value = settings.get("subscription_grace_hours")
    if value is None:
        return DEFAULT_GRACE_HOURS
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Invalid subscription_grace_hours {value!r}, using {DEFAULT_GRACE_HOURS}")
        return DEFAULT_GRACE_HOURS


async def check_overdue_subscriptions(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Sweep past_due subscriptions.

    Once the tenant's grace period has elapsed since the first failed charge the
    subscription is suspended; during the last hours of grace the customer gets
    a single warning. Both notifications are keyed on the failure episode, so
    running the sweep repeatedly sends each of them at most once.
    """
    now = now or datetime.utcnow()
    subscriptions = (
        db.query(CustomerSubscription)
        .filter(
            CustomerSubscription.status == "past_due",
            CustomerSubscription.failed_at.isnot(None),
        )
        .all()
    )

    if not subscriptions:
        logger.info("ℹ️ No past_due subscriptions found")
        return {"processed": 0, "suspended": 0, "warnings": 0}

    logger.info(f"🔄 Checking {len(subscriptions)} past_due subscriptions")

    settings_cache: Dict[str, dict] = {}
    suspended = 0
    warnings = 0

    for subscription in subscriptions:
        grace_hours = grace_hours_for(_tenant_settings(db, subscription.tenant_id, settings_cache))
        failed_at = subscription.failed_at
        hours_elapsed = (now - failed_at).total_seconds() / 3600
        hours_remaining = grace_hours - hours_elapsed

        logger.debug(
            f"Subscription {subscription.id}: failed {hours_elapsed:.1f}h ago, "
            f"grace {grace_hours}h, remaining {hours_remaining:.1f}h"
        )

        if hours_elapsed >= grace_hours:
            if not can_transition(subscription.status, "suspended"):
                continue

            subscription.status = "suspended"
            subscription.updated_at = now
            db.commit()
            suspended += 1
            logger.warning(f"🚫 Subscription {subscription.id} suspended, grace period expired")

            customer_name, plan_name, tenant_name = _display_names(subscription)
            await send_subscription_notification(
                db,
                subscription,
                "subscription_suspended",
                f"🚫 *Subscription suspended*\n\nHi {customer_name}! Your "
                f"*{plan_name}* subscription was suspended because the payment didn't go through.\n\n"
                f"Subscription benefits are unavailable until the payment is settled.\n\n{tenant_name}",
                dedup_key=f"subscription_suspended_{subscription.id}_{failed_at:%Y-%m-%d}",
            )

        elif 0 < hours_remaining <= NEAR_BLOCK_WARNING_HOURS:
            hours_left = math.ceil(hours_remaining)
            customer_name, plan_name, tenant_name = _display_names(subscription)
            sent = await send_subscription_notification(
                db,
                subscription,
                "subscription_near_block",
                f"⏰ *Your subscription will be suspended soon*\n\nHi {customer_name}! "
                f"The payment for your *{plan_name}* plan hasn't gone through yet.\n\n"
                f"Your subscription will be suspended in *{hours_left} hour{'s' if hours_left > 1 else ''}*. "
                f"Please check your payment method.\n\n{tenant_name}",
                dedup_key=f"subscription_near_block_{subscription.id}_{failed_at:%Y-%m-%d}",
            )
            if sent:
                warnings += 1

    logger.info(f"✅ Overdue check done. Suspended: {suspended}, Warnings: {warnings}")
    return {"processed": len(subscriptions), "suspended": suspended, "warnings": warnings}


def _display_names(subscription: CustomerSubscription):
    customer = subscription.customer
    plan = subscription.plan
    tenant = plan.tenant if plan else None
    return (
        customer.name if customer else "",
        plan.name if plan else "",
        tenant.name if tenant else PLATFORM_NAME,
    )


def _local_date(value: datetime, tz: ZoneInfo):
    """Calendar date of a naive UTC timestamp in the reminder timezone"""
    return value.replace(tzinfo=timezone.utc).astimezone(tz).date()


def _reminder_event(days_until_end: int) -> str:
    if days_until_end == 0:
        return "cycle_ends_today"
    if days_until_end == 1:
        return "cycle_ends_tomorrow"
    return f"cycle_ends_in_{days_until_end}d"


async def send_cycle_reminders(db: Session, now: Optional[datetime] = None) -> dict:
    """Remind active subscribers N days before their cycle ends (tenant configurable)"""
    now = now or datetime.utcnow()
    tz = ZoneInfo(REMINDER_TIMEZONE)
    today = _local_date(now, tz)

    subscriptions = (
        db.query(CustomerSubscription)
        .filter(
            CustomerSubscription.status == "active",
            CustomerSubscription.current_period_end.isnot(None),
        )
        .all()
    )

    if not subscriptions:
        logger.info("ℹ️ No active subscriptions for cycle reminders")
        return {"processed": 0, "sent": 0}

    settings_cache: Dict[str, dict] = {}
    sent = 0

    for subscription in subscriptions:
        settings = _tenant_settings(db, subscription.tenant_id, settings_cache)
        if settings.get("cycle_reminders_enabled") is False:
            continue

        reminder_days = settings.get("cycle_reminder_days") or DEFAULT_CYCLE_REMINDER_DAYS
        period_end = _local_date(subscription.current_period_end, tz)
        days_until_end = (period_end - today).days
        if days_until_end not in reminder_days:
            continue
        if not subscription.plan or not subscription.customer:
            continue

        customer_name, plan_name, tenant_name = _display_names(subscription)
        if days_until_end == 0:
            headline = "Your cycle ends today"
        elif days_until_end == 1:
            headline = "Your cycle ends tomorrow"
        else:
            headline = f"{days_until_end} days left in your cycle"

        message = (
            f"📅 *{headline}*\n\nHi {customer_name}! The current cycle of your "
            f"*{plan_name}* subscription ends on {period_end:%d/%m/%Y}.\n\n"
            f"Renewal is processed automatically.\n\n{tenant_name}"
        )

        ok = await send_subscription_notification(
            db,
            subscription,
            _reminder_event(days_until_end),
            message,
            dedup_key=f"cycle_{subscription.id}_{period_end:%Y-%m-%d}_{days_until_end}d",
        )
        if ok:
            sent += 1

    logger.info(f"✅ Cycle reminders done. Processed: {len(subscriptions)}, Sent: {sent}")
    return {"processed": len(subscriptions), "sent": sent}
