"""
Subscription Reconciler
Applies Mercado Pago preapproval and recurring-charge webhooks to local
customer subscriptions
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..models import CashEntry, CustomerSubscription
from . import mercadopago_client as mp
from .mp_token import fetch_with_any_token
from .subscription_service import add_months, can_transition, open_billing_period, parse_provider_datetime
from .whatsapp_service import format_brl, send_subscription_notification

logger = logging.getLogger(__name__)

# Mercado Pago preapproval status -> local subscription status
PREAPPROVAL_STATUS_MAP = {
    "authorized": "active",
    "paused": "paused",
    "cancelled": "cancelled",
    "pending": "pending",
}

# Only a paid renewal brings these back to active
DELINQUENT_STATUSES = ("past_due", "suspended")


def resolve_subscription(
    db: Session, tenant_id: str, external_reference: Optional[str], preapproval_id: Optional[str]
) -> Optional[CustomerSubscription]:
    """Only subscriptions of the tenant whose credential fetched the provider object"""
    tenant_subscriptions = db.query(CustomerSubscription).filter(
        CustomerSubscription.tenant_id == tenant_id
    )

    if external_reference:
        subscription = tenant_subscriptions.filter(
            CustomerSubscription.id == str(external_reference)
        ).first()
        if subscription:
            return subscription

    if preapproval_id:
        return tenant_subscriptions.filter(
            CustomerSubscription.provider_subscription_id == str(preapproval_id)
        ).first()

    return None


# ============================================================================
# PREAPPROVAL EVENTS
# ============================================================================


async def handle_preapproval_event(
    db: Session, preapproval_id: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Webhook entry point for `subscription_preapproval` events"""
    now = now or datetime.utcnow()
    preapproval, token = await fetch_with_any_token(db, preapproval_id, mp.get_preapproval, "Preapproval")

    subscription = resolve_subscription(
        db, token.tenant_id, preapproval.get("external_reference"), preapproval_id
    )
    if not subscription:
        logger.error(f"❌ No local subscription for preapproval {preapproval_id}")
        raise HTTPException(status_code=404, detail="Subscription not found")

    if not subscription.provider_subscription_id:
        subscription.provider_subscription_id = str(preapproval_id)

    next_payment_date = parse_provider_datetime(preapproval.get("next_payment_date"))
    if next_payment_date:
        subscription.next_payment_date = next_payment_date

    provider_status = preapproval.get("status")
    new_status = PREAPPROVAL_STATUS_MAP.get(provider_status)
    current = subscription.status

    if new_status is None:
        logger.info(f"ℹ️ Unhandled preapproval status '{provider_status}' for subscription {subscription.id}")
        db.commit()
        return {"received": True, "status": current}

    if new_status == current:
        db.commit()
        return {"received": True, "status": current}

    if new_status == "active" and current in DELINQUENT_STATUSES:
        logger.info(f"ℹ️ Subscription {subscription.id} stays {current} until a renewal is paid")
        db.commit()
        return {"received": True, "status": current}

    if not can_transition(current, new_status):
        logger.warning(f"⚠️ Ignoring subscription {subscription.id} transition {current} -> {new_status}")
        db.commit()
        return {"received": True, "status": current}

    subscription.status = new_status
    subscription.updated_at = now

    if new_status == "active":
        subscription.started_at = subscription.started_at or now
        open_billing_period(db, subscription, now, next_payment_date)
    elif new_status == "cancelled":
        subscription.cancelled_at = now

    db.commit()
    logger.info(f"🔁 Subscription {subscription.id}: {current} -> {new_status} (preapproval {preapproval_id})")

    if new_status == "active":
        plan = subscription.plan
        await send_subscription_notification(
            db,
            subscription,
            "subscription_activated",
            f"🎉 *Subscription active!*\n\nHi {subscription.customer.name}! Your *{plan.name}* "
            f"subscription is active.\n\n💰 {format_brl(plan.price_cents)}/month\n"
            f"📅 Current cycle ends {subscription.current_period_end:%d/%m/%Y}",
            dedup_key=f"subscription_activated_{subscription.id}_{subscription.current_period_start:%Y-%m-%d}",
        )

    return {"received": True, "status": subscription.status}


# ============================================================================
# RECURRING CHARGES (AUTHORIZED PAYMENTS)
# ============================================================================


def _charge_outcome(authorized_payment: Dict[str, Any]) -> Optional[str]:
    charge_status = (authorized_payment.get("payment") or {}).get("status")
    if charge_status == "approved":
        return "approved"
    if charge_status == "rejected" or authorized_payment.get("status") == "recycling":
        return "rejected"
    return None


async def handle_authorized_payment_event(
    db: Session, authorized_payment_id: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Webhook entry point for `subscription_authorized_payment` events"""
    now = now or datetime.utcnow()
    authorized_payment, token = await fetch_with_any_token(
        db, authorized_payment_id, mp.get_authorized_payment, "Authorized payment"
    )

    subscription = resolve_subscription(
        db,
        token.tenant_id,
        authorized_payment.get("external_reference"),
        authorized_payment.get("preapproval_id"),
    )
    if not subscription:
        logger.error(
            f"❌ No local subscription for authorized payment {authorized_payment_id} "
            f"(preapproval {authorized_payment.get('preapproval_id')})"
        )
        raise HTTPException(status_code=404, detail="Subscription not found")

    outcome = _charge_outcome(authorized_payment)
    if outcome == "approved":
        await apply_renewal(db, subscription, authorized_payment, now)
    elif outcome == "rejected":
        await apply_failed_charge(db, subscription, authorized_payment, now)
    else:
        logger.info(
            f"ℹ️ Authorized payment {authorized_payment_id} status "
            f"'{authorized_payment.get('status')}' needs no action"
        )

    return {"received": True, "status": subscription.status}


async def apply_renewal(
    db: Session,
    subscription: CustomerSubscription,
    authorized_payment: Dict[str, Any],
    now: datetime,
) -> bool:
    """Paid recurring charge: reactivate, roll the period, book the income once"""
    charge_id = str(authorized_payment.get("id"))
    token = f"authorized_payment:{charge_id}"

    already_booked = (
        db.query(CashEntry.id)
        .filter(
            CashEntry.tenant_id == subscription.tenant_id,
            CashEntry.source == "subscription",
            CashEntry.notes.contains(token),
        )
        .first()
    )
    if already_booked:
        logger.info(f"ℹ️ Renewal {charge_id} already applied to subscription {subscription.id}")
        return False

    previous = subscription.status
    charged_at = (
        parse_provider_datetime(authorized_payment.get("date_created"))
        or parse_provider_datetime(authorized_payment.get("debit_date"))
        or now
    )

    subscription.failed_at = None
    if previous != "active" and can_transition(previous, "active"):
        subscription.status = "active"
    elif previous != "active":
        logger.warning(f"⚠️ Renewal {charge_id} paid on {previous} subscription {subscription.id}")

    if not subscription.current_period_end or charged_at >= subscription.current_period_end:
        open_billing_period(db, subscription, charged_at, add_months(charged_at))
    subscription.updated_at = now

    amount = authorized_payment.get("transaction_amount")
    amount_cents = round(float(amount) * 100) if amount is not None else subscription.plan.price_cents
    db.add(
        CashEntry(
            tenant_id=subscription.tenant_id,
            amount_cents=amount_cents,
            kind="income",
            source="subscription",
            payment_method="mercadopago",
            notes=f"{token} | subscription:{subscription.id}",
            occurred_at=charged_at,
        )
    )
    db.commit()
    logger.info(f"✅ Subscription {subscription.id} renewed ({previous} -> {subscription.status})")

    plan = subscription.plan
    await send_subscription_notification(
        db,
        subscription,
        "subscription_renewed",
        f"✅ *Payment received!*\n\nHi {subscription.customer.name}! We received "
        f"{format_brl(amount_cents)} for your *{plan.name}* subscription.\n"
        f"📅 Next cycle ends {subscription.current_period_end:%d/%m/%Y}",
        dedup_key=f"subscription_renewed_{subscription.id}_{charge_id}",
    )
    return True


async def apply_failed_charge(
    db: Session,
    subscription: CustomerSubscription,
    authorized_payment: Dict[str, Any],
    now: datetime,
) -> bool:
    """Rejected recurring charge: open the failure episode once and warn the customer"""
    if subscription.status == "cancelled":
        logger.info(f"ℹ️ Ignoring failed charge on cancelled subscription {subscription.id}")
        return False

    if subscription.failed_at is None:
        subscription.failed_at = now
    if subscription.status != "past_due" and can_transition(subscription.status, "past_due"):
        subscription.status = "past_due"
    subscription.updated_at = now
    db.commit()
    logger.warning(
        f"⚠️ Charge {authorized_payment.get('id')} failed for subscription {subscription.id}, "
        f"failing since {subscription.failed_at.isoformat()}"
    )

    plan = subscription.plan
    await send_subscription_notification(
        db,
        subscription,
        "subscription_payment_failed",
        f"⚠️ *Payment failed*\n\nHi {subscription.customer.name}! We couldn't charge "
        f"{format_brl(plan.price_cents)} for your *{plan.name}* subscription. "
        f"Please update your payment method to keep booking.",
        dedup_key=f"subscription_payment_failed_{subscription.id}_{subscription.failed_at:%Y-%m-%d}",
    )
    return True
