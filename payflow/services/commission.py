"""Platform commission (take-rate) lookup"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import DEFAULT_COMMISSION_RATE
from ..models import TenantPlan

logger = logging.getLogger(__name__)

BILLABLE_PLAN_STATUSES = ("active", "trialing")


def get_commission_rate(db: Session, tenant_id: str, at: Optional[datetime] = None) -> float:
    """
    Commission rate for a tenant at a point in time

    Uses the most recent active/trialing platform plan created at or before `at`,
    falling back to the default rate.
    """
    at = at or datetime.utcnow()

    plan = (
        db.query(TenantPlan)
        .filter(
            TenantPlan.tenant_id == tenant_id,
            TenantPlan.status.in_(BILLABLE_PLAN_STATUSES),
            TenantPlan.created_at <= at,
        )
        .order_by(TenantPlan.created_at.desc())
        .first()
    )

    if plan and plan.commission_rate is not None:
        return float(plan.commission_rate)

    logger.debug(f"No commission rate on plan for tenant {tenant_id}, using default")
    return DEFAULT_COMMISSION_RATE


def marketplace_fee(amount_cents: int, rate: float) -> float:
    """Fee in reais, rounded to cents, as the provider expects it"""
    return round(amount_cents / 100 * rate, 2)


def fee_cents(amount_cents: int, rate: float) -> int:
    return round(marketplace_fee(amount_cents, rate) * 100)
