"""
Automation endpoints
Manual triggers for the scheduled sweeps (same jobs the arq worker runs)
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .. import config
from ..database import get_db
from ..services.booking_expiry import expire_pending_bookings
from ..services.subscription_monitor import check_overdue_subscriptions, send_cycle_reminders

logger = logging.getLogger(__name__)


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)):
    """Require X-Cron-Secret when CRON_SECRET is configured"""
    if not config.CRON_SECRET:
        logger.warning("⚠️ CRON_SECRET not configured, skipping verification")
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, config.CRON_SECRET):
        logger.error("❌ Invalid cron secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


router = APIRouter(
    prefix="/automation", tags=["automation"], dependencies=[Depends(verify_cron_secret)]
)


@router.post("/overdue-subscriptions")
async def run_overdue_check(db: Session = Depends(get_db)):
    """Suspend subscriptions past their grace period and warn the ones close to it"""
    try:
        return await check_overdue_subscriptions(db)
    except Exception as e:
        logger.error(f"❌ Overdue subscription check failed: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Overdue check failed") from None


@router.post("/cycle-reminders")
async def run_cycle_reminders(db: Session = Depends(get_db)):
    try:
        return await send_cycle_reminders(db)
    except Exception as e:
        logger.error(f"❌ Cycle reminders failed: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Cycle reminders failed") from None


@router.post("/expire-bookings")
async def run_booking_expiry(db: Session = Depends(get_db)):
    try:
        return expire_pending_bookings(db)
    except Exception as e:
        logger.error(f"❌ Booking expiry failed: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Booking expiry failed") from None
