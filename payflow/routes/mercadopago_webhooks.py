"""
Mercado Pago Webhook Handler
Receives payment and subscription notifications and reconciles them against
the provider's current state
"""

import json
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.payment_reconciler import handle_payment_event
from ..services.subscription_reconciler import (
    handle_authorized_payment_event,
    handle_preapproval_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Notification topic -> canonical event type
EVENT_ALIASES = {
    "payment": "payment",
    "subscription_preapproval": "preapproval",
    "preapproval": "preapproval",
    "subscription_authorized_payment": "authorized_payment",
    "authorized_payment": "authorized_payment",
}


def extract_event(payload: dict, query: dict) -> Tuple[Optional[str], Optional[str]]:
    """
    Event type and object id from the JSON body, falling back to the query string
    (`?type=payment&data.id=123` or legacy `?topic=payment&id=123`)
    """
    event_type = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    object_id = data.get("id") or query.get("data.id") or query.get("id") or payload.get("id")

    return event_type, str(object_id) if object_id else None


@router.post("/mercadopago")
async def handle_mercadopago_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle Mercado Pago notifications

    Events handled:
    - payment - one-off checkout or direct charge changed status
    - subscription_preapproval - subscription authorized / paused / cancelled
    - subscription_authorized_payment - recurring charge approved or rejected

    The notification body is never trusted; every event is re-fetched from the
    provider with a tenant's own token before anything is written.
    """
    try:
        body = await request.body()
        payload = {}
        if body:
            try:
                payload = json.loads(body.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("⚠️ Non-JSON webhook body, using query parameters")
        if not isinstance(payload, dict):
            payload = {}

        event_type, object_id = extract_event(payload, dict(request.query_params))
        logger.info(f"📥 Received Mercado Pago webhook: {event_type} ({payload.get('action')}) id={object_id}")

        kind = EVENT_ALIASES.get(event_type or "")
        if not kind:
            logger.info(f"ℹ️ Unhandled event type: {event_type}")
            return {"received": True, "ignored": True}

        if not object_id:
            logger.warning(f"⚠️ No object id in {event_type} webhook")
            raise HTTPException(status_code=400, detail="Missing data.id")

        if kind == "payment":
            return await handle_payment_event(db, object_id)
        if kind == "preapproval":
            return await handle_preapproval_event(db, object_id)
        return await handle_authorized_payment_event(db, object_id)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Webhook processing error: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Webhook processing failed") from None
