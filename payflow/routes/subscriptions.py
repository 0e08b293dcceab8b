"""Subscription router - customer subscription checkout and lifecycle"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas import CancelSubscriptionRequest, SubscriptionCheckoutRequest
from ..services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


@router.post("/checkout")
async def create_subscription_checkout(
    data: SubscriptionCheckoutRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a Mercado Pago preapproval for a customer"""
    return await service.create_subscription_checkout(data.tenant_id, data.customer_id, data.plan_id)


@router.post("/{subscription_id}/pause")
async def pause_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.pause_subscription(subscription_id)


@router.post("/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.resume_subscription(subscription_id)


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    data: CancelSubscriptionRequest | None = None,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at the provider first, then locally"""
    return await service.cancel_subscription(subscription_id, reason=data.reason if data else None)
