"""Checkout endpoints - hosted checkouts and direct charges"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas import CheckoutRequest, DirectPaymentRequest, PackageCheckoutRequest
from ..services.checkout_service import (
    create_booking_checkout,
    create_package_checkout,
    process_direct_payment,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout")
async def booking_checkout(data: CheckoutRequest, db: Session = Depends(get_db)):
    """Hosted Mercado Pago checkout for a booking"""
    try:
        return await create_booking_checkout(db, data.booking_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Checkout failed for booking {data.booking_id}: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Failed to create checkout") from None


@router.post("/package-checkout")
async def package_checkout(data: PackageCheckoutRequest, db: Session = Depends(get_db)):
    """Hosted checkout for a service package (local payment when the business has no Mercado Pago)"""
    try:
        return await create_package_checkout(
            db,
            tenant_id=data.tenant_id,
            package_id=data.package_id,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            customer_email=data.customer_email,
            customer_document=data.customer_document,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Package checkout failed for package {data.package_id}: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Failed to create package checkout") from None


@router.post("/process")
async def process_payment(data: DirectPaymentRequest, db: Session = Depends(get_db)):
    """Direct PIX or card charge"""
    try:
        return await process_direct_payment(
            db,
            booking_id=data.booking_id,
            payment_type=data.payment_type,
            card_token=data.card_token,
            payment_method_id=data.payment_method_id,
            payer=data.payer,
            customer_package_id=data.customer_package_id,
            package_amount_cents=data.package_amount_cents,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Payment processing failed for booking {data.booking_id}: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Payment processing failed") from None
