"""
Checkout Service
Starts Mercado Pago payments for bookings and packages. The local payment
row is always committed as pending before the provider is called.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..config import CHECKOUT_EXPIRATION_HOURS, DEFAULT_CURRENCY, FRONTEND_URL, MP_WEBHOOK_URL, PLATFORM_NAME
from ..models import (
    Booking,
    Customer,
    CustomerPackage,
    CustomerPackageService,
    Payment,
    ServicePackage,
    Tenant,
)
from ..shared.validators import canonical_br_phone, phone_variants
from . import mercadopago_client as mp
from .commission import get_commission_rate, marketplace_fee
from .mp_token import get_valid_token
from .payment_reconciler import apply_provider_payment

logger = logging.getLogger(__name__)

# A payment in these states must not be reopened by a new checkout
LOCKED_PAYMENT_STATUSES = ("paid", "refund_required")


def booking_amount_cents(booking: Booking, settings: dict) -> int:
    """Service price, or the prepayment share when the tenant charges a deposit"""
    price_cents = booking.service.price_cents if booking.service else 0
    percentage = settings.get("prepayment_percentage") or 0
    if settings.get("require_prepayment") and 0 < percentage < 100:
        return round(price_cents * percentage / 100)
    return price_cents


def reserve_payment(
    db: Session,
    tenant_id: str,
    amount_cents: int,
    commission_rate: float,
    booking_id: Optional[str] = None,
    customer_package_id: Optional[str] = None,
) -> Payment:
    """
    Get the single pending payment row for a booking or package purchase,
    reusing an earlier attempt's row, and commit it before any provider call
    """
    query = db.query(Payment).filter(Payment.tenant_id == tenant_id)
    if booking_id:
        query = query.filter(Payment.booking_id == booking_id)
    else:
        query = query.filter(
            Payment.customer_package_id == customer_package_id, Payment.booking_id.is_(None)
        )
    payment = query.order_by(Payment.created_at.desc()).first()

    if payment and payment.status in LOCKED_PAYMENT_STATUSES:
        raise HTTPException(status_code=409, detail=f"Payment already {payment.status}")

    if payment:
        payment.status = "pending"
        payment.amount_cents = amount_cents
        payment.commission_rate = commission_rate
        if customer_package_id:
            payment.customer_package_id = customer_package_id
        payment.updated_at = datetime.utcnow()
        logger.info(f"♻️ Reusing payment {payment.id}")
    else:
        payment = Payment(
            tenant_id=tenant_id,
            booking_id=booking_id,
            customer_package_id=customer_package_id,
            amount_cents=amount_cents,
            currency=DEFAULT_CURRENCY,
            provider="mercadopago",
            status="pending",
            commission_rate=commission_rate,
        )
        db.add(payment)

    db.commit()
    db.refresh(payment)
    return payment


def _notification_url() -> Optional[str]:
    if not MP_WEBHOOK_URL:
        logger.warning("⚠️ MP_WEBHOOK_URL not configured, provider will not send webhooks")
    return MP_WEBHOOK_URL


def _statement_descriptor(tenant: Optional[Tenant]) -> str:
    return ((tenant.name if tenant else None) or PLATFORM_NAME)[:22]


def _split_name(full_name: Optional[str]) -> tuple:
    parts = (full_name or "").split()
    if not parts:
        return "Customer", ""
    return parts[0], " ".join(parts[1:])


async def _create_preference(access_token: str, payment: Payment, preference: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return await mp.create_preference(access_token, preference)
    except mp.MercadoPagoAPIError as e:
        logger.error(f"❌ Mercado Pago preference failed for payment {payment.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create Mercado Pago checkout") from None
    except Exception as e:
        logger.error(f"❌ Error creating preference for payment {payment.id}: {str(e)}")
        raise HTTPException(status_code=502, detail="Failed to create Mercado Pago checkout") from None


def _store_checkout(db: Session, payment: Payment, preference: Dict[str, Any]):
    payment.external_id = str(preference.get("id") or "") or None
    payment.checkout_url = preference.get("init_point")
    payment.expires_at = datetime.utcnow() + timedelta(hours=CHECKOUT_EXPIRATION_HOURS)
    payment.updated_at = datetime.utcnow()
    db.commit()


# ============================================================================
# BOOKING CHECKOUT
# ============================================================================


async def create_booking_checkout(db: Session, booking_id: str) -> dict:
    """
    Create a hosted checkout for a booking

    Returns:
        Dict with checkout_url and payment_id
    """
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    tenant = booking.tenant
    settings = (tenant.settings if tenant else None) or {}
    if not settings.get("allow_online_payment", True):
        raise HTTPException(status_code=400, detail="Online payment is disabled for this business")

    token = await get_valid_token(db, booking.tenant_id)
    if not token:
        raise HTTPException(status_code=400, detail="Mercado Pago is not connected")

    amount_cents = booking_amount_cents(booking, settings)
    if amount_cents <= 0:
        raise HTTPException(status_code=400, detail="Nothing to charge for this booking")

    commission_rate = get_commission_rate(db, booking.tenant_id)
    payment = reserve_payment(
        db,
        tenant_id=booking.tenant_id,
        amount_cents=amount_cents,
        commission_rate=commission_rate,
        booking_id=booking.id,
    )

    back_url = f"{FRONTEND_URL}/{tenant.slug}/booking/{booking.id}/payment?payment_id={payment.id}"
    customer = booking.customer
    service_name = booking.service.name if booking.service else "Service"

    preference = {
        "items": [
            {
                "id": booking.service_id,
                "title": f"{service_name} - {tenant.name}",
                "quantity": 1,
                "currency_id": payment.currency,
                "unit_price": amount_cents / 100,
                "category_id": "services",
            }
        ],
        "back_urls": {"success": back_url, "pending": back_url, "failure": back_url},
        "auto_return": "approved",
        "external_reference": payment.id,
        "metadata": {
            "payment_id": payment.id,
            "booking_id": booking.id,
            "tenant_id": booking.tenant_id,
        },
        "statement_descriptor": _statement_descriptor(tenant),
        "expires": True,
        "expiration_date_to": (
            datetime.utcnow() + timedelta(hours=CHECKOUT_EXPIRATION_HOURS)
        ).strftime("%Y-%m-%dT%H:%M:%S.000-00:00"),
    }
    if customer:
        first_name, last_name = _split_name(customer.name)
        preference["payer"] = {"name": first_name, "surname": last_name}
        if customer.email:
            preference["payer"]["email"] = customer.email

    fee = marketplace_fee(amount_cents, commission_rate)
    if fee > 0:
        preference["marketplace_fee"] = fee
    notification_url = _notification_url()
    if notification_url:
        preference["notification_url"] = notification_url

    result = await _create_preference(token.access_token, payment, preference)
    _store_checkout(db, payment, result)

    if settings.get("require_prepayment") and booking.status in ("pending", "pending_payment"):
        booking.status = "pending_payment"
        db.commit()

    logger.info(f"✅ Checkout created for booking {booking.id}: payment {payment.id}, preference {payment.external_id}")

    return {"success": True, "checkout_url": payment.checkout_url, "payment_id": payment.id}


# ============================================================================
# PACKAGE CHECKOUT
# ============================================================================


def find_or_create_customer(
    db: Session, tenant_id: str, name: str, phone: str, email: Optional[str] = None
) -> Customer:
    """Match an existing customer by phone (with or without the mobile 9th digit)"""
    customer = (
        db.query(Customer)
        .filter(Customer.tenant_id == tenant_id, Customer.phone.in_(phone_variants(phone)))
        .first()
    )

    if customer:
        if email and not customer.email:
            customer.email = email.strip()
            db.flush()
        return customer

    customer = Customer(
        tenant_id=tenant_id,
        name=name.strip(),
        phone=canonical_br_phone(phone),
        email=email.strip() if email else None,
    )
    db.add(customer)
    db.flush()
    logger.info(f"👤 Created customer {customer.id} for tenant {tenant_id}")
    return customer


def _pending_customer_package(
    db: Session, tenant_id: str, customer_id: str, package: ServicePackage
) -> CustomerPackage:
    customer_package = (
        db.query(CustomerPackage)
        .filter(
            CustomerPackage.tenant_id == tenant_id,
            CustomerPackage.customer_id == customer_id,
            CustomerPackage.package_id == package.id,
            CustomerPackage.payment_status == "pending",
        )
        .order_by(CustomerPackage.purchased_at.desc())
        .first()
    )
    if customer_package:
        return customer_package

    package_services = package.services
    customer_package = CustomerPackage(
        tenant_id=tenant_id,
        customer_id=customer_id,
        package_id=package.id,
        sessions_total=sum(ps.sessions_count for ps in package_services),
        sessions_used=0,
        status="active",
        payment_status="pending",
    )
    db.add(customer_package)
    db.flush()

    for ps in package_services:
        db.add(
            CustomerPackageService(
                customer_package_id=customer_package.id,
                service_id=ps.service_id,
                sessions_total=ps.sessions_count,
                sessions_used=0,
            )
        )
    return customer_package


async def create_package_checkout(
    db: Session,
    tenant_id: str,
    package_id: str,
    customer_name: str,
    customer_phone: str,
    customer_email: str,
    customer_document: Optional[str] = None,
) -> dict:
    """
    Sell a service package: customer + pending purchase first, then checkout

    Without a Mercado Pago connection the purchase is kept for payment on site.
    """
    package = (
        db.query(ServicePackage)
        .filter(
            ServicePackage.id == package_id,
            ServicePackage.tenant_id == tenant_id,
            ServicePackage.active.is_(True),
        )
        .first()
    )
    if not package:
        raise HTTPException(status_code=404, detail="Package not found")

    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=404, detail="Business not found")

    customer = find_or_create_customer(db, tenant_id, customer_name, customer_phone, customer_email)
    customer_package = _pending_customer_package(db, tenant_id, customer.id, package)
    db.commit()

    token = await get_valid_token(db, tenant_id)
    if not token:
        logger.info(f"ℹ️ Package {package.id} sold without online payment for tenant {tenant_id}")
        return {
            "success": True,
            "customer_package_id": customer_package.id,
            "payment_method": "local",
            "message": "Package created. Online payment unavailable, pay on site.",
        }

    commission_rate = get_commission_rate(db, tenant_id)
    payment = reserve_payment(
        db,
        tenant_id=tenant_id,
        amount_cents=package.price_cents,
        commission_rate=commission_rate,
        customer_package_id=customer_package.id,
    )

    back_url = (
        f"{FRONTEND_URL}/{tenant.slug}/package/return"
        f"?customer_package_id={customer_package.id}&payment_id={payment.id}"
    )
    first_name, last_name = _split_name(customer_name)
    payer = {
        "name": first_name,
        "surname": last_name,
        "email": customer_email.strip(),
        "phone": {"number": canonical_br_phone(customer_phone)},
    }
    if customer_document:
        payer["identification"] = {"type": "CPF", "number": customer_document}

    preference = {
        "items": [
            {
                "id": package.id,
                "title": f"{package.name} - {tenant.name}",
                "description": f"Package with {customer_package.sessions_total} sessions",
                "quantity": 1,
                "currency_id": payment.currency,
                "unit_price": package.price_cents / 100,
                "category_id": "services",
            }
        ],
        "payer": payer,
        "back_urls": {"success": back_url, "pending": back_url, "failure": back_url},
        "auto_return": "approved",
        "external_reference": payment.id,
        "metadata": {
            "payment_id": payment.id,
            "tenant_id": tenant_id,
            "customer_package_id": customer_package.id,
        },
        "statement_descriptor": _statement_descriptor(tenant),
    }
    fee = marketplace_fee(package.price_cents, commission_rate)
    if fee > 0:
        preference["marketplace_fee"] = fee
    notification_url = _notification_url()
    if notification_url:
        preference["notification_url"] = notification_url

    result = await _create_preference(token.access_token, payment, preference)
    _store_checkout(db, payment, result)

    logger.info(f"✅ Package checkout created: package {package.id}, payment {payment.id}")

    return {
        "success": True,
        "checkout_url": payment.checkout_url,
        "customer_package_id": customer_package.id,
        "payment_id": payment.id,
    }


# ============================================================================
# DIRECT CHARGE (CARD / PIX)
# ============================================================================


def _package_amount_cents(
    db: Session, booking: Booking, customer_package_id: str, requested_cents: Optional[int]
) -> int:
    """Server-side price of a package purchase made by the booking's customer"""
    customer_package = (
        db.query(CustomerPackage)
        .filter(
            CustomerPackage.id == customer_package_id,
            CustomerPackage.tenant_id == booking.tenant_id,
        )
        .first()
    )
    if not customer_package:
        raise HTTPException(status_code=404, detail="Package purchase not found")
    if customer_package.customer_id != booking.customer_id:
        raise HTTPException(status_code=400, detail="Package purchase belongs to another customer")

    package = (
        db.query(ServicePackage)
        .filter(
            ServicePackage.id == customer_package.package_id,
            ServicePackage.tenant_id == booking.tenant_id,
        )
        .first()
    )
    if not package:
        raise HTTPException(status_code=404, detail="Package not found")

    if requested_cents is not None and requested_cents != package.price_cents:
        logger.warning(
            f"⚠️ Package amount {requested_cents} does not match price {package.price_cents} "
            f"for purchase {customer_package.id}"
        )
        raise HTTPException(status_code=400, detail="Package amount does not match the package price")

    return package.price_cents


async def process_direct_payment(
    db: Session,
    booking_id: str,
    payment_type: str,
    card_token: Optional[str] = None,
    payment_method_id: Optional[str] = None,
    payer: Optional[Dict[str, Any]] = None,
    customer_package_id: Optional[str] = None,
    package_amount_cents: Optional[int] = None,
) -> dict:
    """
    Charge a booking directly with a card token or PIX

    The provider's answer is applied through the same reconciliation as the
    webhook, so whichever arrives first runs the paid side effects.
    """
    if payment_type == "card" and (not card_token or not payment_method_id):
        raise HTTPException(
            status_code=400, detail="Card payments require token and payment_method_id"
        )

    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    tenant = booking.tenant
    settings = (tenant.settings if tenant else None) or {}
    if not settings.get("allow_online_payment", True):
        raise HTTPException(status_code=400, detail="Online payment is disabled for this business")

    token = await get_valid_token(db, booking.tenant_id)
    if not token:
        raise HTTPException(status_code=400, detail="Mercado Pago not connected or token expired")

    if customer_package_id:
        amount_cents = _package_amount_cents(db, booking, customer_package_id, package_amount_cents)
    else:
        amount_cents = booking_amount_cents(booking, settings)

    commission_rate = get_commission_rate(db, booking.tenant_id)
    payment = reserve_payment(
        db,
        tenant_id=booking.tenant_id,
        amount_cents=amount_cents,
        commission_rate=commission_rate,
        booking_id=booking.id,
        customer_package_id=customer_package_id,
    )

    payer = payer or {}
    customer = booking.customer
    first_name, last_name = _split_name(customer.name if customer else None)
    service_name = booking.service.name if booking.service else "Service"
    tenant_name = tenant.name if tenant else PLATFORM_NAME

    body: Dict[str, Any] = {
        "transaction_amount": amount_cents / 100,
        "description": f"{service_name} - {tenant_name}",
        "payment_method_id": "pix" if payment_type == "pix" else payment_method_id,
        "statement_descriptor": _statement_descriptor(tenant),
        "additional_info": {
            "items": [
                {
                    "id": booking.service_id,
                    "title": service_name,
                    "quantity": 1,
                    "unit_price": amount_cents / 100,
                    "category_id": "services",
                }
            ]
        },
        "payer": {
            "email": payer.get("email") or (customer.email if customer else None),
            "first_name": first_name,
            "last_name": last_name,
        },
        "external_reference": payment.id,
        "metadata": {
            "booking_id": booking.id,
            "payment_id": payment.id,
            "tenant_id": booking.tenant_id,
        },
    }
    if payer.get("identification"):
        body["payer"]["identification"] = payer["identification"]
    if payment_type == "card":
        body["token"] = card_token
        body["installments"] = 1

    fee = marketplace_fee(amount_cents, commission_rate)
    if fee > 0:
        body["application_fee"] = fee
    notification_url = _notification_url()
    if notification_url:
        body["notification_url"] = notification_url

    try:
        result = await mp.create_payment(
            token.access_token, body, idempotency_key=f"{payment.id}-{payment_type}-{uuid.uuid4()}"
        )
    except mp.MercadoPagoAPIError as e:
        logger.error(f"❌ Mercado Pago charge failed for payment {payment.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment processing failed") from None
    except Exception as e:
        logger.error(f"❌ Error charging payment {payment.id}: {str(e)}")
        raise HTTPException(status_code=502, detail="Payment processing failed") from None

    status = await apply_provider_payment(db, payment, result)

    response = {
        "success": True,
        "payment_id": payment.id,
        "status": status,
        "provider_status": result.get("status"),
        "status_detail": result.get("status_detail"),
    }

    transaction_data = (result.get("point_of_interaction") or {}).get("transaction_data")
    if payment_type == "pix" and transaction_data:
        response["pix"] = {
            "qr_code": transaction_data.get("qr_code"),
            "qr_code_base64": transaction_data.get("qr_code_base64"),
            "ticket_url": transaction_data.get("ticket_url"),
        }

    logger.info(f"✅ Direct {payment_type} charge for booking {booking.id}: {status}")
    return response
