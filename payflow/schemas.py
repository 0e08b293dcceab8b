"""Request schemas - Pydantic models for validation"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator

from .shared.validators import canonical_br_phone, validate_cpf, validate_email, validate_uuid


class CheckoutRequest(BaseModel):
    """Schema for creating a booking checkout"""

    booking_id: str

    @field_validator("booking_id")
    @classmethod
    def validate_booking_id(cls, v: str) -> str:
        if not v or not validate_uuid(v):
            raise ValueError("booking_id must be a valid UUID")
        return v


class PackageCheckoutRequest(BaseModel):
    """Schema for purchasing a service package"""

    tenant_id: str
    package_id: str
    customer_name: str
    customer_phone: str
    customer_email: str
    customer_document: Optional[str] = None  # CPF

    @field_validator("customer_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("customer_name is required")
        return v

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        canonical = canonical_br_phone(v)
        if not canonical or len(canonical) < 10:
            raise ValueError("customer_phone must include area code and number")
        return canonical

    @field_validator("customer_email")
    @classmethod
    def validate_email_field(cls, v: str) -> str:
        if not v:
            raise ValueError("customer_email is required")
        return validate_email(v)

    @field_validator("customer_document")
    @classmethod
    def validate_document(cls, v: Optional[str]) -> Optional[str]:
        return validate_cpf(v)


class DirectPaymentRequest(BaseModel):
    """Schema for a transparent (PIX or card) charge"""

    booking_id: str
    payment_type: str  # "pix" | "card"
    card_token: Optional[str] = None
    payment_method_id: Optional[str] = None  # e.g. "visa", "master"
    payer: Optional[Dict[str, Any]] = None
    customer_package_id: Optional[str] = None
    package_amount_cents: Optional[int] = None

    @field_validator("payment_type")
    @classmethod
    def validate_payment_type(cls, v: str) -> str:
        if v not in {"pix", "card"}:
            raise ValueError("payment_type must be 'pix' or 'card'")
        return v

    @field_validator("package_amount_cents")
    @classmethod
    def validate_amount(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("package_amount_cents must be positive")
        return v


class SubscriptionCheckoutRequest(BaseModel):
    """Schema for subscribing a customer to a plan"""

    tenant_id: str
    customer_id: str
    plan_id: str


class CancelSubscriptionRequest(BaseModel):
    """Schema for cancelling a subscription"""

    reason: Optional[str] = None
