"""Shared validation utilities"""

import re
import uuid
from typing import List, Optional

from ..config import DEFAULT_COUNTRY_CODE


def validate_uuid(value: str) -> bool:
    """Validate UUID format"""
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


def canonical_br_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a Brazilian phone number to its local canonical form.

    Strips formatting and the country code, and inserts the mobile 9th digit
    when an 8-digit subscriber number is given ("11 8888-7777" -> "11988887777").

    Args:
        phone: Phone number string in various formats

    Returns:
        Digits only, area code + subscriber number
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)

    if digits.startswith(DEFAULT_COUNTRY_CODE) and len(digits) >= 12:
        digits = digits[len(DEFAULT_COUNTRY_CODE):]

    if len(digits) == 10:
        digits = digits[:2] + "9" + digits[2:]

    return digits


def phone_variants(phone: str) -> List[str]:
    """Canonical phone plus its form without the mobile 9th digit, for lookups"""
    canonical = canonical_br_phone(phone)
    if not canonical:
        return []
    variants = [canonical]
    if len(canonical) == 11:
        variants.append(canonical[:2] + canonical[3:])
    return variants


def format_whatsapp_phone(phone: str) -> str:
    """Canonical local number prefixed with the default country code"""
    digits = canonical_br_phone(phone)
    if not digits:
        return ""
    return f"{DEFAULT_COUNTRY_CODE}{digits}"


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Args:
        email: Email address string

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    # Basic email validation pattern
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def validate_cpf(cpf: Optional[str]) -> Optional[str]:
    """Strip CPF formatting; 11 digits required"""
    if not cpf:
        return cpf

    digits = re.sub(r"\D", "", cpf)
    if len(digits) != 11:
        raise ValueError("CPF must have 11 digits")

    return digits
