"""Encryption helpers for provider credentials stored in the database"""

from typing import Optional

from cryptography.fernet import Fernet

from ..config import TOKEN_ENCRYPTION_KEY


def _cipher() -> Fernet:
    if not TOKEN_ENCRYPTION_KEY:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY is not configured")
    return Fernet(TOKEN_ENCRYPTION_KEY.encode())


def encrypt_token(value: str) -> str:
    """Encrypt a credential for storage"""
    return _cipher().encrypt(value.encode()).decode()


def decrypt_token(value: Optional[str]) -> Optional[str]:
    """Decrypt a stored credential; empty values stay empty"""
    if not value:
        return None
    return _cipher().decrypt(value.encode()).decode()
