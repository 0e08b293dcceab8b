"""
Mercado Pago Token Service
Resolves a usable access token per tenant, refreshing it before it expires
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import InvalidToken
from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..config import MP_DEFAULT_TOKEN_LIFETIME_SECONDS, MP_TOKEN_REFRESH_BUFFER_MINUTES
from ..models_mercadopago import MercadoPagoConnection
from ..shared.crypto import decrypt_token, encrypt_token
from . import mercadopago_client as mp

logger = logging.getLogger(__name__)


@dataclass
class ValidToken:
    access_token: str
    tenant_id: str
    public_key: Optional[str] = None


async def get_valid_token(db: Session, tenant_id: str) -> Optional[ValidToken]:
    """
    Get a valid Mercado Pago access token for a tenant
    Returns None if the tenant has no connection or the token cannot be made valid
    """
    connection = (
        db.query(MercadoPagoConnection).filter(MercadoPagoConnection.tenant_id == tenant_id).first()
    )

    if not connection:
        logger.info(f"ℹ️ No Mercado Pago connection for tenant {tenant_id}")
        return None

    return await ensure_valid_token(db, connection)


async def get_all_valid_tokens(db: Session) -> List[ValidToken]:
    """Valid tokens for every connected tenant (webhooks don't say which tenant they belong to)"""
    connections = db.query(MercadoPagoConnection).all()

    valid_tokens = []
    for connection in connections:
        token = await ensure_valid_token(db, connection)
        if token:
            valid_tokens.append(token)
    return valid_tokens


async def ensure_valid_token(
    db: Session, connection: MercadoPagoConnection, now: Optional[datetime] = None
) -> Optional[ValidToken]:
    now = now or datetime.utcnow()

    try:
        access_token = decrypt_token(connection.access_token)
    except InvalidToken:
        logger.error(f"❌ Stored access token for tenant {connection.tenant_id} cannot be decrypted")
        return None

    if not access_token:
        logger.error(f"❌ Empty access token for tenant {connection.tenant_id}")
        return None

    expires_at = connection.token_expires_at
    if expires_at and now >= expires_at - timedelta(minutes=MP_TOKEN_REFRESH_BUFFER_MINUTES):
        logger.info(f"🔄 Mercado Pago token expiring for tenant {connection.tenant_id}, refreshing...")
        refreshed = await refresh_token(db, connection, now=now)
        if refreshed:
            return refreshed

        if now < expires_at:
            logger.warning(
                f"⚠️ Token refresh failed for tenant {connection.tenant_id}, "
                f"using existing token until {expires_at.isoformat()}"
            )
            return ValidToken(access_token, connection.tenant_id, connection.public_key)

        logger.error(f"❌ Token expired and refresh failed for tenant {connection.tenant_id}")
        return None

    return ValidToken(access_token, connection.tenant_id, connection.public_key)


async def refresh_token(
    db: Session, connection: MercadoPagoConnection, now: Optional[datetime] = None
) -> Optional[ValidToken]:
    """
    Refresh the tenant's token and persist it
    Returns the new token, or None if the provider refresh failed
    """
    now = now or datetime.utcnow()
    tenant_id = connection.tenant_id

    try:
        stored_refresh_token = decrypt_token(connection.refresh_token)
    except InvalidToken:
        logger.error(f"❌ Stored refresh token for tenant {tenant_id} cannot be decrypted")
        return None

    if not stored_refresh_token:
        logger.error(f"❌ No refresh token for tenant {tenant_id}, cannot refresh")
        return None

    try:
        tokens = await mp.exchange_refresh_token(stored_refresh_token)
    except mp.MercadoPagoAPIError as e:
        logger.error(f"❌ Token refresh failed for tenant {tenant_id}: {e}")
        return None
    except Exception as e:
        logger.error(f"❌ Error refreshing token for tenant {tenant_id}: {str(e)}")
        return None

    new_access_token = tokens.get("access_token")
    if not new_access_token:
        logger.error(f"❌ No access token in refresh response for tenant {tenant_id}")
        return None

    new_refresh_token = tokens.get("refresh_token") or stored_refresh_token
    public_key = tokens.get("public_key") or connection.public_key
    expires_in = tokens.get("expires_in")
    if not expires_in:
        logger.warning(
            f"⚠️ Refresh response for tenant {tenant_id} has no expires_in, "
            f"assuming {MP_DEFAULT_TOKEN_LIFETIME_SECONDS}s"
        )
        expires_in = MP_DEFAULT_TOKEN_LIFETIME_SECONDS
    expires_at = now + timedelta(seconds=int(expires_in))

    try:
        connection.access_token = encrypt_token(new_access_token)
        connection.refresh_token = encrypt_token(new_refresh_token)
        connection.public_key = public_key
        connection.token_expires_at = expires_at
        connection.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Failed to save refreshed token for tenant {tenant_id}: {str(e)}")

    logger.info(
        f"✅ Mercado Pago token refreshed for tenant {tenant_id}, expires {expires_at.isoformat()}"
    )
    return ValidToken(new_access_token, tenant_id, public_key)


async def fetch_with_any_token(
    db: Session,
    object_id: str,
    fetch: Optional[Callable[[str, str], Awaitable[Dict[str, Any]]]] = None,
    label: str = "Payment",
) -> Tuple[Dict[str, Any], ValidToken]:
    """
    Find which tenant a provider object belongs to by fetching it with
    each connected tenant's token until one succeeds
    """
    fetch = fetch or mp.get_payment
    tokens = await get_all_valid_tokens(db)
    if not tokens:
        logger.error(f"❌ No valid Mercado Pago tokens available to fetch {label} {object_id}")
        raise HTTPException(status_code=400, detail="No Mercado Pago connection available")

    for token in tokens:
        try:
            result = await fetch(token.access_token, object_id)
            logger.info(f"✅ {label} {object_id} found for tenant {token.tenant_id}")
            return result, token
        except mp.MercadoPagoAPIError as e:
            logger.debug(f"{label} {object_id} not visible to tenant {token.tenant_id}: {e.status_code}")
        except Exception as e:
            logger.warning(f"⚠️ Error fetching {label} {object_id} for tenant {token.tenant_id}: {e}")

    logger.error(f"❌ {label} {object_id} not found with any tenant token")
    raise HTTPException(status_code=404, detail=f"{label} not found in Mercado Pago")
