"""
Mercado Pago API Client
Thin async wrapper around the Mercado Pago REST endpoints used for
checkout, direct charges, preapprovals (subscriptions) and OAuth refresh
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import MP_API_URL, MP_CLIENT_ID, MP_CLIENT_SECRET, MP_HTTP_TIMEOUT

logger = logging.getLogger(__name__)


class MercadoPagoAPIError(Exception):
    """Non-2xx response from the Mercado Pago API"""

    def __init__(self, status_code: int, message: str, payload: Optional[Any] = None):
        super().__init__(f"Mercado Pago API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=MP_API_URL, timeout=MP_HTTP_TIMEOUT)


def _auth_headers(access_token: str, idempotency_key: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["X-Idempotency-Key"] = idempotency_key
    return headers


def _parse(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        payload = response.text

    if response.status_code >= 400:
        message = payload.get("message", "") if isinstance(payload, dict) else str(payload)
        raise MercadoPagoAPIError(response.status_code, message or response.reason_phrase, payload)

    return payload if isinstance(payload, dict) else {}


async def _request(
    method: str,
    path: str,
    access_token: str,
    json: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    async with _client() as client:
        response = await client.request(
            method, path, json=json, headers=_auth_headers(access_token, idempotency_key)
        )
    if response.status_code >= 400:
        logger.warning(f"⚠️ Mercado Pago {method} {path} -> {response.status_code}")
    return _parse(response)


# ============================================================================
# PAYMENTS & CHECKOUT
# ============================================================================


async def get_payment(access_token: str, payment_id: str) -> Dict[str, Any]:
    """Fetch a payment by its provider id"""
    return await _request("GET", f"/v1/payments/{payment_id}", access_token)


async def create_preference(access_token: str, preference: Dict[str, Any]) -> Dict[str, Any]:
    """Create a hosted checkout preference; returns id and init_point"""
    return await _request("POST", "/checkout/preferences", access_token, json=preference)


async def create_payment(
    access_token: str, payment: Dict[str, Any], idempotency_key: str
) -> Dict[str, Any]:
    """Create a direct (card / PIX) payment"""
    return await _request(
        "POST", "/v1/payments", access_token, json=payment, idempotency_key=idempotency_key
    )


# ============================================================================
# PREAPPROVALS (SUBSCRIPTIONS)
# ============================================================================


async def get_preapproval(access_token: str, preapproval_id: str) -> Dict[str, Any]:
    return await _request("GET", f"/preapproval/{preapproval_id}", access_token)


async def create_preapproval(access_token: str, preapproval: Dict[str, Any]) -> Dict[str, Any]:
    """Create a recurring charge authorization; returns id and init_point"""
    return await _request("POST", "/preapproval", access_token, json=preapproval)


async def update_preapproval_status(
    access_token: str, preapproval_id: str, status: str
) -> Dict[str, Any]:
    """Set preapproval status: paused, authorized or cancelled"""
    return await _request(
        "PUT", f"/preapproval/{preapproval_id}", access_token, json={"status": status}
    )


async def get_authorized_payment(access_token: str, authorized_payment_id: str) -> Dict[str, Any]:
    """Fetch one recurring charge of a preapproval"""
    return await _request("GET", f"/authorized_payments/{authorized_payment_id}", access_token)


# ============================================================================
# OAUTH
# ============================================================================


async def exchange_refresh_token(refresh_token: str) -> Dict[str, Any]:
    """
    Exchange a refresh token for a new access token

    Returns the token response (access_token, refresh_token, expires_in, public_key)
    """
    if not MP_CLIENT_ID or not MP_CLIENT_SECRET:
        raise MercadoPagoAPIError(0, "Mercado Pago OAuth client is not configured")

    async with _client() as client:
        response = await client.post(
            "/oauth/token",
            data={
                "client_id": MP_CLIENT_ID,
                "client_secret": MP_CLIENT_SECRET,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            headers={"Accept": "application/json"},
        )
    return _parse(response)
