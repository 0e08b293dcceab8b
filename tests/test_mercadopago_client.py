"""Tests for the Mercado Pago REST wrapper against a mocked transport"""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from payflow.services import mercadopago_client as mp


def _client_factory(handler):
    def factory():
        return httpx.AsyncClient(
            base_url="https://api.mercadopago.com", transport=httpx.MockTransport(handler)
        )

    return factory


class TestRequests:
    def test_get_payment_sends_bearer_token(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"id": 123, "status": "approved"})

        with patch.object(mp, "_client", _client_factory(handler)):
            result = asyncio.run(mp.get_payment("APP_USR-abc", "123"))

        assert result["status"] == "approved"
        assert seen["path"] == "/v1/payments/123"
        assert seen["auth"] == "Bearer APP_USR-abc"

    def test_error_response_raises_with_status_and_message(self):
        def handler(request):
            return httpx.Response(404, json={"message": "Payment not found", "status": 404})

        with patch.object(mp, "_client", _client_factory(handler)):
            with pytest.raises(mp.MercadoPagoAPIError) as exc:
                asyncio.run(mp.get_payment("APP_USR-abc", "999"))

        assert exc.value.status_code == 404
        assert exc.value.message == "Payment not found"
        assert exc.value.payload["status"] == 404

    def test_create_payment_sends_idempotency_key(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("X-Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 555, "status": "pending"})

        with patch.object(mp, "_client", _client_factory(handler)):
            asyncio.run(
                mp.create_payment("APP_USR-abc", {"transaction_amount": 100.0}, idempotency_key="pay-1-pix")
            )

        assert seen["key"] == "pay-1-pix"
        assert seen["body"]["transaction_amount"] == 100.0

    def test_update_preapproval_status_uses_put(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "pre-1", "status": "paused"})

        with patch.object(mp, "_client", _client_factory(handler)):
            asyncio.run(mp.update_preapproval_status("APP_USR-abc", "pre-1", "paused"))

        assert seen == {"method": "PUT", "path": "/preapproval/pre-1", "body": {"status": "paused"}}


class TestRefreshToken:
    def test_exchange_posts_form_encoded_refresh_grant(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(
                200,
                json={"access_token": "APP_USR-new", "refresh_token": "TG-new", "expires_in": 15552000},
            )

        with patch.object(mp, "_client", _client_factory(handler)):
            tokens = asyncio.run(mp.exchange_refresh_token("TG-old"))

        assert tokens["access_token"] == "APP_USR-new"
        assert seen["path"] == "/oauth/token"
        assert seen["form"]["grant_type"] == "refresh_token"
        assert seen["form"]["refresh_token"] == "TG-old"
        assert seen["form"]["client_id"] == "test-client-id"

    def test_exchange_without_client_credentials_raises(self):
        with patch.object(mp, "MP_CLIENT_ID", None):
            with pytest.raises(mp.MercadoPagoAPIError):
                asyncio.run(mp.exchange_refresh_token("TG-old"))
