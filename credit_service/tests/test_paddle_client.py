from __future__ import annotations

import httpx
import pytest

from credit_service.app.billing.paddle_client import PaddleClient
from credit_service.app.config import PaddleSettings
from credit_service.app.exceptions import BillingProviderError


def _client(handler) -> PaddleClient:
    return PaddleClient(
        "https://sandbox-api.paddle.com",
        "pdl_test_key",
        transport=httpx.MockTransport(handler),
    )


def test_find_customer_by_email_sends_auth_and_query() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "ctm_01"}]})

    client = _client(handler)

    assert client.find_customer_id_by_email("a@example.com") == "ctm_01"
    assert seen[0].url.path == "/customers"
    assert seen[0].url.params["email"] == "a@example.com"
    assert seen[0].headers["Authorization"] == "Bearer pdl_test_key"


def test_missing_customer_returns_none() -> None:
    client = _client(lambda request: httpx.Response(200, json={"data": []}))

    assert client.find_customer_id_by_email("nobody@example.com") is None


def test_latest_transaction_query() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "txn_1"}]})

    transaction = _client(handler).get_latest_transaction("sub_01")

    assert transaction == {"id": "txn_1"}
    params = seen[0].url.params
    assert params["subscription_id"] == "sub_01"
    assert params["status"] == "completed"
    assert params["per_page"] == "1"


def test_active_subscriptions_include_trialing() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "sub_01"}, {"id": "sub_02"}]})

    subs = _client(handler).list_active_subscriptions("ctm_01")

    assert [sub["id"] for sub in subs] == ["sub_01", "sub_02"]
    assert seen[0].url.params["status"] == "active,trialing"


def test_error_status_becomes_provider_error() -> None:
    client = _client(lambda request: httpx.Response(503, text="upstream unavailable"))

    with pytest.raises(BillingProviderError, match="503"):
        client.list_active_subscriptions("ctm_01")


def test_network_error_becomes_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BillingProviderError):
        _client(handler).get_latest_transaction("sub_01")


def test_invalid_json_becomes_provider_error() -> None:
    client = _client(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(BillingProviderError, match="invalid JSON"):
        client.find_customer_id_by_email("a@example.com")


def test_from_settings_requires_api_key() -> None:
    with pytest.raises(RuntimeError):
        PaddleClient.from_settings(
            PaddleSettings(api_key=None, webhook_secret=None, environment="sandbox")
        )
