"""Paddle Billing REST API 클라이언트 (정합성 점검에서 사용하는 조회 API만)."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ..config import PaddleSettings
from ..exceptions import BillingProviderError


logger = logging.getLogger(__name__)


PADDLE_TIMEOUT_SECONDS = 10.0


class BillingProviderInterface(Protocol):
    def find_customer_id_by_email(
        self, email: str
    ) -> str | None:  # pragma: no cover - Protocol
        ...

    def list_active_subscriptions(
        self, customer_id: str
    ) -> list[dict[str, Any]]:  # pragma: no cover - Protocol
        ...

    def get_latest_transaction(
        self, subscription_id: str
    ) -> dict[str, Any] | None:  # pragma: no cover - Protocol
        ...


class PaddleClient(BillingProviderInterface):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = PADDLE_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: PaddleSettings) -> "PaddleClient":
        if not settings.api_key:
            raise RuntimeError("PADDLE_API_KEY environment variable is required")
        return cls(settings.api_base_url, settings.api_key)

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._client.get(path, params=params)
        except httpx.RequestError as exc:
            raise BillingProviderError(f"paddle request failed: {path}: {exc}") from exc

        if resp.status_code != 200:
            body_sample = resp.text[:500]
            raise BillingProviderError(
                f"paddle returned {resp.status_code} for {path}: {body_sample}"
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise BillingProviderError(f"paddle returned invalid JSON for {path}") from exc
        return body if isinstance(body, dict) else {}

    def find_customer_id_by_email(self, email: str) -> str | None:
        body = self._get("/customers", {"email": email})
        customers = body.get("data") or []
        if not customers:
            return None
        return str(customers[0]["id"])

    def list_active_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        body = self._get(
            "/subscriptions",
            {"customer_id": customer_id, "status": "active,trialing"},
        )
        return list(body.get("data") or [])

    def get_latest_transaction(self, subscription_id: str) -> dict[str, Any] | None:
        body = self._get(
            "/transactions",
            {
                "subscription_id": subscription_id,
                "status": "completed",
                "order_by": "billed_at[DESC]",
                "per_page": 1,
            },
        )
        transactions = body.get("data") or []
        return transactions[0] if transactions else None
