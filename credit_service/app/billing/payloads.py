"""Paddle 웹훅/API 페이로드에서 필요한 값을 꺼내는 헬퍼."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Mapping

from common.mongo.types import ensure_utc_datetime

from ..models.balance import SubscriptionStatus


logger = logging.getLogger(__name__)


# 결제사 상태 -> 로컬 상태
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
}


def map_status(raw: Any) -> SubscriptionStatus | str:
    value = str(raw or "").strip()
    return PROVIDER_STATUS_MAP.get(value, value)


def parse_datetime(raw: Any) -> datetime | None:
    """RFC3339 문자열을 UTC datetime 으로 변환한다. 비어 있거나 형식이 틀리면 None."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc_datetime(raw)
    try:
        return ensure_utc_datetime(datetime.fromisoformat(str(raw)))
    except ValueError:
        logger.warning("unparseable provider datetime: %r", raw)
        return None


def parse_custom_data(raw: Any) -> dict[str, Any]:
    """custom_data 는 객체 또는 JSON 문자열로 올 수 있다."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("custom_data is not valid JSON: %r", raw)
            return {}
        return dict(parsed) if isinstance(parsed, Mapping) else {}
    return {}


def first_item(data: Mapping[str, Any]) -> tuple[str | None, str | None, int]:
    """첫 번째 라인 아이템의 (price_id, product_id, quantity)."""
    items = data.get("items") or []
    if not items:
        return None, None, 0
    item = items[0] or {}
    price = item.get("price") or {}
    price_id = price.get("id") or item.get("price_id")
    product_id = price.get("product_id") or item.get("product_id")
    quantity = int(item.get("quantity") or 1)
    return price_id, product_id, quantity


def custom_user_id(data: Mapping[str, Any]) -> str | None:
    user_id = parse_custom_data(data.get("custom_data")).get("user_id")
    return str(user_id) if user_id else None
