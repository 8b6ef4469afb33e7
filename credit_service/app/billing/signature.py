"""Paddle 웹훅 서명 검증.

헤더 형식: ``Paddle-Signature: ts=1671552777;h1=eb4d0dc8...``
서명 대상은 ``"{ts}:{raw_body}"`` 이고 HMAC-SHA256(웹훅 시크릿) 의 hex 다.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from ..exceptions import WebhookConfigurationError, WebhookSignatureError


SIGNATURE_HEADER = "Paddle-Signature"
DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """헤더에서 (타임스탬프, h1 서명 목록)을 꺼낸다. 시크릿 교체 중에는 h1 이 여러 개일 수 있다."""
    timestamp: int | None = None
    signatures: list[str] = []

    for part in header.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "ts":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise WebhookSignatureError("invalid signature timestamp") from exc
        elif key == "h1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("malformed signature header")
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    signed_payload = f"{timestamp}:".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """서명이 유효하면 그대로 반환하고, 아니면 예외를 던진다."""
    if not secret:
        raise WebhookConfigurationError("webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("missing signature header")

    timestamp, signatures = parse_signature_header(header)

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("signature timestamp outside tolerance window")

    expected = compute_signature(secret, timestamp, raw_body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("signature mismatch")
