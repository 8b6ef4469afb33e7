from __future__ import annotations

import os


def get_brokers() -> str:
    value = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
    if not value:
        raise RuntimeError("KAFKA_BOOTSTRAP_SERVERS environment variable is required")
    return value


def get_group_id() -> str:
    value = os.getenv("KAFKA_GROUP_ID")
    if not value:
        raise RuntimeError("KAFKA_GROUP_ID environment variable is required")
    return value


def get_message_max_bytes() -> int | None:
    """Kafka producer 의 message.max.bytes 값을 반환한다.

    - KAFKA_MESSAGE_MAX_BYTES 가 비어 있거나 0 이하이면 None (라이브러리 기본값 사용).
    - 정수가 아니면 설정 오류를 조기에 드러내도록 RuntimeError 를 발생시킨다.
    """

    raw_value = os.getenv("KAFKA_MESSAGE_MAX_BYTES", "").strip()
    if not raw_value:
        return None

    try:
        value = int(raw_value)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(
            "KAFKA_MESSAGE_MAX_BYTES must be an integer value, got: " f"{raw_value!r}"
        ) from exc

    if value <= 0:
        return None

    return value


def get_publish_flush_timeout() -> float:
    """close() 시 미전송 메시지를 기다릴 최대 시간(초)."""

    raw_value = os.getenv("KAFKA_FLUSH_TIMEOUT_SECONDS", "").strip()
    if not raw_value:
        return 5.0
    try:
        return float(raw_value)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(
            f"KAFKA_FLUSH_TIMEOUT_SECONDS must be a number, got: {raw_value!r}"
        ) from exc
