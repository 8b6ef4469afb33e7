from __future__ import annotations

import uuid
from typing import Any, Mapping

from .core import Event


def new_json_event(
    payload: Mapping[str, Any],
    *,
    max_retry: int | None = None,
    event_id: str | None = None,
) -> Event:
    """dict 페이로드를 발행용 Event 로 감싼다.

    event_id 는 Kafka 메시지 키로도 쓰이므로, 도메인 이벤트 ID 를 넘기면 같은 이벤트의
    재발행이 같은 파티션으로 간다. 비어 있으면 uuid4 를 쓴다.
    """
    return Event(
        id=event_id or uuid.uuid4().hex,
        payload=dict(payload),
        max_retry=max_retry or 0,
    )
