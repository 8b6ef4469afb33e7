"""생성 작업(GenerationJob) 관련 이벤트 정의."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Self


class JobEventType:
    """작업 이벤트 타입 상수."""

    JOB_PROGRESS = "job.progress"
    JOB_STATUS_CHANGED = "job.status_changed"


@dataclass(slots=True)
class JobProgressEvent:
    """작업 실행기가 발행하는 진행 이벤트.

    이번 시도에서 새로 완료된 출력과 새로 실패한 개수만 담는다. 누적/전이 계산은 원장 쪽 책임이다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    process_id: str
    completed_outputs: list[dict[str, Any]] = field(default_factory=list)
    failed_count: int = 0
    total_expected: int | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        raw_outputs = data.get("completed_outputs") or []
        total_expected = data.get("total_expected")
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            process_id=str(data["process_id"]),
            completed_outputs=[dict(item) for item in raw_outputs],
            failed_count=int(data.get("failed_count", 0)),
            total_expected=int(total_expected) if total_expected is not None else None,
            error=data.get("error"),
        )


@dataclass(slots=True)
class JobStatusEvent:
    """실시간 알림 채널로 전달되는 작업 상태 이벤트.

    환불이 있는 경우 커밋된 뒤에 발행되므로, 구독자가 잔액을 다시 조회하면 환불이 반영되어 있다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    process_id: str
    user_id: str
    status: str
    payload: dict[str, Any] | None = None
    error: str | None = None
    credits_refunded: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            process_id=str(data["process_id"]),
            user_id=str(data["user_id"]),
            status=str(data["status"]),
            payload=data.get("payload"),
            error=data.get("error"),
            credits_refunded=int(data.get("credits_refunded", 0)),
        )
