from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# 재시도 차수별 대기 시간(초). 작업 진행 이벤트는 사용자가 기다리고 있으므로 짧게 잡는다.
RetryDelays: list[float] = [
    1.0,
    5.0,
    15.0,
    60.0,
]


class MaxRetryExceededError(Exception):
    """재시도 차수가 RetryDelays 범위를 넘은 경우."""


@dataclass(slots=True)
class Event:
    """Kafka 메시지 한 건. payload 는 JSON 직렬화 가능한 dict 다."""

    id: str
    payload: Any
    retry: int = 0
    max_retry: int = 0
    last_error: str | None = None

    def __post_init__(self) -> None:
        if self.max_retry <= 0 or self.max_retry > len(RetryDelays):
            self.max_retry = len(RetryDelays)

    def retries_exhausted(self) -> bool:
        return self.retry >= self.max_retry


@dataclass(frozen=True, slots=True)
class Topic:
    """기본 토픽과 그 재시도 토픽(<base>.retry.N), DLQ(<base>.dlq) 이름을 묶는다."""

    base: str

    def dlq(self) -> str:
        return f"{self.base}.dlq"

    def get_retry_topics(self) -> list[str]:
        return [self.get_retry_topic(n) for n in range(1, len(RetryDelays) + 1)]

    def get_retry_topic(self, retry_count: int) -> str:
        if retry_count <= 0 or retry_count > len(RetryDelays):
            raise MaxRetryExceededError()
        return f"{self.base}.retry.{retry_count}"

    def subscription(self) -> list[str]:
        """컨슈머가 구독해야 하는 토픽 목록 (DLQ 제외)."""
        return [self.base, *self.get_retry_topics()]

    def retry_delay_for(self, topic_name: str) -> float:
        """topic_name 이 재시도 토픽이면 해당 차수의 대기 시간, 아니면 0."""
        prefix = f"{self.base}.retry."
        if not topic_name.startswith(prefix):
            return 0.0
        try:
            index = int(topic_name[len(prefix):])
        except ValueError:
            return 0.0
        if 1 <= index <= len(RetryDelays):
            return RetryDelays[index - 1]
        return 0.0
