"""저장소 호출을 감싸는 재시도 정책.

지수 백오프 + 지터를 사용하며, 최대 시도 횟수를 넘기면 마지막 예외를 원인으로
RetryExhaustedError 를 발생시킨다. 멱등하지 않은 연산은 멱등성 키로 보호된 경우에만 감싼다.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]


class RetryExhaustedError(Exception):
    """최대 재시도 횟수를 모두 소진한 경우."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def uniform_jitter(delay: float) -> float:
    """0 ~ delay 구간의 균등 분포 지터."""
    return random.uniform(0, delay)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    jitter: Callable[[float], float] = field(default=uniform_jitter)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """attempt 번째 실패 직후 대기할 시간(초). attempt 는 1부터 시작한다."""
        base = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return base + self.jitter(base)

    def call(self, fn: Callable[[], T], *, retry_on: RetryPredicate) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if not retry_on(exc):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "retry exhausted after %d attempts: %s", attempt, exc
                    )
                    raise RetryExhaustedError(attempt, exc) from exc

                delay = self.delay_for(attempt)
                logger.warning(
                    "transient failure (attempt %d/%d), retrying in %.3fs: %s",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
