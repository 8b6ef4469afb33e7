"""생성 작업 도메인 모델."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)


class JobCredits(BaseModel):
    """작업에 걸린 크레딧 예약/환불 기록."""

    charged: int = 0
    refunded: int = 0
    deduction_ref: str | None = None
    refund_ref: str | None = None


class GenerationJob(BaseModel):
    id: str | None = None
    process_id: str
    user_id: str
    category: str
    tool_id: str
    status: JobStatus = JobStatus.PROCESSING
    credits: JobCredits = Field(default_factory=JobCredits)
    expected_output_count: int = 1
    completed_output_count: int = 0
    failed_output_count: int = 0
    outputs: list[dict[str, Any]] = Field(default_factory=list)
    result_payload: dict[str, Any] | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def credits_used(self) -> int:
        return self.credits.charged

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def accounted_output_count(self) -> int:
        return self.completed_output_count + self.failed_output_count

    @property
    def progress_percent(self) -> int:
        if self.expected_output_count <= 0:
            return 100
        ratio = self.accounted_output_count / self.expected_output_count
        return min(100, round(ratio * 100))


class JobProgress(BaseModel):
    """작업 실행기가 한 번의 시도에 대해 보고하는 내용."""

    completed_outputs: list[dict[str, Any]] = Field(default_factory=list)
    failed_count: int = 0
    total_expected: int | None = None
    terminal_error: str | None = None
