"""생성 작업 API 라우터.

작업 실행기(외부)가 작업 시작 시 크레딧을 예약하고, 출력이 도착할 때마다 진행을 보고한다.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ...models.job import GenerationJob, JobProgress
from ...services.job_service import JobLifecycleTracker, get_job_tracker
from ..schemas.common import PaginatedResponse


router = APIRouter()


class CreateJobRequest(BaseModel):
    user_id: str
    process_id: str
    category: str
    tool_id: str
    credits_required: int = 0
    expected_output_count: int = 1
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProgressRequest(BaseModel):
    """이번 시도에서 새로 생긴 결과만 보고한다. 누적은 서버가 한다."""

    completed_outputs: list[dict[str, Any]] = Field(default_factory=list)
    failed_count: int = Field(default=0, ge=0)
    total_expected: int | None = Field(default=None, ge=1)
    terminal_error: str | None = None


class FailJobRequest(BaseModel):
    error: str


class JobResponse(BaseModel):
    process_id: str
    user_id: str
    category: str
    tool_id: str
    status: str
    credits_used: int
    credits_refunded: int
    expected_output_count: int
    completed_output_count: int
    failed_output_count: int
    progress: int
    outputs: list[dict[str, Any]]
    result_payload: dict[str, Any] | None
    error: str | None
    created_at: datetime
    completed_at: datetime | None


def _to_response(job: GenerationJob) -> JobResponse:
    return JobResponse(
        process_id=job.process_id,
        user_id=job.user_id,
        category=job.category,
        tool_id=job.tool_id,
        status=str(job.status),
        credits_used=job.credits_used,
        credits_refunded=job.credits.refunded,
        expected_output_count=job.expected_output_count,
        completed_output_count=job.completed_output_count,
        failed_output_count=job.failed_output_count,
        progress=job.progress_percent,
        outputs=job.outputs,
        result_payload=job.result_payload,
        error=job.error,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_job(
    req: CreateJobRequest,
    tracker: Annotated[JobLifecycleTracker, Depends(get_job_tracker)],
) -> JobResponse:
    """크레딧 예약 + 작업 등록. 잔액 부족 시 402."""
    job = tracker.create_job(
        user_id=req.user_id,
        process_id=req.process_id,
        category=req.category,
        tool_id=req.tool_id,
        credits_required=req.credits_required,
        expected_output_count=req.expected_output_count,
        metadata=req.metadata,
    )
    return _to_response(job)


@router.get("")
def list_jobs(
    user_id: str,
    tracker: Annotated[JobLifecycleTracker, Depends(get_job_tracker)],
    page: int = 1,
    page_size: int = 20,
) -> PaginatedResponse[JobResponse]:
    items, total = tracker.list_jobs(user_id, page, page_size)
    return PaginatedResponse(
        items=[_to_response(job) for job in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{process_id}")
def get_job(
    process_id: str,
    tracker: Annotated[JobLifecycleTracker, Depends(get_job_tracker)],
) -> JobResponse:
    return _to_response(tracker.get_job(process_id))


@router.post("/{process_id}/progress")
def record_progress(
    process_id: str,
    req: ProgressRequest,
    tracker: Annotated[JobLifecycleTracker, Depends(get_job_tracker)],
) -> JobResponse:
    job = tracker.record_progress(
        process_id,
        JobProgress(
            completed_outputs=req.completed_outputs,
            failed_count=req.failed_count,
            total_expected=req.total_expected,
            terminal_error=req.terminal_error,
        ),
    )
    return _to_response(job)


@router.post("/{process_id}/fail")
def fail_job(
    process_id: str,
    req: FailJobRequest,
    tracker: Annotated[JobLifecycleTracker, Depends(get_job_tracker)],
) -> JobResponse:
    """복구 불가 오류로 작업을 종료한다. 걸린 크레딧은 환불된다."""
    return _to_response(tracker.fail_job(process_id, req.error))
