"""생성 작업 생명주기 추적.

상태 전이: processing -> completed | failed.

- 출력 도착 보고는 process_id 기준 원자적 $inc 로 누적한다.
- 모든 출력이 집계되면 하나라도 성공했을 때 completed, 전부 실패했을 때만 failed.
- 실행기가 복구 불가 오류를 보고하면 즉시 failed.
- failed 로 전이되고 크레딧이 걸려 있으면 환불한 뒤에 알림을 보낸다.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database
from common.mongo.types import utc_now

from ..exceptions import (
    CreditValidationError,
    DuplicateJobError,
    InsufficientBalanceError,
    InvalidAmountError,
    JobConflictError,
    JobNotFoundError,
)
from ..models.job import GenerationJob, JobCredits, JobProgress, JobStatus
from ..models.ledger import CreditOperationResult, TransactionSource, UsageDetails
from ..notifications.job_notifier import JobNotifierInterface, get_job_notifier
from ..repositories.interfaces import JobRepositoryInterface
from ..repositories.job_repository import JobRepository
from .credit_service import CreditService, get_credit_service


logger = logging.getLogger(__name__)


class JobLifecycleTracker:
    def __init__(
        self,
        job_repo: JobRepositoryInterface,
        credit_service: CreditService,
        notifier: JobNotifierInterface,
    ) -> None:
        self._job_repo = job_repo
        self._credits = credit_service
        self._notifier = notifier

    # -------- 생성 --------

    def create_job(
        self,
        user_id: str,
        process_id: str,
        category: str,
        tool_id: str,
        credits_required: int,
        expected_output_count: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> GenerationJob:
        """크레딧을 예약(차감)하고 작업을 등록한다. 같은 process_id 로 다시 호출하면 기존 작업을 반환한다."""
        existing = self._job_repo.find_by_process_id(process_id)
        if existing is not None:
            return _same_request(existing, user_id, credits_required)

        if isinstance(credits_required, bool) or credits_required < 0:
            raise InvalidAmountError(f"credits_required must be >= 0, got {credits_required!r}")
        if expected_output_count < 1:
            raise CreditValidationError("expected_output_count must be >= 1")

        if credits_required > 0 and not self._credits.has_sufficient_balance(
            user_id, credits_required
        ):
            balance = self._credits.get_balance(user_id)
            raise InsufficientBalanceError(user_id, balance.credits, credits_required)

        deduction: CreditOperationResult | None = None
        if credits_required > 0:
            deduction = self._credits.deduct_credits(
                user_id,
                credits_required,
                f"{category.title()} generation with {tool_id}",
                usage_details=UsageDetails(
                    operation_type=f"{category}_generation",
                    model_id=tool_id,
                    generation_id=process_id,
                ),
                idempotency_key=f"job:{process_id}",
                metadata={"process_id": process_id},
            )
            if deduction.replayed and self._credits.is_refunded(deduction.transaction_ref):
                # 이전 등록 시도가 실패해 이미 환불된 차감이다
                raise CreditValidationError(
                    f"process_id {process_id} failed to start before; use a new process_id"
                )

        now = utc_now()
        job = GenerationJob(
            process_id=process_id,
            user_id=user_id,
            category=category,
            tool_id=tool_id,
            credits=JobCredits(
                charged=credits_required,
                deduction_ref=deduction.transaction_ref if deduction else None,
            ),
            expected_output_count=expected_output_count,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

        try:
            created = self._job_repo.insert(job)
        except DuplicateJobError:
            # 동시에 같은 process_id 로 들어온 요청이 먼저 등록했다. 차감은 멱등성 키로 한 번만 일어난다.
            current = self._job_repo.find_by_process_id(process_id)
            if current is None:
                raise
            return _same_request(current, user_id, credits_required)
        except Exception:
            if deduction is not None and not deduction.replayed:
                logger.error(
                    "job creation failed after deduction, refunding",
                    extra={"user_id": user_id, "process_id": process_id},
                )
                self._credits.refund_credits(
                    user_id,
                    credits_required,
                    f"Refund: Failed to start {category} generation with {tool_id}",
                    deduction.transaction_ref,
                    metadata={"process_id": process_id},
                )
            raise

        logger.info(
            "job created (credits=%d, expected=%d)",
            credits_required,
            expected_output_count,
            extra={"user_id": user_id, "process_id": process_id},
        )
        return created

    # -------- 진행/종료 --------

    def record_progress(self, process_id: str, progress: JobProgress) -> GenerationJob:
        """실행기가 보고한 한 번의 시도 결과를 반영하고, 필요하면 종료 상태로 전이한다."""
        job = self._job_repo.find_by_process_id(process_id)
        if job is None:
            raise JobNotFoundError(process_id)
        if job.is_terminal:
            logger.info(
                "ignoring progress for terminal job (status=%s)",
                job.status,
                extra={"process_id": process_id},
            )
            return job

        updated = job
        if progress.completed_outputs or progress.failed_count or progress.total_expected:
            applied = self._job_repo.apply_progress(
                process_id,
                progress.completed_outputs,
                progress.failed_count,
                progress.total_expected,
            )
            if applied is None:
                # 그 사이 다른 이벤트가 작업을 종료시켰다
                return self._job_repo.find_by_process_id(process_id) or job
            updated = applied

        if progress.terminal_error:
            return self._finish(updated, JobStatus.FAILED, error=progress.terminal_error)

        if updated.accounted_output_count >= updated.expected_output_count:
            if updated.completed_output_count == 0:
                return self._finish(
                    updated,
                    JobStatus.FAILED,
                    error=f"all {updated.failed_output_count} outputs failed",
                )
            return self._finish(updated, JobStatus.COMPLETED)

        self._notify(updated)
        return updated

    def fail_job(self, process_id: str, error: str) -> GenerationJob:
        job = self._job_repo.find_by_process_id(process_id)
        if job is None:
            raise JobNotFoundError(process_id)

        if job.status == JobStatus.FAILED:
            # 이전 시도에서 환불이 실패했을 수 있으므로 다시 확인한다
            refunded = self._refund_if_needed(job)
            if not refunded:
                return job
            current = self._job_repo.find_by_process_id(process_id) or job
            self._notify(current, credits_refunded=refunded)
            return current
        if job.is_terminal:
            logger.info(
                "fail_job ignored for completed job",
                extra={"process_id": process_id},
            )
            return job

        return self._finish(job, JobStatus.FAILED, error=error)

    def _finish(
        self,
        job: GenerationJob,
        status: JobStatus,
        *,
        error: str | None = None,
    ) -> GenerationJob:
        result_payload: dict[str, Any] | None = None
        if status == JobStatus.COMPLETED:
            result_payload = {
                "outputs": job.outputs,
                "failed_count": job.failed_output_count,
            }

        terminal = self._job_repo.mark_terminal(
            job.process_id,
            status,
            error=error,
            result_payload=result_payload,
            completed_at=utc_now(),
        )
        if terminal is None:
            # 다른 이벤트가 먼저 전이시켰다. 환불/알림은 그쪽이 담당한다.
            return self._job_repo.find_by_process_id(job.process_id) or job

        logger.info(
            "job %s (completed=%d failed=%d expected=%d)",
            status,
            terminal.completed_output_count,
            terminal.failed_output_count,
            terminal.expected_output_count,
            extra={"user_id": terminal.user_id, "process_id": terminal.process_id},
        )

        refunded = 0
        if status == JobStatus.FAILED:
            refunded = self._refund_if_needed(terminal)
            if refunded:
                terminal = terminal.model_copy(
                    update={
                        "credits": terminal.credits.model_copy(update={"refunded": refunded})
                    }
                )

        # 환불이 커밋된 뒤에 알린다
        self._notify(terminal, credits_refunded=refunded)
        return terminal

    def _refund_if_needed(self, job: GenerationJob) -> int:
        credits = job.credits
        if credits.charged <= 0 or credits.refunded > 0 or not credits.deduction_ref:
            return 0

        try:
            result = self._credits.refund_credits(
                job.user_id,
                credits.charged,
                f"Refund: Failed {job.category} generation with {job.tool_id}",
                credits.deduction_ref,
                source=TransactionSource.SYSTEM,
                metadata={"process_id": job.process_id, "error": job.error},
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "refund failed for job",
                extra={"user_id": job.user_id, "process_id": job.process_id},
            )
            return 0

        # 원장 환불은 커밋되었다. 작업 기록 갱신 실패는 다음 fail_job 에서 멱등하게 다시 맞춘다.
        try:
            self._job_repo.record_refund(job.process_id, credits.charged, result.transaction_ref)
        except Exception:  # noqa: BLE001
            logger.exception(
                "refund committed but job record was not updated",
                extra={
                    "process_id": job.process_id,
                    "transaction_ref": result.transaction_ref,
                },
            )
        return credits.charged

    def _notify(self, job: GenerationJob, *, credits_refunded: int = 0) -> None:
        try:
            self._notifier.notify(job, credits_refunded=credits_refunded)
        except Exception:  # noqa: BLE001
            logger.exception(
                "failed to publish job status",
                extra={"process_id": job.process_id},
            )

    # -------- 조회 --------

    def get_job(self, process_id: str) -> GenerationJob:
        job = self._job_repo.find_by_process_id(process_id)
        if job is None:
            raise JobNotFoundError(process_id)
        return job

    def list_jobs(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> tuple[list[GenerationJob], int]:
        return self._job_repo.list_by_user(user_id, page, page_size)


def _same_request(job: GenerationJob, user_id: str, credits_required: int) -> GenerationJob:
    """같은 process_id 재요청이 원래 요청과 같은 사용자/크레딧일 때만 기존 작업을 돌려준다."""
    if job.user_id != user_id:
        raise JobConflictError(job.process_id, "owned by another user")
    if job.credits.charged != credits_required:
        raise JobConflictError(
            job.process_id,
            f"registered with {job.credits.charged} credits, requested {credits_required}",
        )
    return job


def get_job_repository(
    db: Database = Depends(get_database),
) -> JobRepositoryInterface:
    """FastAPI DI용 JobRepository 팩토리."""

    return JobRepository(db)


def get_job_tracker(
    job_repo: JobRepositoryInterface = Depends(get_job_repository),
    credit_service: CreditService = Depends(get_credit_service),
    notifier: JobNotifierInterface = Depends(get_job_notifier),
) -> JobLifecycleTracker:
    """FastAPI DI용 JobLifecycleTracker 팩토리."""

    return JobLifecycleTracker(
        job_repo=job_repo,
        credit_service=credit_service,
        notifier=notifier,
    )
