"""생성 작업 레포지토리 구현체.

출력 도착 이벤트는 순서가 뒤섞여 동시에 들어올 수 있으므로, 카운터 증가는 find_one_and_update
한 번으로 처리하고 종료 전이는 status=processing 조건부 갱신으로 한 번만 일어나게 한다.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from common.mongo.client import JOB_COLLECTION
from common.mongo.types import utc_now

from ..exceptions import DuplicateJobError
from ..models.job import GenerationJob, JobStatus
from .documents.job_document import GenerationJobDocument
from .interfaces import JobRepositoryInterface
from .ledger_repository import normalize_paging


class JobRepository(JobRepositoryInterface):
    """generation_jobs 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database[JOB_COLLECTION]

    def _to_domain(self, raw: dict[str, Any] | None) -> GenerationJob | None:
        if raw is None:
            return None
        return GenerationJobDocument.model_validate(raw).to_domain()

    def insert(self, job: GenerationJob) -> GenerationJob:
        doc = GenerationJobDocument.from_domain(job)
        try:
            result = self._col.insert_one(doc.to_mongo_record())
        except DuplicateKeyError as exc:
            raise DuplicateJobError(job.process_id) from exc
        return job.model_copy(update={"id": str(result.inserted_id)})

    def find_by_process_id(self, process_id: str) -> GenerationJob | None:
        return self._to_domain(self._col.find_one({"process_id": process_id}))

    def apply_progress(
        self,
        process_id: str,
        completed_outputs: list[dict[str, Any]],
        failed_count: int,
        total_expected: int | None,
    ) -> GenerationJob | None:
        """진행 중인 작업에 카운터를 원자적으로 더하고 갱신 후 상태를 반환한다.

        작업이 없거나 이미 종료된 경우 None.
        """
        update: dict[str, Any] = {
            "$inc": {
                "completed_output_count": len(completed_outputs),
                "failed_output_count": failed_count,
            },
            "$set": {"updated_at": utc_now()},
        }
        if completed_outputs:
            update["$push"] = {"outputs": {"$each": completed_outputs}}
        if total_expected is not None:
            update["$max"] = {"expected_output_count": total_expected}

        raw = self._col.find_one_and_update(
            {"process_id": process_id, "status": str(JobStatus.PROCESSING)},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_domain(raw)

    def mark_terminal(
        self,
        process_id: str,
        status: JobStatus,
        *,
        error: str | None,
        result_payload: dict[str, Any] | None,
        completed_at: datetime,
    ) -> GenerationJob | None:
        """processing 상태일 때만 종료 상태로 전이한다. 이미 전이됐으면 None."""
        fields: dict[str, Any] = {
            "status": str(status),
            "completed_at": completed_at,
            "updated_at": completed_at,
        }
        if error is not None:
            fields["error"] = error
        if result_payload is not None:
            fields["result_payload"] = result_payload

        raw = self._col.find_one_and_update(
            {"process_id": process_id, "status": str(JobStatus.PROCESSING)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_domain(raw)

    def record_refund(self, process_id: str, amount: int, refund_ref: str) -> None:
        self._col.update_one(
            {"process_id": process_id},
            {
                "$set": {
                    "credits.refunded": amount,
                    "credits.refund_ref": refund_ref,
                    "updated_at": utc_now(),
                }
            },
        )

    def list_by_user(
        self, user_id: str, page: int, page_size: int
    ) -> tuple[list[GenerationJob], int]:
        page, page_size = normalize_paging(page, page_size)
        skip = (page - 1) * page_size

        total = self._col.count_documents({"user_id": user_id})
        cursor = self._col.find(
            {"user_id": user_id},
            sort=[("created_at", -1), ("_id", -1)],
            skip=skip,
            limit=page_size,
        )
        items = [GenerationJobDocument.model_validate(raw).to_domain() for raw in cursor]
        return items, total
