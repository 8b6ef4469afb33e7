"""생성 작업 MongoDB 도큐먼트."""

from __future__ import annotations

from typing import Any

from common.mongo.types import BaseDocument, OptionalMongoDateTime, from_object_id

from ...models.job import GenerationJob, JobCredits


class GenerationJobDocument(BaseDocument):
    """MongoDB generation_jobs 컬렉션 도큐먼트 모델."""

    process_id: str
    user_id: str
    category: str
    tool_id: str
    status: str
    credits: JobCredits
    expected_output_count: int
    completed_output_count: int = 0
    failed_output_count: int = 0
    outputs: list[dict[str, Any]] = []
    result_payload: dict[str, Any] | None = None
    error: str | None = None
    metadata: dict[str, Any] = {}
    completed_at: OptionalMongoDateTime = None

    @classmethod
    def from_domain(cls, job: GenerationJob) -> "GenerationJobDocument":
        data = job.model_dump(exclude={"id"})
        return cls.model_validate(data)

    def to_domain(self) -> GenerationJob:
        data = self.model_dump(exclude={"id"})
        return GenerationJob(id=from_object_id(self.id), **data)
