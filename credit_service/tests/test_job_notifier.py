from __future__ import annotations

from datetime import datetime, timezone

import pytest

from common.eventbus.core import Event
from common.eventbus.topics import TOPIC_JOB_STATUS
from common.events.job import JobEventType, JobStatusEvent
from credit_service.app.models.job import GenerationJob, JobStatus
from credit_service.app.notifications import job_notifier


def _job(**overrides) -> GenerationJob:
    now = datetime(2026, 2, 16, tzinfo=timezone.utc)
    data = dict(
        process_id="proc-1",
        user_id="user-1",
        category="image",
        tool_id="flux-pro",
        expected_output_count=4,
        completed_output_count=1,
        failed_output_count=1,
        outputs=[{"url": "a"}],
        created_at=now,
        updated_at=now,
    )
    data.update(overrides)
    return GenerationJob(**data)


class FakeBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, Event]] = []

    def publish(self, topic: str, event: Event) -> None:
        self.published.append((topic, event))


def test_status_event_for_processing_job_carries_progress() -> None:
    event = job_notifier.build_status_event(_job())

    assert event.type == JobEventType.JOB_STATUS_CHANGED
    assert event.source == job_notifier.EVENT_SOURCE
    assert event.status == "processing"
    assert event.payload == {"progress": 50, "completed": 1, "failed": 1, "expected": 4}
    assert event.credits_refunded == 0


def test_status_event_for_failed_job_carries_refund() -> None:
    job = _job(status=JobStatus.FAILED, error="provider error")

    event = job_notifier.build_status_event(job, credits_refunded=200)

    assert event.status == "failed"
    assert event.error == "provider error"
    assert event.payload == {"outputs": [{"url": "a"}]}
    assert event.credits_refunded == 200


def test_kafka_notifier_publishes_to_status_topic(monkeypatch: pytest.MonkeyPatch) -> None:
    bus = FakeBus()
    monkeypatch.setattr(job_notifier, "get_kafka_event_bus", lambda: bus)

    job_notifier.KafkaJobNotifier().notify(
        _job(status=JobStatus.COMPLETED, result_payload={"outputs": [], "failed_count": 0})
    )

    assert len(bus.published) == 1
    topic, wrapped = bus.published[0]
    assert topic == TOPIC_JOB_STATUS.base
    decoded = JobStatusEvent.from_dict(wrapped.payload)
    assert decoded.id == wrapped.id
    assert decoded.status == "completed"
    assert decoded.payload == {"outputs": [], "failed_count": 0}
