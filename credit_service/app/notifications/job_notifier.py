"""작업 상태를 실시간 알림 채널(Kafka 토픽)로 내보낸다.

전달은 외부 구독자(웹소켓 게이트웨이 등)의 책임이고, 여기서는 메시지를 만들어 발행만 한다.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Protocol

from common.eventbus.helpers import new_json_event
from common.eventbus.kafka import get_kafka_event_bus
from common.eventbus.topics import TOPIC_JOB_STATUS
from common.events.job import JobEventType, JobStatusEvent

from ..models.job import GenerationJob


EVENT_SOURCE = "credit-service"


class JobNotifierInterface(Protocol):
    def notify(
        self, job: GenerationJob, *, credits_refunded: int = 0
    ) -> None:  # pragma: no cover - Protocol
        ...


def build_status_event(job: GenerationJob, *, credits_refunded: int = 0) -> JobStatusEvent:
    payload: dict | None
    if job.is_terminal:
        payload = job.result_payload or {"outputs": job.outputs}
    else:
        payload = {
            "progress": job.progress_percent,
            "completed": job.completed_output_count,
            "failed": job.failed_output_count,
            "expected": job.expected_output_count,
        }

    return JobStatusEvent(
        id=str(uuid.uuid4()),
        type=JobEventType.JOB_STATUS_CHANGED,
        timestamp=datetime.now(timezone.utc).isoformat(),
        source=EVENT_SOURCE,
        version="1.0",
        process_id=job.process_id,
        user_id=job.user_id,
        status=str(job.status),
        payload=payload,
        error=job.error,
        credits_refunded=credits_refunded,
    )


class KafkaJobNotifier(JobNotifierInterface):
    """JobStatusEvent 를 TOPIC_JOB_STATUS 로 발행한다."""

    def notify(self, job: GenerationJob, *, credits_refunded: int = 0) -> None:
        event = build_status_event(job, credits_refunded=credits_refunded)
        wrapped = new_json_event(payload=asdict(event), event_id=event.id)
        bus = get_kafka_event_bus()
        bus.publish(TOPIC_JOB_STATUS.base, wrapped)


def get_job_notifier() -> JobNotifierInterface:
    """FastAPI DI용 JobNotifier 팩토리."""

    return KafkaJobNotifier()
