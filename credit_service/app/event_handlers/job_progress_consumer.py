from __future__ import annotations

import logging
import signal
from typing import List

from common.eventbus.config import get_brokers, get_group_id
from common.eventbus.core import Event
from common.eventbus.kafka import KafkaEventBus
from common.eventbus.topics import TOPIC_JOB_PROGRESS
from common.events.job import JobEventType, JobProgressEvent
from common.mongo.client import get_database

from ..config import get_app_config
from ..exceptions import JobNotFoundError
from ..models.job import JobProgress
from ..notifications.job_notifier import KafkaJobNotifier
from ..repositories.balance_repository import BalanceRepository
from ..repositories.job_repository import JobRepository
from ..repositories.ledger_repository import LedgerRepository
from ..repositories.transaction_runner import MongoTransactionRunner
from ..services.credit_service import CreditService, build_retry_policy, get_plan_catalog
from ..services.job_service import JobLifecycleTracker


logger = logging.getLogger(__name__)


def _handle_event(evt: Event, *, tracker: JobLifecycleTracker) -> None:
    payload = evt.payload
    if not isinstance(payload, dict):
        logger.error("unexpected payload type for event %s: %r", evt.id, type(payload))
        return

    event_type = str(payload.get("type", ""))
    if event_type != JobEventType.JOB_PROGRESS:
        logger.debug("ignoring non-progress event: type=%s id=%s", event_type, evt.id)
        return

    try:
        progress_event = JobProgressEvent.from_dict(payload)
    except Exception:  # noqa: BLE001
        logger.exception(
            "failed to decode JobProgressEvent id=%s payload=%r",
            payload.get("id"),
            payload,
        )
        raise

    logger.info(
        "received JobProgressEvent id=%s",
        evt.id,
        extra={"process_id": progress_event.process_id},
    )

    try:
        tracker.record_progress(
            progress_event.process_id,
            JobProgress(
                completed_outputs=progress_event.completed_outputs,
                failed_count=progress_event.failed_count,
                total_expected=progress_event.total_expected,
                terminal_error=progress_event.error,
            ),
        )
    except JobNotFoundError:
        # 재시도해도 작업이 생기지 않으므로 DLQ 로 보내지 않고 버린다
        logger.warning(
            "progress for unknown job dropped",
            extra={"process_id": progress_event.process_id},
        )


def build_tracker() -> JobLifecycleTracker:
    db = get_database()
    config = get_app_config()
    credit_service = CreditService(
        ledger_repo=LedgerRepository(db),
        balance_repo=BalanceRepository(db),
        transaction_runner=MongoTransactionRunner(
            db.client, build_retry_policy(config.credits.retry)
        ),
        plan_catalog=get_plan_catalog(),
        credits_config=config.credits,
    )
    return JobLifecycleTracker(
        job_repo=JobRepository(db),
        credit_service=credit_service,
        notifier=KafkaJobNotifier(),
    )


def run_job_progress_consumer(
    stop_flag: List[bool],
    tracker: JobLifecycleTracker | None = None,
) -> None:
    """JobProgressEvent 를 계속 소비하는 구독 루프.

    - stop_flag[0] 이 True 가 되면 루프를 종료한다.
    - FastAPI lifespan 스레드나 단독 프로세스(main) 양쪽에서 재사용 가능하다.
    """
    logger.info("job-progress-consumer starting up")

    tracker = tracker or build_tracker()
    group_id = get_group_id()
    bus = KafkaEventBus(get_brokers())

    try:
        logger.info(
            "subscribing to topic=%s group_id=%s", TOPIC_JOB_PROGRESS.base, group_id
        )
        bus.subscribe(
            group_id=group_id,
            topic=TOPIC_JOB_PROGRESS,
            handler=lambda evt: _handle_event(evt, tracker=tracker),
            stop_flag=stop_flag,
        )
    finally:
        bus.close()
        logger.info("job-progress-consumer stopped")


def main() -> None:
    """단독 프로세스로 실행할 때 사용하는 엔트리 포인트."""

    from common.logger import setup_logger

    setup_logger()
    stop_flag: List[bool] = [False]

    def _signal_handler(signum, frame) -> None:  # type: ignore[unused-argument]
        logger.info("received signal %s, shutting down job-progress-consumer...", signum)
        stop_flag[0] = True

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    run_job_progress_consumer(stop_flag)


if __name__ == "__main__":  # pragma: no cover
    main()
