from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict
from typing import Any, Callable

from confluent_kafka import Consumer, KafkaError, Message, Producer

from .config import get_brokers, get_message_max_bytes, get_publish_flush_timeout
from .core import Event, Topic

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]


def seconds_until_due(
    topic: Topic, message_topic: str, published_at: float, now: float
) -> float:
    """재시도 토픽에서 읽은 메시지가 처리 가능해질 때까지 남은 시간(초).

    기본 토픽 메시지는 항상 0 이다.
    """
    delay = topic.retry_delay_for(message_topic)
    if delay <= 0:
        return 0.0
    return max(0.0, published_at + delay - now)


class KafkaEventBus:
    """confluent-kafka 위의 얇은 이벤트 버스.

    핸들러가 실패한 이벤트는 retry 차수를 올려 <base>.retry.N 으로 다시 발행하고,
    같은 컨슈머가 재시도 토픽도 구독해 지연 시간이 지난 뒤 다시 처리한다.
    max_retry 를 넘기면 <base>.dlq 로 보낸다. 오프셋은 처리(또는 재발행)가 끝난 뒤에만 커밋한다.
    """

    def __init__(self, brokers: str) -> None:
        producer_config: dict[str, Any] = {"bootstrap.servers": brokers}
        max_bytes = get_message_max_bytes()
        if max_bytes is not None:
            producer_config["message.max.bytes"] = max_bytes

        self._producer = Producer(producer_config)
        self._brokers = brokers

    def close(self) -> None:
        remaining = self._producer.flush(get_publish_flush_timeout())
        if remaining:
            logger.warning("%d kafka messages were not delivered before close", remaining)

    def publish(self, topic: str, event: Event) -> None:
        value = json.dumps(asdict(event), ensure_ascii=False, default=str).encode("utf-8")

        def _on_delivery(err, msg) -> None:  # type: ignore[no-untyped-def]
            if err is not None:
                logger.error("failed to deliver event %s to %s: %s", event.id, msg.topic(), err)

        self._producer.produce(
            topic=topic,
            value=value,
            key=event.id.encode("utf-8"),
            callback=_on_delivery,
        )
        self._producer.poll(0)

    def subscribe(
        self,
        group_id: str,
        topic: Topic,
        handler: EventHandler,
        *,
        poll_timeout: float = 0.1,
        stop_flag: list[bool] | None = None,
    ) -> None:
        consumer = Consumer(
            {
                "bootstrap.servers": self._brokers,
                "group.id": group_id,
                "auto.offset.reset": "earliest",
                "enable.auto.commit": False,
            }
        )
        topics = topic.subscription()
        consumer.subscribe(topics)
        logger.info("kafka consumer started. group_id=%s topics=%s", group_id, topics)

        def stopped() -> bool:
            return bool(stop_flag and stop_flag[0])

        try:
            while not stopped():
                msg = consumer.poll(poll_timeout)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        logger.error("consumer error: %s", msg.error())
                    continue

                if not self._wait_until_due(topic, msg, stopped):
                    # 종료 중: 커밋하지 않으면 다음 기동 때 다시 읽는다
                    break

                if self._process(topic, msg, handler):
                    try:
                        consumer.commit(message=msg, asynchronous=False)
                    except Exception as exc:  # noqa: BLE001
                        logger.error("offset commit error: %s", exc)
        finally:
            consumer.close()

    def _process(self, topic: Topic, msg: Message, handler: EventHandler) -> bool:
        """메시지를 처리하고 오프셋을 커밋해도 되는지 반환한다."""
        try:
            raw = json.loads(msg.value())
        except Exception as exc:  # noqa: BLE001
            logger.error("invalid event payload on topic %s: %s", msg.topic(), exc)
            return True
        if not isinstance(raw, dict):
            logger.error("event on topic %s is not an object", msg.topic())
            return True

        evt = self._decode_event(raw)
        try:
            handler(evt)
        except Exception as exc:  # noqa: BLE001
            return self._reroute_failed(topic, evt, exc)
        return True

    @staticmethod
    def _wait_until_due(topic: Topic, msg: Message, stopped: Callable[[], bool]) -> bool:
        _, timestamp_ms = msg.timestamp()
        published_at = timestamp_ms / 1000 if timestamp_ms and timestamp_ms > 0 else time.time()
        while True:
            remaining = seconds_until_due(topic, msg.topic(), published_at, time.time())
            if remaining <= 0:
                return True
            if stopped():
                return False
            time.sleep(min(remaining, 0.5))

    def _reroute_failed(self, topic: Topic, evt: Event, exc: Exception) -> bool:
        evt.last_error = str(exc)
        if evt.retries_exhausted():
            next_topic = topic.dlq()
            logger.error(
                "event %s exceeded max retry, sending to DLQ %s: %s", evt.id, next_topic, exc
            )
        else:
            evt.retry += 1
            next_topic = topic.get_retry_topic(evt.retry)
            logger.warning(
                "event %s failed, scheduling retry %d/%d to %s",
                evt.id,
                evt.retry,
                evt.max_retry,
                next_topic,
            )

        try:
            self.publish(next_topic, evt)
        except Exception as pub_exc:  # noqa: BLE001
            logger.error("failed to publish event %s to %s: %s", evt.id, next_topic, pub_exc)
            return False
        return True

    @staticmethod
    def _decode_event(raw: dict) -> Event:
        return Event(
            id=str(raw.get("id", "")),
            payload=raw.get("payload"),
            retry=int(raw.get("retry", 0)),
            max_retry=int(raw.get("max_retry", 0)),
            last_error=raw.get("last_error"),
        )


_bus: KafkaEventBus | None = None
_bus_lock = threading.Lock()


def get_kafka_event_bus() -> KafkaEventBus:
    """발행 전용으로 공유하는 KafkaEventBus 싱글톤."""

    global _bus

    if _bus is not None:
        return _bus

    with _bus_lock:
        if _bus is None:
            _bus = KafkaEventBus(get_brokers())
        return _bus


def close_kafka_event_bus() -> None:
    global _bus

    with _bus_lock:
        if _bus is not None:
            _bus.close()
            _bus = None
