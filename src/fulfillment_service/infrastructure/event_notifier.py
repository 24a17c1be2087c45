import json
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer

from fulfillment_service.config import EventTopics, settings
from fulfillment_service.domain.exceptions import EventPublishFailure
from fulfillment_service.domain.models import DomainEvent
from fulfillment_service.infrastructure.metrics import (
    EVENTS_PUBLISH_FAILED_TOTAL,
    EVENTS_PUBLISHED_TOTAL,
)


logger = structlog.get_logger()


def build_producer(brokers: str) -> AIOKafkaProducer:
    """Idempotent producer writing JSON values keyed by aggregate id."""
    return AIOKafkaProducer(
        bootstrap_servers=brokers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        key_serializer=lambda k: k.encode("utf-8") if k else None,
        acks="all",
        enable_idempotence=True,
    )


class EventNotifier:
    """Best-effort publisher used when events are sent straight after commit.

    A failed send is logged and counted, then dropped: the state change that
    produced the event is already committed and is never rolled back because
    the broker was unavailable.
    """

    def __init__(
        self,
        topics: EventTopics | None = None,
        brokers: str | None = None,
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        self._topics = topics or settings.topics
        self._brokers = brokers or settings.redpanda_brokers
        self._producer = producer
        self._owns_producer = producer is None

    async def start(self) -> None:
        if self._producer is None:
            self._producer = build_producer(self._brokers)
        if self._owns_producer:
            await self._producer.start()
        logger.info("event_notifier_started", brokers=self._brokers)

    async def stop(self) -> None:
        if self._producer and self._owns_producer:
            await self._producer.stop()
            self._producer = None
        logger.info("event_notifier_stopped")

    async def publish(self, topic: str, key: str, envelope: dict[str, Any]) -> bool:
        """Send one envelope. Returns False instead of raising on failure."""
        event_type = str(envelope.get("eventType", "UNKNOWN"))
        try:
            if self._producer is None:
                raise EventPublishFailure(topic, key, "producer not started")
            await self._producer.send_and_wait(topic=topic, key=key, value=envelope)
        except Exception as e:
            EVENTS_PUBLISH_FAILED_TOTAL.labels(event_type=event_type).inc()
            logger.error(
                "event_publish_failed",
                topic=topic,
                key=key,
                event_type=event_type,
                event_id=envelope.get("eventId"),
                error=str(e),
            )
            return False

        EVENTS_PUBLISHED_TOTAL.labels(event_type=event_type).inc()
        logger.info(
            "event_published",
            topic=topic,
            key=key,
            event_type=event_type,
            event_id=envelope.get("eventId"),
        )
        return True

    async def notify(self, event: DomainEvent) -> bool:
        try:
            topic = self._topics.for_event(event.event_type)
        except KeyError:
            logger.error("event_topic_unknown", event_type=event.event_type, event_id=event.id)
            EVENTS_PUBLISH_FAILED_TOTAL.labels(event_type=event.event_type).inc()
            return False
        return await self.publish(topic, event.aggregate_id, event.payload)
