import asyncio
import random
from datetime import UTC, datetime
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from fulfillment_service.config import EventTopics, settings
from fulfillment_service.domain.models import DomainEvent
from fulfillment_service.infrastructure.database import Database
from fulfillment_service.infrastructure.event_notifier import build_producer
from fulfillment_service.infrastructure.metrics import (
    OUTBOX_EVENTS_FAILED,
    OUTBOX_EVENTS_PUBLISHED,
    OUTBOX_PENDING_EVENTS,
)
from fulfillment_service.infrastructure.repositories.outbox import OutboxRepository


logger = structlog.get_logger()


def dead_letter_record(event: DomainEvent, error: str) -> dict[str, Any]:
    """Wrap an undeliverable envelope with the details needed to replay it."""
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": event.aggregate_id,
        "payload": event.payload,
        "timestamp": event.created_at.isoformat(),
        "retry_count": event.retry_count,
        "error": error,
        "failed_at": datetime.now(UTC).isoformat(),
    }


class OutboxProcessor:
    """
    Relays outbox rows to the broker, one topic per event type.

    Every row was written in the same transaction as the state change it
    describes, so nothing committed is ever lost; delivery is at-least-once
    and consumers deduplicate on ``eventId``.

    A row that fails is not fetched again until its backoff delay has passed,
    and a batch in which every publish failed makes the loop wait out the
    shortest of those delays before polling again. Rows that keep failing
    are parked on the dead letter topic once they reach ``max_retries``. The
    processor itself gives up after ``MAX_CONSECUTIVE_FAILURES`` batches in a
    row raise.
    """

    MAX_CONSECUTIVE_FAILURES = 10

    def __init__(
        self,
        database: Database,
        topics: EventTopics | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self._database = database
        self._topics = topics or settings.topics
        self._batch_size = batch_size or settings.outbox_batch_size
        self._poll_interval = poll_interval or settings.outbox_poll_interval_seconds
        self._max_retries = max_retries or settings.outbox_max_retries
        self._base_delay = base_delay or settings.outbox_base_delay_seconds
        self._max_delay = max_delay or settings.outbox_max_delay_seconds
        self._producer: AIOKafkaProducer | None = None
        self._running = False
        self._stalled_delay = 0.0

    async def start(self) -> None:
        """Run the relay loop until :meth:`stop` or the circuit breaker ends it."""
        self._producer = build_producer(settings.redpanda_brokers)
        await self._producer.start()
        self._running = True
        logger.info(
            "outbox_processor_started",
            batch_size=self._batch_size,
            max_retries=self._max_retries,
        )
        try:
            await self._run()
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._running = False
        if self._producer:
            await self._producer.stop()
            self._producer = None
        logger.info("outbox_processor_stopped")

    async def _run(self) -> None:
        failures = 0
        while self._running:
            try:
                handled = await self._process_batch()
            except Exception as e:
                failures += 1
                logger.error(
                    "outbox_batch_failed",
                    error=str(e),
                    consecutive_failures=failures,
                    exc_info=True,
                )
                if failures >= self.MAX_CONSECUTIVE_FAILURES:
                    logger.critical("outbox_circuit_open", consecutive_failures=failures)
                    return
                await asyncio.sleep(self._poll_interval)
                continue

            failures = 0
            if not handled:
                await asyncio.sleep(self._poll_interval)
            elif self._stalled_delay:
                await asyncio.sleep(self._stalled_delay)

    async def _process_batch(self) -> int:
        """Relay one batch in creation order. Returns how many rows were handled."""
        self._stalled_delay = 0.0
        async with self._database.session() as session:
            outbox = OutboxRepository(session)
            events = await outbox.get_unpublished(self._batch_size)
            if not events:
                OUTBOX_PENDING_EVENTS.set(0)
                return 0

            exhausted = [e for e in events if e.retry_count >= self._max_retries]
            delivered: list[str] = []
            delays: list[float] = []
            for event in events:
                if event.retry_count >= self._max_retries:
                    continue
                if await self._publish_event(event):
                    delivered.append(event.id)
                else:
                    delays.append(await self._handle_retry(event, outbox))

            if delivered:
                await outbox.mark_published(delivered)
            parked = await self._send_to_dlq(exhausted, outbox) if exhausted else 0
            if not delivered and not parked:
                # Nothing got through; the broker is likely down.
                self._stalled_delay = min(delays, default=self._poll_interval)

            OUTBOX_PENDING_EVENTS.set(await outbox.count_unpublished())
            await session.commit()

        logger.info(
            "outbox_batch_relayed",
            handled=len(events),
            published=len(delivered),
            dead_lettered=parked,
        )
        return len(events)

    async def _publish_event(self, event: DomainEvent) -> bool:
        if self._producer is None:
            return False

        log = logger.bind(event_id=event.id, event_type=event.event_type)
        try:
            topic = self._topics.for_event(event.event_type)
        except KeyError as e:
            OUTBOX_EVENTS_FAILED.labels(event_type=event.event_type).inc()
            log.error("event_topic_unknown", error=str(e))
            return False

        try:
            await self._producer.send_and_wait(
                topic=topic, key=event.aggregate_id, value=event.payload
            )
        except KafkaError as e:
            OUTBOX_EVENTS_FAILED.labels(event_type=event.event_type).inc()
            log.error(
                "event_publish_failed",
                topic=topic,
                attempt=event.retry_count + 1,
                error=str(e),
            )
            return False

        OUTBOX_EVENTS_PUBLISHED.labels(event_type=event.event_type).inc()
        log.info("event_published", topic=topic, aggregate_id=event.aggregate_id)
        return True

    async def _handle_retry(self, event: DomainEvent, outbox: OutboxRepository) -> float:
        """Count the failed attempt and hold the row back for its backoff delay."""
        delay = self._calculate_backoff_delay(event.retry_count)
        await outbox.increment_retry_count(event.id, delay)
        logger.warning(
            "event_retry_scheduled",
            event_id=event.id,
            retry_count=event.retry_count + 1,
            next_delay_seconds=round(delay, 3),
        )
        return delay

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        # Exponential, capped, plus up to 10% jitter.
        delay = min(self._base_delay * 2**retry_count, self._max_delay)
        return delay + random.uniform(0, delay * 0.1)

    async def _send_to_dlq(self, events: list[DomainEvent], outbox: OutboxRepository) -> int:
        if self._producer is None:
            return 0

        parked: list[str] = []
        for event in events:
            try:
                await self._producer.send_and_wait(
                    topic=self._topics.dead_letter,
                    key=event.aggregate_id,
                    value=dead_letter_record(event, "max_retries_exceeded"),
                )
            except KafkaError as e:
                # Left unpublished; the next batch tries the dead letter topic again.
                logger.error("dead_letter_publish_failed", event_id=event.id, error=str(e))
                continue
            parked.append(event.id)
            logger.warning(
                "event_dead_lettered",
                event_id=event.id,
                aggregate_id=event.aggregate_id,
                retry_count=event.retry_count,
            )

        if parked:
            await outbox.mark_published(parked)
        return len(parked)
