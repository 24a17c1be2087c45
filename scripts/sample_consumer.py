#!/usr/bin/env python3
"""Sample downstream consumer.

Subscribes to every order, payment and stock topic plus the dead letter
topic and logs what an invoicing, notification or live stock display
service would act on.
"""
import asyncio
import json
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog
from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError

from fulfillment_service.config import EventTopics, settings
from fulfillment_service.logging import configure_logging


logger = structlog.get_logger()

GROUP_ID = "sample-fulfillment-consumer"


def subscribed_topics(topics: EventTopics) -> list[str]:
    return [*topics.all_topics(), topics.dead_letter]


def _stock_timestamp(value: Any) -> str | None:
    # Stock events carry epoch milliseconds.
    if not isinstance(value, int | float):
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC).isoformat()


async def process_event(
    topic: str,
    event: dict[str, Any],
    topics: EventTopics | None = None,
    low_stock_threshold: int | None = None,
) -> None:
    """Handle one received envelope.

    A real consumer would render an invoice, notify the customer or push the
    new stock level to a storefront here.
    """
    topics = topics or settings.topics
    threshold = settings.low_stock_threshold if low_stock_threshold is None else low_stock_threshold

    if topic == topics.dead_letter:
        logger.warning(
            "dead_letter_event_received",
            event_id=event.get("event_id"),
            event_type=event.get("event_type"),
            aggregate_id=event.get("aggregate_id"),
            retry_count=event.get("retry_count"),
            error=event.get("error"),
        )
        return

    if topic == topics.stock_updated:
        quantity = event.get("stockQuantity")
        logger.info(
            "stock_level_changed",
            product_id=event.get("productId"),
            stock_quantity=quantity,
            changed_at=_stock_timestamp(event.get("timestamp")),
        )
        if isinstance(quantity, int) and quantity < threshold:
            logger.warning(
                "low_stock",
                product_id=event.get("productId"),
                stock_quantity=quantity,
                message="Low stock!",
            )
        return

    event_type = event.get("eventType", "unknown")

    if topic in (
        topics.order_created,
        topics.order_status_updated,
        topics.order_cancelled,
        topics.order_completed,
    ):
        logger.info(
            "order_event_received",
            event_id=event.get("eventId"),
            event_type=event_type,
            order_id=event.get("orderId"),
            order_number=event.get("orderNumber"),
            customer_id=event.get("customerId"),
            status=event.get("status"),
            previous_status=event.get("previousStatus"),
            total_amount=event.get("totalAmount"),
        )
    elif topic in (
        topics.payment_processed,
        topics.payment_failed,
        topics.payment_refunded,
        topics.payment_cancelled,
        topics.payment_retry,
    ):
        logger.info(
            "payment_event_received",
            event_id=event.get("eventId"),
            event_type=event_type,
            payment_id=event.get("paymentId"),
            order_id=event.get("orderId"),
            amount=event.get("amount"),
            refunded_amount=event.get("refundedAmount"),
            status=event.get("status"),
            failure_reason=event.get("failureReason"),
        )
    else:
        logger.info(
            "unknown_event_received",
            topic=topic,
            event_id=event.get("eventId"),
            event_type=event_type,
        )


async def consume_events() -> None:
    """Main consumer loop."""
    topics = subscribed_topics(settings.topics)
    consumer = AIOKafkaConsumer(
        *topics,
        bootstrap_servers=settings.redpanda_brokers,
        group_id=GROUP_ID,
        auto_offset_reset="earliest",
        enable_auto_commit=True,
        value_deserializer=lambda m: json.loads(m.decode("utf-8")),
    )

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await consumer.start()
        logger.info(
            "consumer_started",
            topics=topics,
            group_id=GROUP_ID,
            brokers=settings.redpanda_brokers,
        )

        while not shutdown_event.is_set():
            try:
                result = await asyncio.wait_for(
                    consumer.getmany(timeout_ms=1000, max_records=100),
                    timeout=2.0,
                )
                for topic_partition, messages in result.items():
                    for msg in messages:
                        await process_event(topic_partition.topic, msg.value)
            except TimeoutError:
                continue
            except KafkaError as e:
                logger.error("kafka_error", error=str(e))
                await asyncio.sleep(1)

    finally:
        await consumer.stop()
        logger.info("consumer_stopped")


async def main() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        service_name="sample-fulfillment-consumer",
    )
    logger.info("sample_consumer_starting")
    await consume_events()


if __name__ == "__main__":
    asyncio.run(main())
