#!/usr/bin/env python3
"""Outbox processor entrypoint script.

Runs the OutboxProcessor as a standalone worker that relays committed
order, payment and stock events from the outbox table to Kafka/Redpanda.
"""
import asyncio
import contextlib
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from fulfillment_service.config import settings
from fulfillment_service.infrastructure.database import Database
from fulfillment_service.infrastructure.event_publisher import OutboxProcessor
from fulfillment_service.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        service_name="fulfillment-outbox-processor",
    )

    logger.info(
        "outbox_processor_starting",
        database_url=settings.database_url.split("@")[-1],
        redpanda_brokers=settings.redpanda_brokers,
        batch_size=settings.outbox_batch_size,
        poll_interval=settings.outbox_poll_interval_seconds,
        topics=settings.topics.all_topics(),
    )

    database = Database(settings.database_url)
    processor = OutboxProcessor(database=database, topics=settings.topics)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    processor_task = asyncio.create_task(processor.start())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        # The processor also returns on its own when its circuit breaker trips.
        await asyncio.wait({processor_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        logger.info("initiating_graceful_shutdown")
        await processor.stop()
        for task in (processor_task, shutdown_task):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await database.close()
        logger.info("outbox_processor_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
