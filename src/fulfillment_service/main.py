import asyncio
import signal
from typing import NoReturn

import structlog

from fulfillment_service.api.metrics_server import MetricsServer
from fulfillment_service.config import settings
from fulfillment_service.grpc_server import GrpcServer
from fulfillment_service.infrastructure.database import Database
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.payment_gateway import (
    GuardedPaymentGateway,
    SimulatedPaymentGateway,
)
from fulfillment_service.logging import configure_logging


logger = structlog.get_logger()


def build_gateway() -> GuardedPaymentGateway:
    return GuardedPaymentGateway(
        SimulatedPaymentGateway(
            success_rate=settings.gateway_success_rate,
            refund_success_rate=settings.gateway_refund_success_rate,
            min_latency=settings.gateway_min_latency_seconds,
            max_latency=settings.gateway_max_latency_seconds,
        ),
        timeout=settings.gateway_timeout_seconds,
        failure_threshold=settings.gateway_failure_threshold,
        reset_seconds=settings.gateway_reset_seconds,
    )


async def main() -> NoReturn:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_fulfillment_service",
        grpc_port=settings.grpc_port,
        metrics_port=settings.metrics_port,
        log_level=settings.log_level,
        event_delivery=settings.event_delivery,
        metrics_enabled=settings.metrics_enabled,
    )

    database = Database(settings.database_url)
    gateway = build_gateway()

    notifier: EventNotifier | None = None
    if settings.event_delivery == "direct":
        notifier = EventNotifier(settings.topics, settings.redpanda_brokers)
        await notifier.start()

    metrics_server: MetricsServer | None = None
    if settings.metrics_enabled:
        metrics_server = MetricsServer(
            host=settings.metrics_host,
            port=settings.metrics_port,
            readiness=lambda: {"payment_gateway": not gateway.is_open},
        )
        await metrics_server.start()

    server = GrpcServer(database=database, gateway=gateway, notifier=notifier)

    loop = asyncio.get_running_loop()

    async def shutdown() -> None:
        logger.info("shutting_down")
        await server.stop()
        if metrics_server:
            await metrics_server.stop()
        if notifier:
            await notifier.stop()
        await database.close()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(shutdown()),
        )

    await server.start(port=settings.grpc_port)
    await server.wait_for_termination()

    raise SystemExit(0)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
