import grpc
import structlog
from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from fulfillment_service.api.grpc_handlers import (
    INVENTORY_SERVICE_NAME,
    ORDER_SERVICE_NAME,
    PAYMENT_SERVICE_NAME,
    InventoryServiceHandler,
    OrderServiceHandler,
    PaymentServiceHandler,
)
from fulfillment_service.api.interceptors import MetricsInterceptor
from fulfillment_service.infrastructure.database import Database
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.payment_gateway import PaymentGateway


logger = structlog.get_logger()

SERVICE_NAMES = (PAYMENT_SERVICE_NAME, ORDER_SERVICE_NAME, INVENTORY_SERVICE_NAME)


class GrpcServer:
    def __init__(
        self,
        database: Database,
        gateway: PaymentGateway,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._database = database
        self._gateway = gateway
        self._notifier = notifier
        self._server: grpc.aio.Server | None = None
        self._health_servicer = health.aio.HealthServicer()

    async def start(self, port: int = 50051) -> None:
        self._server = grpc.aio.server(
            interceptors=[MetricsInterceptor()],
            options=[
                ("grpc.max_send_message_length", 4 * 1024 * 1024),
                ("grpc.max_receive_message_length", 4 * 1024 * 1024),
            ],
        )

        self._server.add_generic_rpc_handlers(
            (
                PaymentServiceHandler(
                    self._database, self._gateway, self._notifier
                ).generic_handler(),
                OrderServiceHandler(self._database, self._notifier).generic_handler(),
                InventoryServiceHandler(self._database, self._notifier).generic_handler(),
            )
        )

        health_pb2_grpc.add_HealthServicer_to_server(self._health_servicer, self._server)

        await self._health_servicer.set("", health_pb2.HealthCheckResponse.SERVING)
        for service_name in SERVICE_NAMES:
            await self._health_servicer.set(service_name, health_pb2.HealthCheckResponse.SERVING)

        listen_addr = f"[::]:{port}"
        self._server.add_insecure_port(listen_addr)

        await self._server.start()
        logger.info("grpc_server_started", port=port, services=list(SERVICE_NAMES))

    async def wait_for_termination(self) -> None:
        if self._server:
            await self._server.wait_for_termination()

    async def stop(self, grace: float = 10.0) -> None:
        if self._server:
            await self._health_servicer.enter_graceful_shutdown()
            await self._server.stop(grace)
            logger.info("grpc_server_stopped")
