"""Integration tests for GrpcServer over a real channel."""

import json
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import grpc
import pytest
from grpc_health.v1 import health_pb2, health_pb2_grpc

from fulfillment_service.domain.exceptions import ResourceNotFoundError
from fulfillment_service.grpc_server import SERVICE_NAMES, GrpcServer
from tests.conftest import create_product


PORT = 50561
INVENTORY_SERVICE = "fulfillment_service.api.grpc_handlers.InventoryService"


@pytest.fixture
def database() -> MagicMock:
    """Database whose sessions are plain mocks."""
    db = MagicMock()

    @asynccontextmanager
    async def session() -> AsyncIterator[MagicMock]:
        yield MagicMock()

    db.session = session
    return db


@pytest.fixture
async def server(database: MagicMock) -> AsyncGenerator[GrpcServer, None]:
    """Start a server on a local port."""
    grpc_server = GrpcServer(database=database, gateway=MagicMock())
    await grpc_server.start(port=PORT)
    yield grpc_server
    await grpc_server.stop(grace=0)


@pytest.fixture
async def channel(server: GrpcServer) -> AsyncGenerator[grpc.aio.Channel, None]:
    async with grpc.aio.insecure_channel(f"localhost:{PORT}") as ch:
        yield ch


def json_method(channel: grpc.aio.Channel, path: str) -> Any:
    return channel.unary_unary(
        path,
        request_serializer=lambda message: json.dumps(message).encode("utf-8"),
        response_deserializer=json.loads,
    )


class TestGrpcServer:
    """Tests for the assembled gRPC server."""

    @pytest.mark.asyncio
    async def test_health_reports_every_service(self, channel: grpc.aio.Channel) -> None:
        """The health service answers SERVING for the server and each service."""
        stub = health_pb2_grpc.HealthStub(channel)

        for service in ("", *SERVICE_NAMES):
            response = await stub.Check(health_pb2.HealthCheckRequest(service=service))
            assert response.status == health_pb2.HealthCheckResponse.SERVING

    @pytest.mark.asyncio
    async def test_json_round_trip(self, channel: grpc.aio.Channel) -> None:
        """A JSON request reaches the handler and a JSON reply comes back."""
        with patch(INVENTORY_SERVICE) as service_cls:
            service_cls.return_value.get_product = AsyncMock(
                return_value=create_product(product_id=7, quantity=3)
            )
            get_product = json_method(channel, "/fulfillment.v1.InventoryService/GetProduct")

            response = await get_product({"product_id": 7})

        assert response["product_id"] == 7
        assert response["quantity"] == 3
        service_cls.return_value.get_product.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_domain_error_becomes_status(self, channel: grpc.aio.Channel) -> None:
        """Domain errors reach the client as gRPC status codes."""
        with patch(INVENTORY_SERVICE) as service_cls:
            service_cls.return_value.get_product = AsyncMock(
                side_effect=ResourceNotFoundError("Product", 99)
            )
            get_product = json_method(channel, "/fulfillment.v1.InventoryService/GetProduct")

            with pytest.raises(grpc.aio.AioRpcError) as exc_info:
                await get_product({"product_id": 99})

        assert exc_info.value.code() == grpc.StatusCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_malformed_request_is_invalid_argument(
        self, channel: grpc.aio.Channel
    ) -> None:
        """A body that is not a JSON object is rejected before any work is done."""
        call = channel.unary_unary(
            "/fulfillment.v1.OrderService/GetOrder",
            request_serializer=lambda raw: raw,
            response_deserializer=json.loads,
        )

        with pytest.raises(grpc.aio.AioRpcError) as exc_info:
            await call(b"[1, 2")

        assert exc_info.value.code() == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_unknown_method_is_unimplemented(self, channel: grpc.aio.Channel) -> None:
        """Methods no service declares are UNIMPLEMENTED."""
        call = json_method(channel, "/fulfillment.v1.OrderService/ArchiveOrder")

        with pytest.raises(grpc.aio.AioRpcError) as exc_info:
            await call({})

        assert exc_info.value.code() == grpc.StatusCode.UNIMPLEMENTED
