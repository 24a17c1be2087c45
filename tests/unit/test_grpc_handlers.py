"""Unit tests for gRPC handlers, the JSON codec and error mapping."""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import grpc
import pytest

from fulfillment_service.api.grpc_handlers import (
    ORDER_SERVICE_NAME,
    PAYMENT_SERVICE_NAME,
    InventoryServiceHandler,
    OrderServiceHandler,
    PaymentServiceHandler,
    decode_message,
    encode_message,
    order_to_message,
    payment_to_message,
    status_for,
)
from fulfillment_service.application.payments import PaymentResult
from fulfillment_service.domain.exceptions import (
    ConcurrencyConflictError,
    DuplicatePaymentError,
    EventPublishFailure,
    GatewayError,
    InsufficientStockError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import OrderStatus, PaymentMethod, PaymentStatus
from tests.conftest import create_order, create_payment, create_product


def request(**fields: object) -> bytes:
    return json.dumps(fields).encode("utf-8")


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
def context() -> MagicMock:
    """Servicer context whose abort raises like the real one."""
    ctx = MagicMock()
    ctx.abort = AsyncMock(side_effect=grpc.aio.AbortError())
    return ctx


def aborted_with(context: MagicMock) -> grpc.StatusCode:
    context.abort.assert_awaited_once()
    return context.abort.call_args.args[0]


class TestCodec:
    """Tests for the JSON message codec."""

    def test_decode_object(self) -> None:
        """JSON objects decode to dicts."""
        assert decode_message(b'{"order_id": "x"}') == {"order_id": "x"}

    def test_decode_empty_body(self) -> None:
        """An empty body is an empty message."""
        assert decode_message(b"") == {}

    def test_decode_malformed_json(self) -> None:
        """Malformed JSON is a validation error."""
        with pytest.raises(ValidationError, match="malformed JSON"):
            decode_message(b"{not json")

    def test_decode_non_object(self) -> None:
        """Top-level arrays are rejected."""
        with pytest.raises(ValidationError, match="JSON object"):
            decode_message(b"[1, 2]")

    def test_encode_message_serializes_amounts(self) -> None:
        """Messages with decimals and nested lines encode to JSON."""
        encoded = encode_message(order_to_message(create_order([(1, 2, "25.00")])))
        decoded = json.loads(encoded)
        assert decoded["total_amount"] == "50.00"
        assert decoded["lines"][0]["subtotal"] == "50.00"


class TestStatusMapping:
    """Tests for domain error to gRPC status mapping."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (ValidationError("x", "bad"), grpc.StatusCode.INVALID_ARGUMENT),
            (ResourceNotFoundError("Order", "x"), grpc.StatusCode.NOT_FOUND),
            (InsufficientStockError(1, 5), grpc.StatusCode.FAILED_PRECONDITION),
            (
                InvalidTransitionError("order", "SHIPPED", "CANCELLED"),
                grpc.StatusCode.FAILED_PRECONDITION,
            ),
            (DuplicatePaymentError("x"), grpc.StatusCode.FAILED_PRECONDITION),
            (ConcurrencyConflictError("Order", "x"), grpc.StatusCode.ABORTED),
            (GatewayError("circuit open"), grpc.StatusCode.UNAVAILABLE),
            (EventPublishFailure("t", "k", "down"), grpc.StatusCode.INTERNAL),
        ],
    )
    def test_status_for(self, error: Exception, code: grpc.StatusCode) -> None:
        """Each error family maps to one status code."""
        assert status_for(error) == code


class TestMessages:
    """Tests for response message builders."""

    def test_payment_message_uses_reference_as_id(self) -> None:
        """The public payment id is the PAY- reference."""
        payment = create_payment(status=PaymentStatus.PARTIALLY_REFUNDED, refunded="20.00")

        message = payment_to_message(payment)

        assert message["payment_id"] == payment.payment_ref
        assert message["refunded_amount"] == "20.00"
        assert message["remaining_refundable"] == "30.00"
        assert message["status"] == "PARTIALLY_REFUNDED"


class TestOrderServiceHandler:
    """Tests for OrderServiceHandler."""

    @pytest.fixture
    def handler(self, database: MagicMock) -> OrderServiceHandler:
        """Create handler over the mocked database."""
        return OrderServiceHandler(database)

    @pytest.mark.asyncio
    async def test_create_order(self, handler: OrderServiceHandler, context: MagicMock) -> None:
        """CreateOrder builds the command and returns the order message."""
        order = create_order([(1, 2, "25.00")])
        with patch("fulfillment_service.api.grpc_handlers.OrderService") as service_cls:
            service_cls.return_value.create_order = AsyncMock(return_value=order)

            response = await handler.CreateOrder(
                request(
                    customer_id=42,
                    shipping_address="1 Main St",
                    lines=[{"product_id": 1, "quantity": 2}],
                ),
                context,
            )

        cmd = service_cls.return_value.create_order.call_args.args[0]
        assert cmd.customer_id == 42
        assert cmd.lines[0].product_id == 1
        assert cmd.lines[0].quantity == 2
        assert response["order_number"] == order.order_number
        assert response["total_amount"] == "50.00"
        context.abort.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_json_is_invalid_argument(
        self, handler: OrderServiceHandler, context: MagicMock
    ) -> None:
        """Bad request bodies abort with INVALID_ARGUMENT."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.CreateOrder(b"{oops", context)

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.parametrize("lines", ["not-a-list", [1, 2], [{"product_id": "x", "quantity": 1}]])
    @pytest.mark.asyncio
    async def test_malformed_lines_rejected(
        self, handler: OrderServiceHandler, context: MagicMock, lines: object
    ) -> None:
        """Lines must be objects with integer fields."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.CreateOrder(
                request(customer_id=1, shipping_address="a", lines=lines), context
            )

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_failed_precondition(
        self, handler: OrderServiceHandler, context: MagicMock
    ) -> None:
        """Business rule violations abort with FAILED_PRECONDITION."""
        with patch("fulfillment_service.api.grpc_handlers.OrderService") as service_cls:
            service_cls.return_value.create_order = AsyncMock(
                side_effect=InsufficientStockError(1, 5)
            )
            with pytest.raises(grpc.aio.AbortError):
                await handler.CreateOrder(
                    request(
                        customer_id=1,
                        shipping_address="a",
                        lines=[{"product_id": 1, "quantity": 5}],
                    ),
                    context,
                )

        assert aborted_with(context) == grpc.StatusCode.FAILED_PRECONDITION

    @pytest.mark.asyncio
    async def test_cancel_missing_order_is_not_found(
        self, handler: OrderServiceHandler, context: MagicMock
    ) -> None:
        """Unknown orders abort with NOT_FOUND."""
        with patch("fulfillment_service.api.grpc_handlers.OrderService") as service_cls:
            service_cls.return_value.cancel_order = AsyncMock(
                side_effect=ResourceNotFoundError("Order", "x")
            )
            with pytest.raises(grpc.aio.AbortError):
                await handler.CancelOrder(request(order_id="x"), context)

        assert aborted_with(context) == grpc.StatusCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_status_accepts_lowercase(
        self, handler: OrderServiceHandler, context: MagicMock
    ) -> None:
        """Status names are case-insensitive on the wire."""
        order = create_order(status=OrderStatus.SHIPPED)
        with patch("fulfillment_service.api.grpc_handlers.OrderService") as service_cls:
            service_cls.return_value.update_order_status = AsyncMock(return_value=order)

            response = await handler.UpdateOrderStatus(
                request(order_id=order.id, status="shipped"), context
            )

        service_cls.return_value.update_order_status.assert_awaited_once_with(
            order.id, OrderStatus.SHIPPED
        )
        assert response["status"] == "SHIPPED"

    @pytest.mark.asyncio
    async def test_update_status_unknown_value(
        self, handler: OrderServiceHandler, context: MagicMock
    ) -> None:
        """Unknown statuses are rejected before the service is called."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.UpdateOrderStatus(request(order_id="x", status="LOST"), context)

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    def test_generic_handler_routes_methods(self, handler: OrderServiceHandler) -> None:
        """Fully-qualified method names resolve to handlers."""
        details = MagicMock(spec=grpc.HandlerCallDetails)
        details.method = f"/{ORDER_SERVICE_NAME}/CreateOrder"

        assert handler.generic_handler().service(details) is not None


class TestPaymentServiceHandler:
    """Tests for PaymentServiceHandler."""

    @pytest.fixture
    def handler(self, database: MagicMock) -> PaymentServiceHandler:
        """Create handler over the mocked database and gateway."""
        return PaymentServiceHandler(database, AsyncMock())

    @pytest.mark.asyncio
    async def test_process_payment_with_card(
        self, handler: PaymentServiceHandler, context: MagicMock
    ) -> None:
        """Card fields become CardDetails; the method name is case-insensitive."""
        payment = create_payment(status=PaymentStatus.COMPLETED)
        with patch("fulfillment_service.api.grpc_handlers.PaymentService") as service_cls:
            service_cls.return_value.process_payment = AsyncMock(
                return_value=PaymentResult(True, "Payment processed successfully", payment)
            )

            response = await handler.ProcessPayment(
                request(
                    order_id=payment.order_id,
                    customer_id=42,
                    payment_method="credit_card",
                    card_number="4111111111111111",
                    card_holder_name="Jane Doe",
                    expiry_date="12/30",
                    cvv="123",
                ),
                context,
            )

        cmd = service_cls.return_value.process_payment.call_args.args[0]
        assert cmd.payment_method == PaymentMethod.CREDIT_CARD
        assert cmd.customer_id == 42
        assert cmd.card.card_number == "4111111111111111"
        assert response["success"] is True
        assert response["payment"]["payment_id"] == payment.payment_ref

    @pytest.mark.asyncio
    async def test_process_payment_unknown_method(
        self, handler: PaymentServiceHandler, context: MagicMock
    ) -> None:
        """Unknown payment methods are invalid arguments."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.ProcessPayment(
                request(order_id="x", payment_method="BARTER"), context
            )

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_refund_parses_amount(
        self, handler: PaymentServiceHandler, context: MagicMock
    ) -> None:
        """Amounts arrive as strings and are parsed exactly."""
        payment = create_payment(status=PaymentStatus.PARTIALLY_REFUNDED, refunded="10.00")
        with patch("fulfillment_service.api.grpc_handlers.PaymentService") as service_cls:
            service_cls.return_value.refund_payment = AsyncMock(
                return_value=PaymentResult(True, "Refund processed successfully", payment)
            )

            response = await handler.RefundPayment(
                request(payment_id=payment.payment_ref, amount="10.00"), context
            )

        service_cls.return_value.refund_payment.assert_awaited_once_with(
            payment.payment_ref, Decimal("10.00")
        )
        assert response["message"] == "Refund processed successfully"

    @pytest.mark.parametrize("amount", ["10.001", "ten", None])
    @pytest.mark.asyncio
    async def test_refund_rejects_bad_amounts(
        self, handler: PaymentServiceHandler, context: MagicMock, amount: object
    ) -> None:
        """Amounts must be present with at most two decimal places."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.RefundPayment(request(payment_id="PAY-x", amount=amount), context)

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_gateway_unavailable(
        self, handler: PaymentServiceHandler, context: MagicMock
    ) -> None:
        """Gateway errors that escape the service abort with UNAVAILABLE."""
        with patch("fulfillment_service.api.grpc_handlers.PaymentService") as service_cls:
            service_cls.return_value.cancel_payment = AsyncMock(
                side_effect=GatewayError("circuit open")
            )
            with pytest.raises(grpc.aio.AbortError):
                await handler.CancelPayment(request(payment_id="PAY-x"), context)

        assert aborted_with(context) == grpc.StatusCode.UNAVAILABLE

    @pytest.mark.parametrize("method", ["GetPayment", "GetPaymentByOrderId"])
    @pytest.mark.asyncio
    async def test_lookups_are_unimplemented(
        self, handler: PaymentServiceHandler, context: MagicMock, method: str
    ) -> None:
        """Payment lookups are not served over gRPC."""
        with pytest.raises(grpc.aio.AbortError):
            await getattr(handler, method)(request(payment_id="PAY-x"), context)

        assert aborted_with(context) == grpc.StatusCode.UNIMPLEMENTED

    def test_generic_handler_routes_methods(self, handler: PaymentServiceHandler) -> None:
        """Fully-qualified method names resolve to handlers."""
        details = MagicMock(spec=grpc.HandlerCallDetails)
        details.method = f"/{PAYMENT_SERVICE_NAME}/RefundPayment"

        assert handler.generic_handler().service(details) is not None


class TestInventoryServiceHandler:
    """Tests for InventoryServiceHandler."""

    @pytest.fixture
    def handler(self, database: MagicMock) -> InventoryServiceHandler:
        """Create handler over the mocked database."""
        return InventoryServiceHandler(database)

    @pytest.mark.asyncio
    async def test_set_stock_level(
        self, handler: InventoryServiceHandler, context: MagicMock
    ) -> None:
        """SetStockLevel returns the updated product."""
        product = create_product(4, quantity=25)
        with patch("fulfillment_service.api.grpc_handlers.InventoryService") as service_cls:
            service_cls.return_value.set_stock_level = AsyncMock(return_value=product)

            response = await handler.SetStockLevel(request(product_id=4, quantity=25), context)

        service_cls.return_value.set_stock_level.assert_awaited_once_with(4, 25)
        assert response["quantity"] == 25

    @pytest.mark.asyncio
    async def test_update_product_requires_boolean_active(
        self, handler: InventoryServiceHandler, context: MagicMock
    ) -> None:
        """The active flag must be a JSON boolean."""
        with pytest.raises(grpc.aio.AbortError):
            await handler.UpdateProduct(request(product_id=4, active="yes"), context)

        assert aborted_with(context) == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_update_product_passes_fields(
        self, handler: InventoryServiceHandler, context: MagicMock
    ) -> None:
        """Only the supplied fields are forwarded."""
        product = create_product(4, price="12.50", active=False)
        with patch("fulfillment_service.api.grpc_handlers.InventoryService") as service_cls:
            service_cls.return_value.update_product = AsyncMock(return_value=product)

            response = await handler.UpdateProduct(
                request(product_id=4, price="12.50", active=False), context
            )

        service_cls.return_value.update_product.assert_awaited_once_with(
            4, name=None, price=Decimal("12.50"), active=False
        )
        assert response["active"] is False
