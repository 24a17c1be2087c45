"""gRPC services for orders, payments and inventory.

Messages are JSON objects with snake_case keys, carried by a JSON codec on
generic method handlers. Domain errors are mapped onto gRPC status codes in
one place, :func:`status_for`.
"""

import json
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any

import grpc
import structlog

from fulfillment_service.application.inventory import InventoryService
from fulfillment_service.application.orders import (
    CreateOrderCommand,
    OrderLineRequest,
    OrderService,
)
from fulfillment_service.application.payments import PaymentService, ProcessPaymentCommand
from fulfillment_service.application.unit_of_work import UnitOfWork
from fulfillment_service.domain.exceptions import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    DomainError,
    GatewayError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import (
    CardDetails,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    Product,
)
from fulfillment_service.infrastructure.database import Database
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.payment_gateway import PaymentGateway


logger = structlog.get_logger()

type Message = dict[str, Any]
type Method = Callable[[Any, Any, grpc.aio.ServicerContext], Awaitable[Message]]

PAYMENT_SERVICE_NAME = "fulfillment.v1.PaymentService"
ORDER_SERVICE_NAME = "fulfillment.v1.OrderService"
INVENTORY_SERVICE_NAME = "fulfillment.v1.InventoryService"

ERROR_STATUS_MAP: list[tuple[type[DomainError], grpc.StatusCode]] = [
    (ValidationError, grpc.StatusCode.INVALID_ARGUMENT),
    (ResourceNotFoundError, grpc.StatusCode.NOT_FOUND),
    (BusinessRuleViolation, grpc.StatusCode.FAILED_PRECONDITION),
    (ConcurrencyConflictError, grpc.StatusCode.ABORTED),
    (GatewayError, grpc.StatusCode.UNAVAILABLE),
]


def decode_message(data: bytes) -> Message:
    if not data:
        return {}
    try:
        message = json.loads(data)
    except json.JSONDecodeError as e:
        raise ValidationError("request", f"malformed JSON: {e.msg}") from e
    if not isinstance(message, dict):
        raise ValidationError("request", "must be a JSON object")
    return message


def encode_message(message: Message) -> bytes:
    return json.dumps(message, default=str).encode("utf-8")


def status_for(error: DomainError) -> grpc.StatusCode:
    for error_type, code in ERROR_STATUS_MAP:
        if isinstance(error, error_type):
            return code
    return grpc.StatusCode.INTERNAL


def maps_domain_errors(method: Method) -> Method:
    """Decode the request and turn a raised DomainError into an aborted call.

    Decoding happens here rather than in the codec so that malformed JSON is
    reported as INVALID_ARGUMENT instead of a generic deserialization failure.
    """

    @wraps(method)
    async def wrapper(
        self: Any, request: bytes | Message, context: grpc.aio.ServicerContext
    ) -> Message:
        try:
            message = decode_message(request) if isinstance(request, bytes) else request
            return await method(self, message, context)
        except DomainError as e:
            code = status_for(e)
            logger.info(
                "request_rejected",
                method=method.__name__,
                status_code=code.name,
                error=str(e),
            )
            await context.abort(code, str(e))
            raise AssertionError("unreachable") from e

    return wrapper


def _required(request: Message, key: str) -> Any:
    value = request.get(key)
    if value is None or value == "":
        raise ValidationError(key, "is required")
    return value


def _int(request: Message, key: str) -> int:
    value = _required(request, key)
    if isinstance(value, bool):
        raise ValidationError(key, "must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(key, "must be an integer") from e


def _amount(request: Message, key: str) -> Decimal:
    raw = _required(request, key)
    try:
        amount = Decimal(str(raw))
    except InvalidOperation as e:
        raise ValidationError(key, "must be a decimal amount") from e
    exponent = amount.as_tuple().exponent
    if not isinstance(exponent, int) or exponent < -2:
        raise ValidationError(key, "must have at most two decimal places")
    return amount


def _enum[E: (PaymentMethod, OrderStatus)](enum_type: type[E], request: Message, key: str) -> E:
    raw = str(_required(request, key)).upper()
    try:
        return enum_type(raw)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(key, f"must be one of {allowed}") from e


def payment_to_message(payment: Payment) -> Message:
    return {
        "payment_id": payment.payment_ref,
        "order_id": payment.order_id,
        "customer_id": payment.customer_id,
        "amount": str(payment.amount),
        "refunded_amount": str(payment.refunded_amount),
        "remaining_refundable": str(payment.remaining_refundable()),
        "status": payment.status.value,
        "payment_method": payment.payment_method.value,
        "transaction_id": payment.transaction_id,
        "gateway_response": payment.gateway_response,
        "failure_reason": payment.failure_reason,
        "processed_at": payment.processed_at.isoformat() if payment.processed_at else None,
        "created_at": payment.created_at.isoformat(),
        "updated_at": payment.updated_at.isoformat(),
    }


def order_to_message(order: Order) -> Message:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_email": order.customer_email,
        "status": order.status.value,
        "shipping_address": order.shipping_address,
        "total_amount": str(order.total_amount),
        "lines": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
                "subtotal": str(line.subtotal),
            }
            for line in order.lines
        ],
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


def product_to_message(product: Product) -> Message:
    return {
        "product_id": product.id,
        "name": product.name,
        "price": str(product.price),
        "quantity": product.quantity,
        "revision": product.revision,
        "active": product.active,
    }


def _unary(
    method: Callable[[Any, grpc.aio.ServicerContext], Awaitable[Message]],
) -> grpc.RpcMethodHandler:
    return grpc.unary_unary_rpc_method_handler(
        method,
        response_serializer=encode_message,
    )


class PaymentServiceHandler:
    def __init__(
        self,
        database: Database,
        gateway: PaymentGateway,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._database = database
        self._gateway = gateway
        self._notifier = notifier

    def generic_handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            PAYMENT_SERVICE_NAME,
            {
                "ProcessPayment": _unary(self.ProcessPayment),
                "RefundPayment": _unary(self.RefundPayment),
                "CancelPayment": _unary(self.CancelPayment),
                "GetPayment": _unary(self.GetPayment),
                "GetPaymentByOrderId": _unary(self.GetPaymentByOrderId),
            },
        )

    @maps_domain_errors
    async def ProcessPayment(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        log = logger.bind(method="ProcessPayment", order_id=request.get("order_id"))
        log.info("request_received")

        payment_method = _enum(PaymentMethod, request, "payment_method")
        card = None
        if request.get("card_number"):
            card = CardDetails(
                card_number=str(request["card_number"]),
                card_holder_name=str(request.get("card_holder_name", "")),
                expiry_date=str(request.get("expiry_date", "")),
                cvv=str(request.get("cvv", "")),
            )
        customer_id = _int(request, "customer_id") if request.get("customer_id") else None
        if customer_id is not None and customer_id <= 0:
            raise ValidationError("customer_id", "must be positive")

        cmd = ProcessPaymentCommand(
            order_id=str(_required(request, "order_id")),
            payment_method=payment_method,
            customer_id=customer_id,
            card=card,
        )

        async with self._database.session() as session:
            service = PaymentService(UnitOfWork(session), self._gateway, self._notifier)
            result = await service.process_payment(cmd)

        return {
            "success": result.success,
            "message": result.message,
            "payment": payment_to_message(result.payment),
        }

    @maps_domain_errors
    async def RefundPayment(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        payment_ref = str(_required(request, "payment_id"))
        amount = _amount(request, "amount")
        logger.info("request_received", method="RefundPayment", payment_ref=payment_ref)

        async with self._database.session() as session:
            service = PaymentService(UnitOfWork(session), self._gateway, self._notifier)
            result = await service.refund_payment(payment_ref, amount)

        return {
            "success": result.success,
            "message": result.message,
            "payment": payment_to_message(result.payment),
        }

    @maps_domain_errors
    async def CancelPayment(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        payment_ref = str(_required(request, "payment_id"))
        logger.info("request_received", method="CancelPayment", payment_ref=payment_ref)

        async with self._database.session() as session:
            service = PaymentService(UnitOfWork(session), self._gateway, self._notifier)
            payment = await service.cancel_payment(payment_ref)

        return {
            "success": True,
            "message": "Payment cancelled successfully",
            "payment": payment_to_message(payment),
        }

    async def GetPayment(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        # Lookups belong to the query side and are not served here.
        await context.abort(grpc.StatusCode.UNIMPLEMENTED, "GetPayment is not implemented")
        raise AssertionError("unreachable")

    async def GetPaymentByOrderId(
        self, request: Message, context: grpc.aio.ServicerContext
    ) -> Message:
        await context.abort(
            grpc.StatusCode.UNIMPLEMENTED, "GetPaymentByOrderId is not implemented"
        )
        raise AssertionError("unreachable")


class OrderServiceHandler:
    def __init__(self, database: Database, notifier: EventNotifier | None = None) -> None:
        self._database = database
        self._notifier = notifier

    def generic_handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            ORDER_SERVICE_NAME,
            {
                "CreateOrder": _unary(self.CreateOrder),
                "CancelOrder": _unary(self.CancelOrder),
                "UpdateOrderStatus": _unary(self.UpdateOrderStatus),
                "GetOrder": _unary(self.GetOrder),
            },
        )

    @maps_domain_errors
    async def CreateOrder(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        customer_id = _int(request, "customer_id")
        log = logger.bind(method="CreateOrder", customer_id=customer_id)
        log.info("request_received")

        raw_lines = request.get("lines") or []
        if not isinstance(raw_lines, list) or not all(isinstance(line, dict) for line in raw_lines):
            raise ValidationError("lines", "must be a list of objects")
        lines = [
            OrderLineRequest(product_id=_int(line, "product_id"), quantity=_int(line, "quantity"))
            for line in raw_lines
        ]
        cmd = CreateOrderCommand(
            customer_id=customer_id,
            shipping_address=str(_required(request, "shipping_address")),
            lines=lines,
            customer_email=request.get("customer_email") or None,
        )

        async with self._database.session() as session:
            service = OrderService(UnitOfWork(session), self._notifier)
            order = await service.create_order(cmd)

        return order_to_message(order)

    @maps_domain_errors
    async def CancelOrder(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        order_id = str(_required(request, "order_id"))
        logger.info("request_received", method="CancelOrder", order_id=order_id)

        async with self._database.session() as session:
            service = OrderService(UnitOfWork(session), self._notifier)
            order = await service.cancel_order(order_id)

        return order_to_message(order)

    @maps_domain_errors
    async def UpdateOrderStatus(
        self, request: Message, context: grpc.aio.ServicerContext
    ) -> Message:
        order_id = str(_required(request, "order_id"))
        status = _enum(OrderStatus, request, "status")
        logger.info(
            "request_received",
            method="UpdateOrderStatus",
            order_id=order_id,
            status=status.value,
        )

        async with self._database.session() as session:
            service = OrderService(UnitOfWork(session), self._notifier)
            order = await service.update_order_status(order_id, status)

        return order_to_message(order)

    @maps_domain_errors
    async def GetOrder(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        order_id = str(_required(request, "order_id"))

        async with self._database.session() as session:
            service = OrderService(UnitOfWork(session), self._notifier)
            order = await service.get_order(order_id)

        return order_to_message(order)


class InventoryServiceHandler:
    def __init__(self, database: Database, notifier: EventNotifier | None = None) -> None:
        self._database = database
        self._notifier = notifier

    def generic_handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            INVENTORY_SERVICE_NAME,
            {
                "GetProduct": _unary(self.GetProduct),
                "SetStockLevel": _unary(self.SetStockLevel),
                "UpdateProduct": _unary(self.UpdateProduct),
            },
        )

    @maps_domain_errors
    async def GetProduct(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        product_id = _int(request, "product_id")

        async with self._database.session() as session:
            service = InventoryService(UnitOfWork(session), self._notifier)
            product = await service.get_product(product_id)

        return product_to_message(product)

    @maps_domain_errors
    async def SetStockLevel(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        product_id = _int(request, "product_id")
        quantity = _int(request, "quantity")
        logger.info(
            "request_received",
            method="SetStockLevel",
            product_id=product_id,
            quantity=quantity,
        )

        async with self._database.session() as session:
            service = InventoryService(UnitOfWork(session), self._notifier)
            product = await service.set_stock_level(product_id, quantity)

        return product_to_message(product)

    @maps_domain_errors
    async def UpdateProduct(self, request: Message, context: grpc.aio.ServicerContext) -> Message:
        product_id = _int(request, "product_id")
        active = request.get("active")
        if active is not None and not isinstance(active, bool):
            raise ValidationError("active", "must be a boolean")
        logger.info("request_received", method="UpdateProduct", product_id=product_id)

        async with self._database.session() as session:
            service = InventoryService(UnitOfWork(session), self._notifier)
            product = await service.update_product(
                product_id,
                name=request.get("name"),
                price=_amount(request, "price") if request.get("price") is not None else None,
                active=active,
            )

        return product_to_message(product)
