"""Application layer - services and use cases."""

from fulfillment_service.application.events import EventBuffer
from fulfillment_service.application.inventory import InventoryService, StockLedger
from fulfillment_service.application.orders import (
    CreateOrderCommand,
    OrderLineRequest,
    OrderService,
)
from fulfillment_service.application.payments import (
    PaymentResult,
    PaymentService,
    ProcessPaymentCommand,
)
from fulfillment_service.application.retry import retry_on_conflict
from fulfillment_service.application.unit_of_work import UnitOfWork


__all__ = [
    "CreateOrderCommand",
    "EventBuffer",
    "InventoryService",
    "OrderLineRequest",
    "OrderService",
    "PaymentResult",
    "PaymentService",
    "ProcessPaymentCommand",
    "StockLedger",
    "UnitOfWork",
    "retry_on_conflict",
]
