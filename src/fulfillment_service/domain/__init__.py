"""Domain layer - business entities and rules."""

from fulfillment_service.domain.events import EventType, order_event, payment_event, stock_event
from fulfillment_service.domain.exceptions import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    DomainError,
    DuplicatePaymentError,
    EventPublishFailure,
    GatewayError,
    InsufficientStockError,
    InvalidTransitionError,
    ProductUnavailableError,
    RefundRejectedError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import (
    CardDetails,
    DomainEvent,
    Order,
    OrderLine,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    to_money,
)


__all__ = [
    "BusinessRuleViolation",
    "CardDetails",
    "ConcurrencyConflictError",
    "DomainError",
    "DomainEvent",
    "DuplicatePaymentError",
    "EventPublishFailure",
    "EventType",
    "GatewayError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "Order",
    "OrderLine",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "ProductUnavailableError",
    "RefundRejectedError",
    "ResourceNotFoundError",
    "ValidationError",
    "order_event",
    "payment_event",
    "stock_event",
    "to_money",
]
