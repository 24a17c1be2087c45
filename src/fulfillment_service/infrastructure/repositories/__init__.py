"""Repository implementations."""

from fulfillment_service.infrastructure.repositories.order import OrderRepository
from fulfillment_service.infrastructure.repositories.outbox import OutboxRepository
from fulfillment_service.infrastructure.repositories.payment import PaymentRepository
from fulfillment_service.infrastructure.repositories.product import ProductRepository


__all__ = [
    "OrderRepository",
    "OutboxRepository",
    "PaymentRepository",
    "ProductRepository",
]
