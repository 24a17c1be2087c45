"""Event envelopes announced to downstream consumers.

Each builder copies the externally relevant fields of an aggregate into a flat
dict at the moment of the state change. Consumers receive that copy and nothing
else, so later mutations of the aggregate never leak into a published event.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ulid import ULID

from fulfillment_service.domain.models import DomainEvent, Order, OrderStatus, Payment


class EventType(Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_STATUS_UPDATED = "ORDER_STATUS_UPDATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    PAYMENT_RETRY = "PAYMENT_RETRY"
    STOCK_UPDATED = "STOCK_UPDATED"


def _envelope_header(event_type: EventType) -> tuple[str, datetime, dict[str, Any]]:
    event_id = str(ULID())
    now = datetime.now(UTC)
    return (
        event_id,
        now,
        {
            "eventType": event_type.value,
            "eventId": event_id,
            "timestamp": now.isoformat(),
        },
    )


def order_event(
    event_type: EventType,
    order: Order,
    previous_status: OrderStatus | None = None,
) -> DomainEvent:
    event_id, now, payload = _envelope_header(event_type)
    payload.update(
        {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "customerId": order.customer_id,
            "customerEmail": order.customer_email,
            "status": order.status.value,
            "totalAmount": str(order.total_amount),
            "shippingAddress": order.shipping_address,
            "lineCount": len(order.lines),
            "createdAt": order.created_at.isoformat(),
            "updatedAt": order.updated_at.isoformat(),
        }
    )
    if previous_status is not None:
        payload["previousStatus"] = previous_status.value
    return DomainEvent.create(
        aggregate_type="Order",
        aggregate_id=order.id,
        event_type=event_type.value,
        payload=payload,
        event_id=event_id,
        created_at=now,
    )


def payment_event(event_type: EventType, payment: Payment) -> DomainEvent:
    event_id, now, payload = _envelope_header(event_type)
    payload.update(
        {
            "paymentId": payment.payment_ref,
            "orderId": payment.order_id,
            "customerId": payment.customer_id,
            "amount": str(payment.amount),
            "refundedAmount": str(payment.refunded_amount),
            "status": payment.status.value,
            "paymentMethod": payment.payment_method.value,
            "transactionId": payment.transaction_id,
        }
    )
    if event_type == EventType.PAYMENT_FAILED:
        payload["failureReason"] = payment.failure_reason
    return DomainEvent.create(
        aggregate_type="Payment",
        aggregate_id=payment.payment_ref,
        event_type=event_type.value,
        payload=payload,
        event_id=event_id,
        created_at=now,
    )


def stock_event(product_id: int, stock_quantity: int) -> DomainEvent:
    # Stock consumers read the timestamp as epoch milliseconds.
    event_id = str(ULID())
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "eventType": EventType.STOCK_UPDATED.value,
        "eventId": event_id,
        "productId": product_id,
        "stockQuantity": stock_quantity,
        "timestamp": int(now.timestamp() * 1000),
    }
    return DomainEvent.create(
        aggregate_type="Product",
        aggregate_id=str(product_id),
        event_type=EventType.STOCK_UPDATED.value,
        payload=payload,
        event_id=event_id,
        created_at=now,
    )
