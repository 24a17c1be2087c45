from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from ulid import ULID

from fulfillment_service.domain.exceptions import (
    InvalidTransitionError,
    RefundRejectedError,
    ValidationError,
)


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MIN_LINE_QUANTITY = 1
MAX_LINE_QUANTITY = 100


def to_money(value: Decimal | int | str) -> Decimal:
    """Normalize an amount to two decimal places."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

CANCELLABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(
        {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


class PaymentMethod(Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    PAYPAL_WALLET = "PAYPAL_WALLET"
    BANK_TRANSFER = "BANK_TRANSFER"


@dataclass
class Product:
    id: int
    name: str
    price: Decimal
    quantity: int
    revision: int = 1
    active: bool = True
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError("Stock quantity cannot be negative")

    def is_available(self) -> bool:
        return self.active and self.quantity > 0


@dataclass(frozen=True)
class OrderLine:
    """Snapshot of one ordered product. Holds the price, never the product."""

    product_id: int
    quantity: int
    unit_price: Decimal

    def __post_init__(self) -> None:
        if not MIN_LINE_QUANTITY <= self.quantity <= MAX_LINE_QUANTITY:
            raise ValidationError(
                "quantity",
                f"must be between {MIN_LINE_QUANTITY} and {MAX_LINE_QUANTITY}, got {self.quantity}",
            )
        if self.unit_price < 0:
            raise ValidationError("unit_price", "cannot be negative")

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class Order:
    id: str
    order_number: str
    customer_id: int
    status: OrderStatus
    shipping_address: str
    lines: list[OrderLine] = field(default_factory=list)
    total_amount: Decimal = ZERO
    customer_email: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        customer_id: int,
        shipping_address: str,
        lines: list[OrderLine],
        customer_email: str | None = None,
    ) -> "Order":
        order = cls(
            id=str(ULID()),
            order_number=f"ORD-{ULID()}",
            customer_id=customer_id,
            status=OrderStatus.PENDING,
            shipping_address=shipping_address,
            lines=list(lines),
            customer_email=customer_email,
        )
        order.recompute_total()
        return order

    def recompute_total(self) -> Decimal:
        self.total_amount = to_money(sum((line.subtotal for line in self.lines), ZERO))
        return self.total_amount

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ORDER_TRANSITIONS[self.status]

    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_ORDER_STATUSES

    def transition_to(self, new_status: OrderStatus) -> OrderStatus:
        """Move along one lifecycle edge and return the status left behind."""
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError("order", self.status.value, new_status.value)
        previous = self.status
        self.status = new_status
        self.updated_at = datetime.now(UTC)
        return previous


@dataclass(frozen=True)
class CardDetails:
    card_number: str
    card_holder_name: str
    expiry_date: str
    cvv: str

    @property
    def last4(self) -> str:
        return self.card_number[-4:]


@dataclass
class Payment:
    id: str
    payment_ref: str
    order_id: str
    customer_id: int
    amount: Decimal
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    refunded_amount: Decimal = ZERO
    transaction_id: str | None = None
    gateway_response: str | None = None
    failure_reason: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(cls, order: Order, payment_method: PaymentMethod) -> "Payment":
        return cls(
            id=str(ULID()),
            payment_ref=f"PAY-{ULID()}",
            order_id=order.id,
            customer_id=order.customer_id,
            amount=order.total_amount,
            payment_method=payment_method,
        )

    def _move_to(self, new_status: PaymentStatus) -> None:
        if new_status not in PAYMENT_TRANSITIONS[self.status]:
            raise InvalidTransitionError("payment", self.status.value, new_status.value)
        self.status = new_status
        self.updated_at = datetime.now(UTC)

    def process(self, transaction_id: str, gateway_response: str | None = None) -> None:
        self._move_to(PaymentStatus.COMPLETED)
        self.transaction_id = transaction_id
        self.gateway_response = gateway_response
        self.refunded_amount = ZERO
        self.processed_at = datetime.now(UTC)

    def fail(self, reason: str) -> None:
        self._move_to(PaymentStatus.FAILED)
        self.failure_reason = reason
        self.processed_at = datetime.now(UTC)

    def cancel(self) -> None:
        self._move_to(PaymentStatus.CANCELLED)

    def remaining_refundable(self) -> Decimal:
        return to_money(self.amount - self.refunded_amount)

    def check_refundable(self, amount: Decimal) -> None:
        """Raise unless ``amount`` could be refunded right now. Does not mutate."""
        if self.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            raise InvalidTransitionError("payment", self.status.value, PaymentStatus.REFUNDED.value)
        if amount <= 0:
            raise RefundRejectedError(self.payment_ref, amount, "amount must be greater than zero")
        remaining = self.remaining_refundable()
        if remaining <= 0:
            raise RefundRejectedError(self.payment_ref, amount, "payment already fully refunded")
        if amount > remaining:
            raise RefundRejectedError(
                self.payment_ref,
                amount,
                f"exceeds remaining refundable amount {remaining}",
            )

    def refund(self, amount: Decimal) -> None:
        amount = to_money(amount)
        self.check_refundable(amount)
        refunded = to_money(self.refunded_amount + amount)
        if refunded == self.amount:
            self._move_to(PaymentStatus.REFUNDED)
        else:
            self._move_to(PaymentStatus.PARTIALLY_REFUNDED)
        self.refunded_amount = refunded


@dataclass
class DomainEvent:
    """A state change announced to downstream consumers.

    ``payload`` is the flat envelope that goes on the wire; it never holds a
    reference to a live aggregate.
    """

    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    published_at: datetime | None = None
    retry_count: int = 0

    @classmethod
    def create(
        cls,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
        event_id: str | None = None,
        created_at: datetime | None = None,
    ) -> "DomainEvent":
        return cls(
            id=event_id or str(ULID()),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
            created_at=created_at or datetime.now(UTC),
        )
