"""Shared pytest fixtures for fulfillment service tests."""

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment_service.application.unit_of_work import UnitOfWork
from fulfillment_service.domain.models import (
    ZERO,
    Order,
    OrderLine,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
)


class InMemoryProductRepository:
    """Product storage with the same conditional-update semantics as the SQL one.

    Each operation completes without awaiting between its check and its
    write, which is what a single guarded UPDATE gives on the database.
    """

    def __init__(self, products: list[Product] | None = None) -> None:
        self.products: dict[int, Product] = {p.id: p for p in products or []}

    async def get(self, product_id: int) -> Product | None:
        return self.products.get(product_id)

    async def get_for_update(self, product_id: int) -> Product | None:
        return self.products.get(product_id)

    async def add(self, product: Product) -> None:
        self.products[product.id] = product

    async def reserve(self, product_id: int, quantity: int) -> int | None:
        product = self.products.get(product_id)
        if product is None or not product.active or product.quantity < quantity:
            return None
        product.quantity -= quantity
        product.revision += 1
        return product.quantity

    async def restore(self, product_id: int, quantity: int) -> int | None:
        product = self.products.get(product_id)
        if product is None:
            return None
        product.quantity += quantity
        product.revision += 1
        return product.quantity

    async def update(self, product: Product, expected_revision: int) -> None:
        from fulfillment_service.domain.exceptions import ConcurrencyConflictError

        stored = self.products.get(product.id)
        if stored is None or stored.revision != expected_revision:
            raise ConcurrencyConflictError("Product", product.id)
        product.revision = expected_revision + 1
        self.products[product.id] = product


class InMemoryPaymentRepository:
    """Payment storage with the guarded writes of the SQL one.

    Reads hand out copies so a caller's edits only land through
    :meth:`update`, which checks what the caller read.
    """

    def __init__(self, payments: list[Payment] | None = None) -> None:
        self.payments: dict[str, Payment] = {p.id: replace(p) for p in payments or []}
        self.refund_pending: dict[str, Decimal] = {}

    async def get(self, payment_id: str) -> Payment | None:
        payment = self.payments.get(payment_id)
        return replace(payment) if payment else None

    async def get_by_ref(self, payment_ref: str) -> Payment | None:
        for payment in self.payments.values():
            if payment.payment_ref == payment_ref:
                return replace(payment)
        return None

    async def get_by_order_id(self, order_id: str) -> Payment | None:
        for payment in self.payments.values():
            if payment.order_id == order_id:
                return replace(payment)
        return None

    async def add(self, payment: Payment) -> None:
        self.payments[payment.id] = replace(payment)

    async def update(
        self,
        payment: Payment,
        expected_status: PaymentStatus,
        expected_refunded: Decimal,
        released_refund: Decimal = ZERO,
    ) -> None:
        from fulfillment_service.domain.exceptions import ConcurrencyConflictError

        stored = self.payments.get(payment.id)
        if (
            stored is None
            or stored.status != expected_status
            or stored.refunded_amount != expected_refunded
        ):
            raise ConcurrencyConflictError("Payment", payment.payment_ref)
        self.payments[payment.id] = replace(payment)
        self.refund_pending[payment.id] = self.pending(payment.id) - released_refund

    async def reserve_refund(self, payment_id: str, amount: Decimal) -> bool:
        stored = self.payments.get(payment_id)
        if stored is None or stored.status not in (
            PaymentStatus.COMPLETED,
            PaymentStatus.PARTIALLY_REFUNDED,
        ):
            return False
        if stored.refunded_amount + self.pending(payment_id) + amount > stored.amount:
            return False
        self.refund_pending[payment_id] = self.pending(payment_id) + amount
        return True

    async def release_refund(self, payment_id: str, amount: Decimal) -> None:
        self.refund_pending[payment_id] = max(self.pending(payment_id) - amount, ZERO)

    def pending(self, payment_id: str) -> Decimal:
        return self.refund_pending.get(payment_id, ZERO)


@pytest.fixture
def mock_product_repository() -> AsyncMock:
    """Create mock ProductRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.get_for_update = AsyncMock(return_value=None)
    repo.reserve = AsyncMock(return_value=None)
    repo.restore = AsyncMock(return_value=None)
    repo.update = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_order_repository() -> AsyncMock:
    """Create mock OrderRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.add = AsyncMock(return_value=None)
    repo.update_status = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_payment_repository() -> AsyncMock:
    """Create mock PaymentRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.get_by_ref = AsyncMock(return_value=None)
    repo.get_by_order_id = AsyncMock(return_value=None)
    repo.add = AsyncMock(return_value=None)
    repo.update = AsyncMock(return_value=None)
    repo.reserve_refund = AsyncMock(return_value=True)
    repo.release_refund = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_outbox_repository() -> AsyncMock:
    """Create mock OutboxRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(side_effect=lambda event: event)
    repo.get_unpublished = AsyncMock(return_value=[])
    repo.count_unpublished = AsyncMock(return_value=0)
    repo.mark_published = AsyncMock(return_value=None)
    repo.increment_retry_count = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_uow(
    mock_product_repository: AsyncMock,
    mock_order_repository: AsyncMock,
    mock_payment_repository: AsyncMock,
    mock_outbox_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.products = mock_product_repository
    uow.orders = mock_order_repository
    uow.payments = mock_payment_repository
    uow.outbox = mock_outbox_repository
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


@pytest.fixture
def mock_notifier() -> MagicMock:
    """Create mock EventNotifier that accepts every event."""
    notifier = MagicMock()
    notifier.notify = AsyncMock(return_value=True)
    notifier.publish = AsyncMock(return_value=True)
    return notifier


@pytest.fixture(autouse=True)
def fast_conflict_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep conflict retry backoff out of test wall time."""
    from fulfillment_service.config import settings

    monkeypatch.setattr(settings, "conflict_retry_base_delay_seconds", 0.0)


def create_product(
    product_id: int = 1,
    price: str = "25.00",
    quantity: int = 10,
    active: bool = True,
    revision: int = 1,
    name: str | None = None,
) -> Product:
    """Helper to create Product with custom values."""
    return Product(
        id=product_id,
        name=name or f"Product {product_id}",
        price=Decimal(price),
        quantity=quantity,
        revision=revision,
        active=active,
        updated_at=datetime.now(UTC),
    )


def create_order(
    lines: list[tuple[int, int, str]] | None = None,
    status: OrderStatus = OrderStatus.PENDING,
    customer_id: int = 42,
) -> Order:
    """Helper to create Order from (product_id, quantity, unit_price) tuples."""
    order = Order.create(
        customer_id=customer_id,
        shipping_address="1 Main St, Springfield",
        lines=[
            OrderLine(product_id=pid, quantity=qty, unit_price=Decimal(price))
            for pid, qty, price in (lines or [(1, 2, "25.00")])
        ],
        customer_email="customer@example.com",
    )
    order.status = status
    return order


def create_payment(
    order: Order | None = None,
    status: PaymentStatus = PaymentStatus.PENDING,
    amount: str | None = None,
    refunded: str = "0.00",
    method: PaymentMethod = PaymentMethod.CREDIT_CARD,
) -> Payment:
    """Helper to create Payment with custom values."""
    order = order or create_order()
    payment = Payment.create(order, method)
    if amount is not None:
        payment.amount = Decimal(amount)
    payment.status = status
    payment.refunded_amount = Decimal(refunded)
    if status != PaymentStatus.PENDING:
        payment.transaction_id = "TXN_0000ABCD"
    return payment
