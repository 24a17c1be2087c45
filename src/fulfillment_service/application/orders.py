from dataclasses import dataclass, field

import structlog

from fulfillment_service.application.events import EventBuffer
from fulfillment_service.application.inventory import StockLedger
from fulfillment_service.application.retry import retry_on_conflict
from fulfillment_service.application.unit_of_work import UnitOfWork
from fulfillment_service.config import settings
from fulfillment_service.domain.events import EventType, order_event, payment_event
from fulfillment_service.domain.exceptions import (
    ConcurrencyConflictError,
    DomainError,
    InvalidTransitionError,
    ProductUnavailableError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import (
    MAX_LINE_QUANTITY,
    MIN_LINE_QUANTITY,
    Order,
    OrderLine,
    OrderStatus,
    PaymentStatus,
)
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.metrics import (
    COMPENSATIONS_TOTAL,
    ORDER_TRANSITIONS_TOTAL,
    ORDERS_TOTAL,
)


logger = structlog.get_logger()


@dataclass
class OrderLineRequest:
    product_id: int
    quantity: int


@dataclass
class CreateOrderCommand:
    customer_id: int
    shipping_address: str
    lines: list[OrderLineRequest] = field(default_factory=list)
    customer_email: str | None = None


class OrderService:
    def __init__(self, uow: UnitOfWork, notifier: EventNotifier | None = None) -> None:
        self.uow = uow
        self.events = EventBuffer(uow.outbox, notifier)
        self.ledger = StockLedger(uow, self.events)

    async def create_order(self, cmd: CreateOrderCommand) -> Order:
        self._validate(cmd)
        log = logger.bind(customer_id=cmd.customer_id, line_count=len(cmd.lines))

        # A lost lock race rolls back the whole attempt, reservations
        # included, so it is simply placed again.
        order = await retry_on_conflict(
            lambda: self._place(cmd, log),
            name="create_order",
            attempts=settings.conflict_max_retries,
            base_delay=settings.conflict_retry_base_delay_seconds,
        )

        ORDERS_TOTAL.labels(outcome="created").inc()
        log.info(
            "order_created",
            step="2/3",
            order_id=order.id,
            order_number=order.order_number,
            total_amount=str(order.total_amount),
        )
        await self.events.flush()
        log.info("order_events_dispatched", step="3/3", order_id=order.id)
        return order

    async def _place(self, cmd: CreateOrderCommand, log: structlog.stdlib.BoundLogger) -> Order:
        async with self.uow:
            self.events.discard()
            reserved: list[OrderLineRequest] = []
            lines: list[OrderLine] = []
            try:
                for request in cmd.lines:
                    product = await self.ledger.get_product(request.product_id)
                    if not product.active:
                        raise ProductUnavailableError(product.id)
                    await self.ledger.reserve(request.product_id, request.quantity)
                    reserved.append(request)
                    # Price is captured now; later product edits never reach this order.
                    lines.append(
                        OrderLine(
                            product_id=product.id,
                            quantity=request.quantity,
                            unit_price=product.price,
                        )
                    )
                log.info("order_stock_reserved", step="1/3", reserved=len(reserved))

                order = Order.create(
                    customer_id=cmd.customer_id,
                    shipping_address=cmd.shipping_address,
                    lines=lines,
                    customer_email=cmd.customer_email,
                )
                if order.total_amount <= 0:
                    raise ValidationError("total_amount", "must be greater than zero")
            except ConcurrencyConflictError:
                # The transaction is already aborted; nothing to give back.
                raise
            except DomainError as e:
                await self._compensate(reserved, e, log)
                raise

            await self.uow.orders.add(order)
            await self.events.stage(order_event(EventType.ORDER_CREATED, order))
            await self.uow.commit()
        return order

    async def cancel_order(self, order_id: str) -> Order:
        """Customer cancellation. Only Pending and Confirmed orders qualify."""

        async def attempt() -> Order:
            async with self.uow:
                self.events.discard()
                order = await self._load(order_id)
                if not order.can_cancel():
                    raise InvalidTransitionError(
                        "order", order.status.value, OrderStatus.CANCELLED.value
                    )
                await self._cancel(order)
                await self.uow.commit()
                return order

        order = await retry_on_conflict(
            attempt,
            name="cancel_order",
            attempts=settings.conflict_max_retries,
            base_delay=settings.conflict_retry_base_delay_seconds,
        )
        ORDERS_TOTAL.labels(outcome="cancelled").inc()
        await self.events.flush()
        return order

    async def update_order_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """Administrative move along the lifecycle.

        A Cancelled target takes the cancellation path so stock is restored,
        but is judged by the transition table alone: a Processing order can
        still be cancelled here even though a customer could not.
        """

        async def attempt() -> Order:
            async with self.uow:
                self.events.discard()
                order = await self._load(order_id)
                if new_status == OrderStatus.CANCELLED:
                    await self._cancel(order)
                else:
                    previous = order.transition_to(new_status)
                    await self.uow.orders.update_status(order, expected=previous)
                    ORDER_TRANSITIONS_TOTAL.labels(
                        from_status=previous.value, to_status=new_status.value
                    ).inc()
                    await self.events.stage(
                        order_event(EventType.ORDER_STATUS_UPDATED, order, previous_status=previous)
                    )
                    if new_status == OrderStatus.COMPLETED:
                        await self.events.stage(order_event(EventType.ORDER_COMPLETED, order))
                    logger.info(
                        "order_status_updated",
                        order_id=order.id,
                        previous_status=previous.value,
                        status=new_status.value,
                    )
                await self.uow.commit()
                return order

        order = await retry_on_conflict(
            attempt,
            name="update_order_status",
            attempts=settings.conflict_max_retries,
            base_delay=settings.conflict_retry_base_delay_seconds,
        )
        if new_status == OrderStatus.CANCELLED:
            ORDERS_TOTAL.labels(outcome="cancelled").inc()
        await self.events.flush()
        return order

    async def get_order(self, order_id: str) -> Order:
        async with self.uow:
            return await self._load(order_id)

    async def _load(self, order_id: str) -> Order:
        order = await self.uow.orders.get(order_id)
        if order is None:
            raise ResourceNotFoundError("Order", order_id)
        return order

    async def _cancel(self, order: Order) -> None:
        previous = order.transition_to(OrderStatus.CANCELLED)
        await self.uow.orders.update_status(order, expected=previous)
        ORDER_TRANSITIONS_TOTAL.labels(
            from_status=previous.value, to_status=OrderStatus.CANCELLED.value
        ).inc()

        for line in order.lines:
            await self.ledger.restore(line.product_id, line.quantity)

        payment = await self.uow.payments.get_by_order_id(order.id)
        if payment is not None and payment.status == PaymentStatus.PENDING:
            payment.cancel()
            await self.uow.payments.update(
                payment,
                expected_status=PaymentStatus.PENDING,
                expected_refunded=payment.refunded_amount,
            )
            await self.events.stage(payment_event(EventType.PAYMENT_CANCELLED, payment))

        await self.events.stage(
            order_event(EventType.ORDER_CANCELLED, order, previous_status=previous)
        )
        logger.info(
            "order_cancelled",
            order_id=order.id,
            previous_status=previous.value,
            restored_lines=len(order.lines),
        )

    async def _compensate(
        self,
        reserved: list[OrderLineRequest],
        error: DomainError,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        """Give back every unit this request already took, in reverse order."""
        for request in reversed(reserved):
            await self.ledger.restore(request.product_id, request.quantity)
        self.events.discard()
        ORDERS_TOTAL.labels(outcome="rejected").inc()
        if reserved:
            COMPENSATIONS_TOTAL.labels(reason=type(error).__name__).inc()
        log.warning(
            "order_rejected",
            reason=str(error),
            compensated_lines=len(reserved),
        )

    def _validate(self, cmd: CreateOrderCommand) -> None:
        if cmd.customer_id <= 0:
            raise ValidationError("customer_id", "must be positive")
        if not cmd.shipping_address or not cmd.shipping_address.strip():
            raise ValidationError("shipping_address", "is required")
        if not cmd.lines:
            raise ValidationError("lines", "order must contain at least one line")
        for request in cmd.lines:
            if not MIN_LINE_QUANTITY <= request.quantity <= MAX_LINE_QUANTITY:
                raise ValidationError(
                    "quantity",
                    f"must be between {MIN_LINE_QUANTITY} and {MAX_LINE_QUANTITY}, "
                    f"got {request.quantity}",
                )
