from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError

from fulfillment_service.application.events import EventBuffer
from fulfillment_service.application.retry import retry_on_conflict
from fulfillment_service.application.unit_of_work import UnitOfWork
from fulfillment_service.config import settings
from fulfillment_service.domain.events import EventType, order_event, payment_event
from fulfillment_service.domain.exceptions import (
    ConcurrencyConflictError,
    DuplicatePaymentError,
    GatewayError,
    InvalidTransitionError,
    RefundRejectedError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import (
    ZERO,
    CardDetails,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    to_money,
)
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.metrics import (
    ORDER_TRANSITIONS_TOTAL,
    PAYMENT_REQUESTS_TOTAL,
    REFUND_REQUESTS_TOTAL,
    track_payment_duration,
)
from fulfillment_service.infrastructure.payment_gateway import (
    ChargeResult,
    PaymentGateway,
    RefundResult,
)


logger = structlog.get_logger()


@dataclass
class ProcessPaymentCommand:
    order_id: str
    payment_method: PaymentMethod
    customer_id: int | None = None
    card: CardDetails | None = None


@dataclass
class PaymentResult:
    success: bool
    message: str
    payment: Payment


class PaymentService:
    """Payment lifecycle around an external gateway.

    Gateway calls never run inside a database transaction: the payment row is
    committed as Pending first, the gateway is called, and the outcome is
    written back in a second transaction guarded against concurrent changes.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        gateway: PaymentGateway,
        notifier: EventNotifier | None = None,
    ) -> None:
        self.uow = uow
        self.gateway = gateway
        self.events = EventBuffer(uow.outbox, notifier)

    @track_payment_duration
    async def process_payment(self, cmd: ProcessPaymentCommand) -> PaymentResult:
        log = logger.bind(order_id=cmd.order_id, payment_method=cmd.payment_method.value)

        payment = await self._open_payment(cmd, log)
        log = log.bind(payment_ref=payment.payment_ref)

        try:
            charge = await self.gateway.charge(payment, cmd.card)
        except GatewayError as e:
            charge = ChargeResult(success=False, failure_reason=f"Gateway error: {e.reason}")
        log.info("payment_gateway_answered", step="2/3", success=charge.success)

        try:
            settled = await retry_on_conflict(
                lambda: self._settle(payment.id, charge),
                name="settle_payment",
                attempts=settings.conflict_max_retries,
                base_delay=settings.conflict_retry_base_delay_seconds,
            )
        except InvalidTransitionError:
            # Cancelled while the gateway was working. Money taken for a
            # cancelled payment is handed back.
            if charge.success:
                await self._reverse_charge(payment, log)
            PAYMENT_REQUESTS_TOTAL.labels(status="CANCELLED", error_code="CANCELLED").inc()
            raise
        except ConcurrencyConflictError:
            # The outcome could not be recorded. A charge nobody knows about
            # is handed back rather than left on the card.
            if charge.success:
                log.error("payment_settle_failed", transaction_id=charge.transaction_id)
                await self._reverse_charge(payment, log)
            PAYMENT_REQUESTS_TOTAL.labels(status="PENDING", error_code="CONFLICT").inc()
            raise

        await self.events.flush()

        PAYMENT_REQUESTS_TOTAL.labels(
            status=settled.status.value,
            error_code="" if charge.success else "DECLINED",
        ).inc()
        log.info("payment_settled", step="3/3", status=settled.status.value)

        if charge.success:
            return PaymentResult(True, "Payment processed successfully", settled)
        return PaymentResult(False, f"Payment failed: {settled.failure_reason}", settled)

    async def refund_payment(self, payment_ref: str, amount: Decimal) -> PaymentResult:
        amount = to_money(amount)
        log = logger.bind(payment_ref=payment_ref, amount=str(amount))

        payment = await self._hold_refund(payment_ref, amount)

        try:
            refund = await self.gateway.refund(payment, amount)
        except GatewayError as e:
            refund = RefundResult(success=False, failure_reason=f"Gateway error: {e.reason}")

        if not refund.success:
            await self._release_refund(payment.id, amount)
            REFUND_REQUESTS_TOTAL.labels(outcome="declined").inc()
            log.warning("refund_declined", reason=refund.failure_reason)
            return PaymentResult(False, f"Refund failed: {refund.failure_reason}", payment)

        async def apply() -> Payment:
            async with self.uow:
                self.events.discard()
                current = await self._load_by_ref(payment_ref)
                expected_status, expected_refunded = current.status, current.refunded_amount
                current.refund(amount)
                current.gateway_response = refund.gateway_response
                await self.uow.payments.update(
                    current,
                    expected_status=expected_status,
                    expected_refunded=expected_refunded,
                    released_refund=amount,
                )
                await self.events.stage(payment_event(EventType.PAYMENT_REFUNDED, current))
                await self.uow.commit()
                return current

        try:
            refunded = await retry_on_conflict(
                apply,
                name="refund_payment",
                attempts=settings.conflict_max_retries,
                base_delay=settings.conflict_retry_base_delay_seconds,
            )
        except Exception:
            # The hold stays, so the returned money cannot be refunded twice.
            log.error("refund_bookkeeping_failed", refund_id=refund.refund_id, exc_info=True)
            raise

        await self.events.flush()
        REFUND_REQUESTS_TOTAL.labels(outcome=refunded.status.value.lower()).inc()
        log.info(
            "payment_refunded",
            status=refunded.status.value,
            refunded_amount=str(refunded.refunded_amount),
            remaining=str(refunded.remaining_refundable()),
        )
        return PaymentResult(True, "Refund processed successfully", refunded)

    async def cancel_payment(self, payment_ref: str) -> Payment:
        async def attempt() -> Payment:
            async with self.uow:
                self.events.discard()
                payment = await self._load_by_ref(payment_ref)
                expected_status = payment.status
                payment.cancel()
                await self.uow.payments.update(
                    payment,
                    expected_status=expected_status,
                    expected_refunded=payment.refunded_amount,
                )
                await self.events.stage(payment_event(EventType.PAYMENT_CANCELLED, payment))
                await self.uow.commit()
                return payment

        payment = await retry_on_conflict(
            attempt,
            name="cancel_payment",
            attempts=settings.conflict_max_retries,
            base_delay=settings.conflict_retry_base_delay_seconds,
        )
        await self.events.flush()
        logger.info("payment_cancelled", payment_ref=payment_ref, order_id=payment.order_id)
        return payment

    async def get_payment(self, payment_ref: str) -> Payment:
        async with self.uow:
            return await self._load_by_ref(payment_ref)

    async def get_payment_by_order_id(self, order_id: str) -> Payment:
        async with self.uow:
            payment = await self.uow.payments.get_by_order_id(order_id)
            if payment is None:
                raise ResourceNotFoundError("Payment for order", order_id)
            return payment

    async def _open_payment(
        self, cmd: ProcessPaymentCommand, log: structlog.stdlib.BoundLogger
    ) -> Payment:
        async with self.uow:
            order = await self._load_order(cmd.order_id)
            if cmd.customer_id is not None and cmd.customer_id != order.customer_id:
                raise ValidationError("customer_id", "does not match the order")
            if order.status != OrderStatus.PENDING:
                raise InvalidTransitionError(
                    "order", order.status.value, OrderStatus.CONFIRMED.value
                )
            if order.total_amount <= 0:
                raise ValidationError("amount", "must be greater than zero")
            if order.total_amount > settings.max_payment_amount:
                raise ValidationError(
                    "amount", f"exceeds the maximum of {settings.max_payment_amount}"
                )
            if await self.uow.payments.get_by_order_id(order.id) is not None:
                raise DuplicatePaymentError(order.id)

            payment = Payment.create(order, cmd.payment_method)
            try:
                await self.uow.payments.add(payment)
                await self.uow.commit()
            except IntegrityError as e:
                # Lost the race against another payment for the same order.
                raise DuplicatePaymentError(order.id) from e

        log.info("payment_created", step="1/3", amount=str(payment.amount))
        return payment

    async def _settle(self, payment_id: str, charge: ChargeResult) -> Payment:
        async with self.uow:
            self.events.discard()
            payment = await self.uow.payments.get(payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", payment_id)

            if charge.success:
                payment.process(charge.transaction_id or "", charge.gateway_response)
            else:
                payment.fail(charge.failure_reason or "Payment declined")
            await self.uow.payments.update(
                payment,
                expected_status=PaymentStatus.PENDING,
                expected_refunded=ZERO,
            )

            if charge.success:
                order = await self._load_order(payment.order_id)
                if order.status == OrderStatus.PENDING:
                    previous = order.transition_to(OrderStatus.CONFIRMED)
                    await self.uow.orders.update_status(order, expected=previous)
                    ORDER_TRANSITIONS_TOTAL.labels(
                        from_status=previous.value, to_status=order.status.value
                    ).inc()
                    await self.events.stage(
                        order_event(
                            EventType.ORDER_STATUS_UPDATED, order, previous_status=previous
                        )
                    )
                await self.events.stage(payment_event(EventType.PAYMENT_PROCESSED, payment))
            else:
                # A failed payment leaves the order Pending; cancelling it is
                # an operator decision.
                await self.events.stage(payment_event(EventType.PAYMENT_FAILED, payment))

            await self.uow.commit()
            return payment

    async def _hold_refund(self, payment_ref: str, amount: Decimal) -> Payment:
        """Set ``amount`` aside before any money moves.

        Each concurrent refund takes its share with one conditional write, so
        together they can never send back more than was captured.
        """
        async with self.uow:
            payment = await self._load_by_ref(payment_ref)
            payment.check_refundable(amount)
            if not await self.uow.payments.reserve_refund(payment.id, amount):
                raise RefundRejectedError(
                    payment_ref, amount, "exceeds what remains after refunds in progress"
                )
            await self.uow.commit()
        return payment

    async def _release_refund(self, payment_id: str, amount: Decimal) -> None:
        async with self.uow:
            await self.uow.payments.release_refund(payment_id, amount)
            await self.uow.commit()

    async def _reverse_charge(self, payment: Payment, log: structlog.stdlib.BoundLogger) -> None:
        try:
            refund = await self.gateway.refund(payment, payment.amount)
        except GatewayError as e:
            log.error("charge_reversal_failed", reason=e.reason)
            return
        if refund.success:
            log.warning("charge_reversed", refund_id=refund.refund_id)
        else:
            log.error("charge_reversal_failed", reason=refund.failure_reason)

    async def _load_order(self, order_id: str) -> Order:
        order = await self.uow.orders.get(order_id)
        if order is None:
            raise ResourceNotFoundError("Order", order_id)
        return order

    async def _load_by_ref(self, payment_ref: str) -> Payment:
        payment = await self.uow.payments.get_by_ref(payment_ref)
        if payment is None:
            raise ResourceNotFoundError("Payment", payment_ref)
        return payment
