from decimal import Decimal
from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.domain.exceptions import ConcurrencyConflictError
from fulfillment_service.domain.models import ZERO, Payment, PaymentMethod, PaymentStatus


_COLUMNS = """
    id, payment_ref, order_id, customer_id, amount, refunded_amount,
    payment_method, status, transaction_id, gateway_response, failure_reason,
    processed_at, created_at, updated_at
"""


def _to_payment(row: Row[Any]) -> Payment:
    return Payment(
        id=row.id,
        payment_ref=row.payment_ref,
        order_id=row.order_id,
        customer_id=row.customer_id,
        amount=row.amount,
        payment_method=PaymentMethod(row.payment_method),
        status=PaymentStatus(row.status),
        refunded_amount=row.refunded_amount,
        transaction_id=row.transaction_id,
        gateway_response=row.gateway_response,
        failure_reason=row.failure_reason,
        processed_at=row.processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PaymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, payment_id: str) -> Payment | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payments WHERE id = :id"),
            {"id": payment_id},
        )
        row = result.fetchone()
        return _to_payment(row) if row else None

    async def get_by_ref(self, payment_ref: str) -> Payment | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payments WHERE payment_ref = :payment_ref"),
            {"payment_ref": payment_ref},
        )
        row = result.fetchone()
        return _to_payment(row) if row else None

    async def get_by_order_id(self, order_id: str) -> Payment | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM payments WHERE order_id = :order_id"),
            {"order_id": order_id},
        )
        row = result.fetchone()
        return _to_payment(row) if row else None

    async def add(self, payment: Payment) -> None:
        # payments.order_id is unique; a second payment for the same order
        # surfaces here as an IntegrityError.
        await self._session.execute(
            text("""
                INSERT INTO payments
                    (id, payment_ref, order_id, customer_id, amount, refunded_amount,
                     payment_method, status, transaction_id, gateway_response,
                     failure_reason, processed_at, created_at, updated_at)
                VALUES
                    (:id, :payment_ref, :order_id, :customer_id, :amount, :refunded_amount,
                     :payment_method, :status, :transaction_id, :gateway_response,
                     :failure_reason, :processed_at, :created_at, :updated_at)
            """),
            {
                "id": payment.id,
                "payment_ref": payment.payment_ref,
                "order_id": payment.order_id,
                "customer_id": payment.customer_id,
                "amount": payment.amount,
                "refunded_amount": payment.refunded_amount,
                "payment_method": payment.payment_method.value,
                "status": payment.status.value,
                "transaction_id": payment.transaction_id,
                "gateway_response": payment.gateway_response,
                "failure_reason": payment.failure_reason,
                "processed_at": payment.processed_at,
                "created_at": payment.created_at,
                "updated_at": payment.updated_at,
            },
        )

    async def update(
        self,
        payment: Payment,
        expected_status: PaymentStatus,
        expected_refunded: Decimal,
        released_refund: Decimal = ZERO,
    ) -> None:
        """Write back a payment loaded earlier in the same attempt.

        The guard on status and refunded amount turns a lost update into a
        :class:`ConcurrencyConflictError` the caller can retry.
        ``released_refund`` is the hold taken by :meth:`reserve_refund` that
        this write turns into a recorded refund.
        """
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE payments
                    SET status = :status,
                        refunded_amount = :refunded_amount,
                        refund_pending = refund_pending - :released_refund,
                        transaction_id = :transaction_id,
                        gateway_response = :gateway_response,
                        failure_reason = :failure_reason,
                        processed_at = :processed_at,
                        updated_at = :updated_at
                    WHERE id = :id
                      AND status = :expected_status
                      AND refunded_amount = :expected_refunded
                """),
                {
                    "id": payment.id,
                    "status": payment.status.value,
                    "refunded_amount": payment.refunded_amount,
                    "transaction_id": payment.transaction_id,
                    "gateway_response": payment.gateway_response,
                    "failure_reason": payment.failure_reason,
                    "processed_at": payment.processed_at,
                    "updated_at": payment.updated_at,
                    "expected_status": expected_status.value,
                    "expected_refunded": expected_refunded,
                    "released_refund": released_refund,
                },
            ),
        )
        if (result.rowcount or 0) == 0:
            raise ConcurrencyConflictError("Payment", payment.payment_ref)

    async def reserve_refund(self, payment_id: str, amount: Decimal) -> bool:
        """Set ``amount`` aside for a refund that is about to reach the gateway.

        The hold succeeds only if the payment is refundable and what was
        already refunded, plus every hold still in flight, plus ``amount``
        stays within the captured amount.
        """
        result = await self._session.execute(
            text("""
                UPDATE payments
                SET refund_pending = refund_pending + :amount
                WHERE id = :id
                  AND status IN ('COMPLETED', 'PARTIALLY_REFUNDED')
                  AND refunded_amount + refund_pending + :amount <= amount
                RETURNING refund_pending
            """),
            {"id": payment_id, "amount": amount},
        )
        return result.scalar_one_or_none() is not None

    async def release_refund(self, payment_id: str, amount: Decimal) -> None:
        await self._session.execute(
            text("""
                UPDATE payments
                SET refund_pending = GREATEST(refund_pending - :amount, 0)
                WHERE id = :id
            """),
            {"id": payment_id, "amount": amount},
        )
