from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.domain.exceptions import ConcurrencyConflictError
from fulfillment_service.domain.models import Order, OrderLine, OrderStatus


_ORDER_COLUMNS = """
    id, order_number, customer_id, customer_email, status, shipping_address,
    total_amount, created_at, updated_at
"""


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, order_id: str) -> Order | None:
        result = await self._session.execute(
            text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = :id"),
            {"id": order_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return await self._assemble(row)

    async def add(self, order: Order) -> None:
        await self._session.execute(
            text("""
                INSERT INTO orders
                    (id, order_number, customer_id, customer_email, status,
                     shipping_address, total_amount, created_at, updated_at)
                VALUES
                    (:id, :order_number, :customer_id, :customer_email, :status,
                     :shipping_address, :total_amount, :created_at, :updated_at)
            """),
            {
                "id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "customer_email": order.customer_email,
                "status": order.status.value,
                "shipping_address": order.shipping_address,
                "total_amount": order.total_amount,
                "created_at": order.created_at,
                "updated_at": order.updated_at,
            },
        )
        await self._session.execute(
            text("""
                INSERT INTO order_lines (order_id, position, product_id, quantity, unit_price)
                VALUES (:order_id, :position, :product_id, :quantity, :unit_price)
            """),
            [
                {
                    "order_id": order.id,
                    "position": position,
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                }
                for position, line in enumerate(order.lines)
            ],
        )

    async def update_status(self, order: Order, expected: OrderStatus) -> None:
        """Persist ``order.status`` only if the stored status is still ``expected``."""
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE orders
                    SET status = :status,
                        updated_at = :updated_at
                    WHERE id = :id AND status = :expected
                """),
                {
                    "id": order.id,
                    "status": order.status.value,
                    "expected": expected.value,
                    "updated_at": order.updated_at,
                },
            ),
        )
        if (result.rowcount or 0) == 0:
            raise ConcurrencyConflictError("Order", order.id)

    async def _assemble(self, row: Row[Any]) -> Order:
        lines_result = await self._session.execute(
            text("""
                SELECT product_id, quantity, unit_price
                FROM order_lines
                WHERE order_id = :order_id
                ORDER BY position
            """),
            {"order_id": row.id},
        )
        lines = [
            OrderLine(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in lines_result.fetchall()
        ]
        return Order(
            id=row.id,
            order_number=row.order_number,
            customer_id=row.customer_id,
            status=OrderStatus(row.status),
            shipping_address=row.shipping_address,
            lines=lines,
            total_amount=row.total_amount,
            customer_email=row.customer_email,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
