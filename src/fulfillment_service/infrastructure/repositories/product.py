from datetime import UTC, datetime
from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.domain.exceptions import ConcurrencyConflictError
from fulfillment_service.domain.models import Product
from fulfillment_service.infrastructure.database import lock_conflicts_as


_COLUMNS = "id, name, price, quantity, revision, active, updated_at"


def _to_product(row: Row[Any]) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        price=row.price,
        quantity=row.quantity,
        revision=row.revision,
        active=row.active,
        updated_at=row.updated_at,
    )


class ProductRepository:
    """Storage port for the stock ledger.

    Quantity changes go through :meth:`reserve` and :meth:`restore`, which are
    single statements. Everything else is written with :meth:`update`, which
    checks the revision read at load time.

    Row locks are held until commit, so two transactions touching the same
    products in opposite order can deadlock. The server picks a loser and
    that side sees :class:`ConcurrencyConflictError`.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, product_id: int) -> Product | None:
        result = await self._session.execute(
            text(f"SELECT {_COLUMNS} FROM products WHERE id = :id"),
            {"id": product_id},
        )
        row = result.fetchone()
        return _to_product(row) if row else None

    async def get_for_update(self, product_id: int) -> Product | None:
        with lock_conflicts_as("Product", product_id):
            result = await self._session.execute(
                text(f"SELECT {_COLUMNS} FROM products WHERE id = :id FOR UPDATE"),
                {"id": product_id},
            )
        row = result.fetchone()
        return _to_product(row) if row else None

    async def add(self, product: Product) -> None:
        await self._session.execute(
            text("""
                INSERT INTO products (id, name, price, quantity, revision, active, updated_at)
                VALUES (:id, :name, :price, :quantity, :revision, :active, :updated_at)
            """),
            {
                "id": product.id,
                "name": product.name,
                "price": product.price,
                "quantity": product.quantity,
                "revision": product.revision,
                "active": product.active,
                "updated_at": product.updated_at,
            },
        )

    async def reserve(self, product_id: int, quantity: int) -> int | None:
        """Decrement stock only if enough is left.

        Returns the remaining quantity, or None when no row matched: the
        product is missing, inactive, or another reservation got there first.
        """
        with lock_conflicts_as("Product", product_id):
            result = await self._session.execute(
                text("""
                    UPDATE products
                    SET quantity = quantity - :quantity,
                        revision = revision + 1,
                        updated_at = :updated_at
                    WHERE id = :id AND active AND quantity >= :quantity
                    RETURNING quantity
                """),
                {"id": product_id, "quantity": quantity, "updated_at": datetime.now(UTC)},
            )
        return result.scalar_one_or_none()

    async def restore(self, product_id: int, quantity: int) -> int | None:
        with lock_conflicts_as("Product", product_id):
            result = await self._session.execute(
                text("""
                    UPDATE products
                    SET quantity = quantity + :quantity,
                        revision = revision + 1,
                        updated_at = :updated_at
                    WHERE id = :id
                    RETURNING quantity
                """),
                {"id": product_id, "quantity": quantity, "updated_at": datetime.now(UTC)},
            )
        return result.scalar_one_or_none()

    async def update(self, product: Product, expected_revision: int) -> None:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE products
                    SET name = :name,
                        price = :price,
                        quantity = :quantity,
                        active = :active,
                        revision = revision + 1,
                        updated_at = :updated_at
                    WHERE id = :id AND revision = :expected_revision
                """),
                {
                    "id": product.id,
                    "name": product.name,
                    "price": product.price,
                    "quantity": product.quantity,
                    "active": product.active,
                    "expected_revision": expected_revision,
                    "updated_at": datetime.now(UTC),
                },
            ),
        )
        if (result.rowcount or 0) == 0:
            raise ConcurrencyConflictError("Product", product.id)
        product.revision = expected_revision + 1
