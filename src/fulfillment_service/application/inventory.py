from decimal import Decimal

import structlog

from fulfillment_service.application.events import EventBuffer
from fulfillment_service.application.retry import retry_on_conflict
from fulfillment_service.application.unit_of_work import UnitOfWork
from fulfillment_service.config import settings
from fulfillment_service.domain.events import stock_event
from fulfillment_service.domain.exceptions import (
    InsufficientStockError,
    ResourceNotFoundError,
    ValidationError,
)
from fulfillment_service.domain.models import Product, to_money
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.metrics import STOCK_RESERVATIONS_TOTAL


logger = structlog.get_logger()


class StockLedger:
    """Available quantity per product.

    ``reserve``, ``restore`` and ``read_for_update`` run inside the caller's
    transaction and stage a stock event on the caller's buffer. The
    administrative operations below them open, commit and publish their own.
    """

    def __init__(self, uow: UnitOfWork, events: EventBuffer) -> None:
        self.uow = uow
        self.events = events

    async def get_product(self, product_id: int) -> Product:
        product = await self.uow.products.get(product_id)
        if product is None:
            raise ResourceNotFoundError("Product", product_id)
        return product

    async def reserve(self, product_id: int, quantity: int) -> int:
        """Take ``quantity`` units in one conditional update.

        A miss is an ordinary business outcome: somebody else bought the stock
        first, so it raises :class:`InsufficientStockError` rather than a
        system error. Returns the quantity left.
        """
        remaining = await self.uow.products.reserve(product_id, quantity)
        if remaining is None:
            STOCK_RESERVATIONS_TOTAL.labels(outcome="insufficient").inc()
            logger.info("stock_reservation_rejected", product_id=product_id, requested=quantity)
            raise InsufficientStockError(product_id, quantity)

        STOCK_RESERVATIONS_TOTAL.labels(outcome="reserved").inc()
        logger.info(
            "stock_reserved",
            product_id=product_id,
            quantity=quantity,
            remaining=remaining,
        )
        await self.events.stage(stock_event(product_id, remaining))
        return remaining

    async def restore(self, product_id: int, quantity: int) -> int:
        remaining = await self.uow.products.restore(product_id, quantity)
        if remaining is None:
            raise ResourceNotFoundError("Product", product_id)
        STOCK_RESERVATIONS_TOTAL.labels(outcome="restored").inc()
        logger.info(
            "stock_restored",
            product_id=product_id,
            quantity=quantity,
            remaining=remaining,
        )
        await self.events.stage(stock_event(product_id, remaining))
        return remaining

    async def read_for_update(self, product_id: int) -> tuple[Product, int]:
        """Lock the product row until the transaction ends.

        Returns the product together with the revision it was read at. Never
        hold this lock across a network call.
        """
        product = await self.uow.products.get_for_update(product_id)
        if product is None:
            raise ResourceNotFoundError("Product", product_id)
        return product, product.revision


class InventoryService:
    """Administrative product operations."""

    def __init__(self, uow: UnitOfWork, notifier: EventNotifier | None = None) -> None:
        self.uow = uow
        self.events = EventBuffer(uow.outbox, notifier)
        self.ledger = StockLedger(uow, self.events)

    async def get_product(self, product_id: int) -> Product:
        async with self.uow:
            return await self.ledger.get_product(product_id)

    async def set_stock_level(self, product_id: int, quantity: int) -> Product:
        """Overwrite the available quantity under an exclusive row lock."""
        if quantity < 0:
            raise ValidationError("quantity", "cannot be negative")

        async with self.uow:
            self.events.discard()
            product, revision = await self.ledger.read_for_update(product_id)
            previous = product.quantity
            product.quantity = quantity
            await self.uow.products.update(product, expected_revision=revision)
            await self.events.stage(stock_event(product_id, quantity))
            await self.uow.commit()

        logger.info(
            "stock_level_set",
            product_id=product_id,
            previous=previous,
            quantity=quantity,
        )
        await self.events.flush()
        return product

    async def update_product(
        self,
        product_id: int,
        *,
        name: str | None = None,
        price: Decimal | None = None,
        active: bool | None = None,
    ) -> Product:
        """Change descriptive fields, retrying if a concurrent write wins."""
        if price is not None and price < 0:
            raise ValidationError("price", "cannot be negative")
        if name is not None and not name.strip():
            raise ValidationError("name", "cannot be blank")

        async def attempt() -> Product:
            async with self.uow:
                product = await self.ledger.get_product(product_id)
                revision = product.revision
                if name is not None:
                    product.name = name
                if price is not None:
                    product.price = to_money(price)
                if active is not None:
                    product.active = active
                await self.uow.products.update(product, expected_revision=revision)
                await self.uow.commit()
                return product

        product = await retry_on_conflict(
            attempt,
            name="update_product",
            attempts=settings.conflict_max_retries,
            base_delay=settings.conflict_retry_base_delay_seconds,
        )
        logger.info(
            "product_updated",
            product_id=product_id,
            revision=product.revision,
            active=product.active,
        )
        return product
