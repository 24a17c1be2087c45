from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.infrastructure.repositories import (
    OrderRepository,
    OutboxRepository,
    PaymentRepository,
    ProductRepository,
)


class UnitOfWork:
    """One transaction over every repository the services touch.

    Leaving the block with an exception rolls back; callers commit
    explicitly on success.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.products = ProductRepository(session)
        self.orders = OrderRepository(session)
        self.payments = PaymentRepository(session)
        self.outbox = OutboxRepository(session)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
