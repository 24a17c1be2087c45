from collections.abc import AsyncGenerator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fulfillment_service.domain.exceptions import ConcurrencyConflictError


# serialization_failure and deadlock_detected: the server has already rolled
# the transaction back, so the whole attempt can be run again.
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def is_retryable(error: DBAPIError) -> bool:
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return code in RETRYABLE_SQLSTATES


@contextmanager
def lock_conflicts_as(entity: str, entity_id: object) -> Iterator[None]:
    """Raise :class:`ConcurrencyConflictError` for a lost deadlock or serialization race."""
    try:
        yield
    except DBAPIError as e:
        if not is_retryable(e):
            raise
        raise ConcurrencyConflictError(entity, entity_id) from e


class Database:
    """Engine and session factory for the fulfillment store.

    Sessions run at READ COMMITTED: conditional stock updates re-check their
    guard against the latest committed row, which is what makes them safe
    under contention without explicit locks.
    """

    def __init__(self, database_url: str, pool_size: int = 10, max_overflow: int = 20) -> None:
        self.engine = create_async_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            isolation_level="READ COMMITTED",
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()
