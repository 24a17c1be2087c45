import asyncio
from collections.abc import Awaitable, Callable

import structlog

from fulfillment_service.domain.exceptions import ConcurrencyConflictError
from fulfillment_service.infrastructure.metrics import CONFLICT_RETRIES_TOTAL


logger = structlog.get_logger()


async def retry_on_conflict[T](
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int = 3,
    base_delay: float = 0.05,
) -> T:
    """Run ``operation`` again when it loses an optimistic concurrency race.

    Each attempt must open its own transaction and re-read what it changes.
    The wait grows linearly (``base_delay * attempt``). After the last attempt
    the conflict propagates to the caller.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ConcurrencyConflictError as e:
            if attempt >= attempts:
                logger.error(
                    "conflict_retries_exhausted",
                    operation=name,
                    attempts=attempt,
                    entity=e.entity,
                    entity_id=str(e.entity_id),
                )
                raise
            CONFLICT_RETRIES_TOTAL.labels(operation=name).inc()
            logger.warning(
                "conflict_retry",
                operation=name,
                attempt=attempt,
                entity=e.entity,
                entity_id=str(e.entity_id),
            )
            await asyncio.sleep(base_delay * attempt)
            attempt += 1
