import structlog

from fulfillment_service.domain.models import DomainEvent
from fulfillment_service.infrastructure.event_notifier import EventNotifier
from fulfillment_service.infrastructure.repositories.outbox import OutboxRepository


logger = structlog.get_logger()


class EventBuffer:
    """Collects the events of one transaction and delivers them after commit.

    With no notifier, events are written to the outbox inside the transaction
    and the outbox processor relays them later. With a notifier, they are held
    in memory and sent best-effort by :meth:`flush` once the commit succeeded.
    Either way nothing is announced for a transaction that rolled back.
    """

    def __init__(self, outbox: OutboxRepository, notifier: EventNotifier | None = None) -> None:
        self._outbox = outbox
        self._notifier = notifier
        self._pending: list[DomainEvent] = []

    @property
    def pending(self) -> list[DomainEvent]:
        return list(self._pending)

    async def stage(self, event: DomainEvent) -> None:
        if self._notifier is None:
            await self._outbox.add(event)
        else:
            self._pending.append(event)

    def discard(self) -> None:
        self._pending.clear()

    async def flush(self) -> int:
        """Publish held events in staging order. Returns how many were delivered."""
        pending, self._pending = self._pending, []
        if self._notifier is None:
            return 0
        delivered = 0
        for event in pending:
            if await self._notifier.notify(event):
                delivered += 1
        if delivered < len(pending):
            logger.warning(
                "events_dropped_after_commit",
                staged=len(pending),
                delivered=delivered,
            )
        return delivered
