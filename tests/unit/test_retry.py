"""Unit tests for optimistic concurrency retries."""

from unittest.mock import AsyncMock, patch

import pytest

from fulfillment_service.application.retry import retry_on_conflict
from fulfillment_service.domain.exceptions import ConcurrencyConflictError, ValidationError
from fulfillment_service.infrastructure.metrics import CONFLICT_RETRIES_TOTAL


class TestRetryOnConflict:
    """Tests for retry_on_conflict."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self) -> None:
        """No conflict, no retry."""
        operation = AsyncMock(return_value="done")

        assert await retry_on_conflict(operation, name="op") == "done"
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        """Conflicts are retried and the eventual result returned."""
        conflict = ConcurrencyConflictError("Order", 1)
        operation = AsyncMock(side_effect=[conflict, conflict, 7])
        before = CONFLICT_RETRIES_TOTAL.labels(operation="retry_test")._value.get()

        result = await retry_on_conflict(operation, name="retry_test", attempts=3, base_delay=0)

        assert result == 7
        assert operation.await_count == 3
        after = CONFLICT_RETRIES_TOTAL.labels(operation="retry_test")._value.get()
        assert after == before + 2

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self) -> None:
        """The final conflict propagates."""
        operation = AsyncMock(side_effect=ConcurrencyConflictError("Payment", "p"))

        with pytest.raises(ConcurrencyConflictError):
            await retry_on_conflict(operation, name="op", attempts=3, base_delay=0)

        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self) -> None:
        """Only conflicts are retried."""
        operation = AsyncMock(side_effect=ValidationError("x", "bad"))

        with pytest.raises(ValidationError):
            await retry_on_conflict(operation, name="op", attempts=3, base_delay=0)

        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backoff_grows_linearly(self) -> None:
        """Waits are base_delay times the attempt number."""
        operation = AsyncMock(side_effect=ConcurrencyConflictError("Order", 1))

        with patch(
            "fulfillment_service.application.retry.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            with pytest.raises(ConcurrencyConflictError):
                await retry_on_conflict(operation, name="op", attempts=4, base_delay=0.1)

        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2, 0.3])
