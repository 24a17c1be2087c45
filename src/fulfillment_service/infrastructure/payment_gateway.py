"""Payment gateway port and adapters.

The services talk to :class:`PaymentGateway` only. ``SimulatedPaymentGateway``
stands in for a real processor in development and tests, and
``GuardedPaymentGateway`` wraps any adapter with a timeout and a circuit
breaker so a stalled processor never holds a request forever.
"""

import asyncio
import random
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from fulfillment_service.domain.exceptions import GatewayError
from fulfillment_service.domain.models import CardDetails, Payment, PaymentMethod
from fulfillment_service.infrastructure.metrics import (
    GATEWAY_CIRCUIT_OPEN,
    GATEWAY_DURATION_SECONDS,
)


logger = structlog.get_logger()

CARD_METHODS = frozenset({PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD})

_EXPIRY_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/([0-9]{2})$")
_CVV_PATTERN = re.compile(r"^[0-9]{3,4}$")


@dataclass(frozen=True)
class ChargeResult:
    """Result of a payment charge attempt."""

    success: bool
    transaction_id: str | None = None
    gateway_response: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund attempt."""

    success: bool
    refund_id: str | None = None
    gateway_response: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    async def charge(self, payment: Payment, card: CardDetails | None) -> ChargeResult:
        """Authorize and capture ``payment.amount``."""
        ...

    @abstractmethod
    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        """Return ``amount`` of a previously captured payment."""
        ...


def luhn_valid(digits: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_card(card: CardDetails, now: datetime) -> str | None:
    """Return the reason ``card`` is unusable, or None if it passes."""
    digits = re.sub(r"[\s-]", "", card.card_number)
    if not digits.isdigit() or not 13 <= len(digits) <= 19:
        return "Invalid card number"
    if not luhn_valid(digits):
        return "Invalid card number"

    match = _EXPIRY_PATTERN.match(card.expiry_date)
    if not match:
        return "Invalid expiry date"
    month, year = int(match.group(1)), 2000 + int(match.group(2))
    # A card stays valid through the last day of its expiry month.
    if (year, month) < (now.year, now.month):
        return "Card expired"

    if not _CVV_PATTERN.match(card.cvv):
        return "Invalid CVV"
    return None


class SimulatedPaymentGateway(PaymentGateway):
    """In-process stand-in for an external processor.

    Sleeps for a random latency, then approves with a fixed probability.
    Pass a seeded ``rng`` for deterministic outcomes.
    """

    def __init__(
        self,
        success_rate: float = 0.9,
        refund_success_rate: float = 0.95,
        min_latency: float = 0.5,
        max_latency: float = 1.5,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._success_rate = success_rate
        self._refund_success_rate = refund_success_rate
        self._min_latency = min_latency
        self._max_latency = max_latency
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def charge(self, payment: Payment, card: CardDetails | None) -> ChargeResult:
        if payment.payment_method in CARD_METHODS:
            if card is None:
                return ChargeResult(success=False, failure_reason="Card details required")
            reason = validate_card(card, self._clock())
            if reason is not None:
                logger.warning(
                    "card_validation_failed",
                    payment_ref=payment.payment_ref,
                    reason=reason,
                    last4=card.last4,
                )
                return ChargeResult(success=False, failure_reason=reason)

        await self._simulate_latency()

        if self._rng.random() < self._success_rate:
            return ChargeResult(
                success=True,
                transaction_id=f"TXN_{self._token()}",
                gateway_response="Payment authorized successfully",
            )
        return ChargeResult(success=False, failure_reason="Payment authorization failed")

    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        if amount > payment.amount:
            return RefundResult(
                success=False, failure_reason="Refund amount exceeds payment amount"
            )

        await self._simulate_latency()

        if self._rng.random() < self._refund_success_rate:
            return RefundResult(
                success=True,
                refund_id=f"REF_{self._token()}",
                gateway_response="Refund processed successfully",
            )
        return RefundResult(success=False, failure_reason="Refund processing failed")

    async def _simulate_latency(self) -> None:
        if self._max_latency > 0:
            await asyncio.sleep(self._rng.uniform(self._min_latency, self._max_latency))

    def _token(self) -> str:
        return f"{self._rng.getrandbits(32):08X}"


class GuardedPaymentGateway(PaymentGateway):
    """Timeout plus consecutive-failure circuit breaker around another gateway.

    A declined charge is a normal answer and does not count as a failure;
    timeouts and exceptions do. Once ``failure_threshold`` failures happen in
    a row the circuit opens and calls fail fast with :class:`GatewayError`
    until ``reset_seconds`` have passed. The circuit is then half-open: a
    single trial call goes through while other callers are still rejected,
    and its outcome either closes the circuit or opens it again.
    """

    def __init__(
        self,
        inner: PaymentGateway,
        timeout: float = 5.0,
        failure_threshold: int = 5,
        reset_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._timeout = timeout
        self._failure_threshold = failure_threshold
        self._reset_seconds = reset_seconds
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self._reset_seconds

    async def charge(self, payment: Payment, card: CardDetails | None) -> ChargeResult:
        return await self._call("charge", self._inner.charge(payment, card))

    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        return await self._call("refund", self._inner.refund(payment, amount))

    async def _call[T](self, operation: str, call: Coroutine[Any, Any, T]) -> T:
        if self.is_open or self._trial_in_flight:
            call.close()
            GATEWAY_DURATION_SECONDS.labels(operation=operation, outcome="rejected").observe(0)
            raise GatewayError("circuit open")

        trial = self._opened_at is not None
        if trial:
            self._trial_in_flight = True
            logger.info("gateway_circuit_half_open", operation=operation)
        try:
            return await self._timed(operation, call)
        finally:
            if trial:
                self._trial_in_flight = False

    async def _timed[T](self, operation: str, call: Coroutine[Any, Any, T]) -> T:
        start = time.perf_counter()
        try:
            result: T = await asyncio.wait_for(call, timeout=self._timeout)
        except TimeoutError as e:
            self._record_failure(operation, "timeout")
            GATEWAY_DURATION_SECONDS.labels(operation=operation, outcome="timeout").observe(
                time.perf_counter() - start
            )
            raise GatewayError(f"{operation} timed out after {self._timeout}s") from e
        except Exception as e:
            self._record_failure(operation, "error")
            GATEWAY_DURATION_SECONDS.labels(operation=operation, outcome="error").observe(
                time.perf_counter() - start
            )
            if isinstance(e, GatewayError):
                raise
            raise GatewayError(str(e)) from e

        GATEWAY_DURATION_SECONDS.labels(operation=operation, outcome="ok").observe(
            time.perf_counter() - start
        )
        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("gateway_circuit_closed")
        self._consecutive_failures = 0
        self._opened_at = None
        GATEWAY_CIRCUIT_OPEN.set(0)

    def _record_failure(self, operation: str, kind: str) -> None:
        self._consecutive_failures += 1
        logger.warning(
            "gateway_call_failed",
            operation=operation,
            kind=kind,
            consecutive_failures=self._consecutive_failures,
        )
        if self._consecutive_failures >= self._failure_threshold:
            self._opened_at = self._clock()
            GATEWAY_CIRCUIT_OPEN.set(1)
            logger.error(
                "gateway_circuit_opened",
                consecutive_failures=self._consecutive_failures,
                reset_seconds=self._reset_seconds,
            )
