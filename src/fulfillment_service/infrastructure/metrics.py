import time
from collections.abc import Awaitable, Callable
from functools import wraps

from prometheus_client import Counter, Gauge, Histogram


LATENCY_BUCKETS = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]

ORDERS_TOTAL = Counter(
    "orders_total",
    "Order placement attempts by outcome",
    ["outcome"],
)

ORDER_TRANSITIONS_TOTAL = Counter(
    "order_transitions_total",
    "Order lifecycle transitions",
    ["from_status", "to_status"],
)

STOCK_RESERVATIONS_TOTAL = Counter(
    "stock_reservations_total",
    "Stock reservation attempts by outcome",
    ["outcome"],
)

COMPENSATIONS_TOTAL = Counter(
    "compensations_total",
    "Order placements rolled back by restoring already reserved stock",
    ["reason"],
)

PAYMENT_REQUESTS_TOTAL = Counter(
    "payment_requests_total",
    "Total number of payment requests",
    ["status", "error_code"],
)

REFUND_REQUESTS_TOTAL = Counter(
    "refund_requests_total",
    "Total number of refund requests",
    ["outcome"],
)

CONFLICT_RETRIES_TOTAL = Counter(
    "conflict_retries_total",
    "Operations re-run after a concurrent modification",
    ["operation"],
)

EVENTS_PUBLISHED_TOTAL = Counter(
    "events_published_total",
    "Events published directly after commit",
    ["event_type"],
)

EVENTS_PUBLISH_FAILED_TOTAL = Counter(
    "events_publish_failed_total",
    "Direct event publishes that failed and were dropped",
    ["event_type"],
)

OUTBOX_EVENTS_PUBLISHED = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

OUTBOX_EVENTS_FAILED = Counter(
    "outbox_events_failed_total",
    "Total outbox events that failed to publish",
    ["event_type"],
)

OUTBOX_PENDING_EVENTS = Gauge(
    "outbox_pending_events",
    "Number of pending events in outbox",
)

PAYMENT_DURATION_SECONDS = Histogram(
    "payment_duration_seconds",
    "Payment processing duration",
    buckets=LATENCY_BUCKETS,
)

GATEWAY_DURATION_SECONDS = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration",
    ["operation", "outcome"],
    buckets=LATENCY_BUCKETS,
)

GATEWAY_CIRCUIT_OPEN = Gauge(
    "gateway_circuit_open",
    "1 while the payment gateway circuit breaker is open",
)

GRPC_REQUEST_DURATION = Histogram(
    "grpc_request_duration_seconds",
    "gRPC request duration",
    ["method", "status_code"],
    buckets=LATENCY_BUCKETS,
)

GRPC_REQUESTS_TOTAL = Counter(
    "grpc_requests_total",
    "Total number of gRPC requests",
    ["method", "status_code"],
)


def track_payment_duration[**P, R](
    func: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration = time.perf_counter() - start
            PAYMENT_DURATION_SECONDS.observe(duration)

    return wrapper
