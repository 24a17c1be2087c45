import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

import grpc
import structlog

from fulfillment_service.infrastructure.metrics import (
    GRPC_REQUEST_DURATION,
    GRPC_REQUESTS_TOTAL,
)


logger = structlog.get_logger()


class MetricsInterceptor(grpc.aio.ServerInterceptor):
    """gRPC interceptor that collects Prometheus metrics.

    Unary-unary coroutine handlers are wrapped so the duration and status
    cover the whole call, including aborts raised by the handler.
    """

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        method = handler_call_details.method
        handler = await continuation(handler_call_details)

        if handler is None or not inspect.iscoroutinefunction(handler.unary_unary):
            return handler

        behavior = handler.unary_unary

        async def timed(request: Any, context: grpc.aio.ServicerContext) -> Any:
            start_time = time.perf_counter()
            status_code = "OK"
            try:
                return await behavior(request, context)
            except grpc.aio.AbortError:
                code = context.code()
                status_code = code.name if isinstance(code, grpc.StatusCode) else "UNKNOWN"
                raise
            except Exception:
                status_code = "UNKNOWN"
                logger.error("grpc_handler_failed", method=method, exc_info=True)
                raise
            finally:
                duration = time.perf_counter() - start_time
                GRPC_REQUEST_DURATION.labels(method=method, status_code=status_code).observe(
                    duration
                )
                GRPC_REQUESTS_TOTAL.labels(method=method, status_code=status_code).inc()

        return grpc.unary_unary_rpc_method_handler(
            timed,
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )
