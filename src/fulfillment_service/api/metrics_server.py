import asyncio
import contextlib
from collections.abc import Callable

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


logger = structlog.get_logger()

type ReadinessCheck = Callable[[], dict[str, bool]]


def create_metrics_app(readiness: ReadinessCheck | None = None) -> FastAPI:
    """Create FastAPI application for the metrics and health endpoints.

    ``readiness`` returns named checks; ``/ready`` answers 503 while any of
    them is False.
    """
    app = FastAPI(
        title="Fulfillment Service Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Liveness check."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        checks = readiness() if readiness else {}
        is_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={"status": "ready" if is_ready else "degraded", "checks": checks},
        )

    return app


class MetricsServer:
    """Async metrics server using uvicorn."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 9090,
        readiness: ReadinessCheck | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._readiness = readiness
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the metrics server in the background."""
        config = uvicorn.Config(
            create_metrics_app(self._readiness),
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        self._task = asyncio.create_task(self._server.serve())
        logger.info("metrics_server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the metrics server."""
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        logger.info("metrics_server_stopped")
