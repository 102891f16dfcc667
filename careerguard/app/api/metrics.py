"""Performance tracking middleware and diagnostics endpoints."""

import time
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from careerguard.app.core.logging import get_logger
from careerguard.app.core.utils import current_rss_bytes
from careerguard.app.middleware.auth import require_admin
from careerguard.app.services.performance import PerformanceMonitor

logger = get_logger(__name__)
router = APIRouter()


def get_monitor(request: Request) -> PerformanceMonitor:
    return request.app.state.monitor


class ResponseInterceptor:
    """Wraps an ASGI ``send`` and reports when the response is finalized.

    ``on_finalized`` is awaited exactly once with the final status code:
    after the last body chunk is sent, or via ``finalize`` when the app
    failed before completing a response.
    """

    def __init__(self, send: Send, on_finalized: Callable[[int], Awaitable[None]]):
        self._send = send
        self._on_finalized = on_finalized
        self.status_code: Optional[int] = None
        self.finalized = False

    async def send(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
        await self._send(message)
        if message["type"] == "http.response.body" and not message.get("more_body", False):
            await self.finalize()

    async def finalize(self, status_code: Optional[int] = None) -> None:
        if self.finalized:
            return
        self.finalized = True
        await self._on_finalized(status_code or self.status_code or 500)


# Label for requests that matched no route (404s, early rejections)
UNMATCHED_ENDPOINT = "unmatched"


def _endpoint_label(scope: Scope) -> str:
    # Route templates keep path parameters from exploding the label space
    route = scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ENDPOINT


class MetricsMiddleware:
    """Middleware to collect request metrics.

    Example:
        app.add_middleware(MetricsMiddleware, monitor=PerformanceMonitor())
    """

    def __init__(
        self,
        app: ASGIApp,
        monitor: PerformanceMonitor,
        memory_reader: Callable[[], int] = current_rss_bytes,
    ):
        self.app = app
        self.monitor = monitor
        self.memory_reader = memory_reader

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        rss_before = self.memory_reader()

        async def on_finalized(status_code: int) -> None:
            duration_ms = (time.perf_counter() - start_time) * 1000
            state = scope.get("state") or {}
            await self.monitor.record_request(
                endpoint=_endpoint_label(scope),
                duration_ms=duration_ms,
                status_code=status_code,
                method=scope.get("method", "GET"),
                memory_delta=self.memory_reader() - rss_before,
                request_id=state.get("request_id"),
            )

        async def send_with_timing(message: Message) -> None:
            if message["type"] == "http.response.start":
                elapsed_ms = (time.perf_counter() - start_time) * 1000
                message.setdefault("headers", [])
                MutableHeaders(scope=message).append("X-Response-Time", f"{elapsed_ms:.2f}ms")
            await send(message)

        interceptor = ResponseInterceptor(send_with_timing, on_finalized)
        try:
            await self.app(scope, receive, interceptor.send)
        except Exception:
            await interceptor.finalize(500)
            raise
        # Responses that never sent a closing body chunk
        await interceptor.finalize()


@router.get("/health")
async def health(monitor: PerformanceMonitor = Depends(get_monitor)) -> JSONResponse:
    """Threshold-based health status; 503 when any check fails."""
    status = await monitor.get_health_status()
    return JSONResponse(status_code=200 if status["healthy"] else 503, content=status)


@router.get("/performance/report")
async def performance_report(
    admin=Depends(require_admin),
    monitor: PerformanceMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    """Lifetime per-endpoint statistics (admin only)."""
    return await monitor.get_report()


@router.get("/performance/metrics")
async def real_time_metrics(
    request: Request,
    admin=Depends(require_admin),
    monitor: PerformanceMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    """Rolling-window metrics plus deduplication stats (admin only)."""
    metrics = await monitor.get_real_time_metrics()
    metrics["deduplication"] = request.app.state.deduplicator.get_stats()
    return metrics


@router.post("/performance/reset")
async def reset_metrics(
    admin=Depends(require_admin),
    monitor: PerformanceMonitor = Depends(get_monitor),
) -> dict[str, str]:
    """Clear all collected statistics (admin only)."""
    await monitor.reset()
    return {"status": "reset"}


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(
    admin=Depends(require_admin),
    monitor: PerformanceMonitor = Depends(get_monitor),
) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    content = await monitor.get_prometheus_metrics()
    return PlainTextResponse(content=content, media_type="text/plain; version=0.0.4; charset=utf-8")
