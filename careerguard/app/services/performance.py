"""Request performance aggregation.

Keeps lifetime per-endpoint statistics plus a rolling ledger of recent
requests. The ledger is pruned on every write, so windowed queries only
ever scan the last ``window_seconds`` of traffic.
"""

import asyncio
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_log_context, get_logger
from careerguard.app.core.utils import current_rss_bytes

logger = get_logger(__name__)

MB = 1024 * 1024

# Endpoints beyond the tracking cap are aggregated under this label
OVERFLOW_ENDPOINT = "other"


@dataclass
class RequestSample:
    """One completed request in the rolling ledger."""
    timestamp: float
    endpoint: str
    method: str
    status_code: int
    duration_ms: float
    memory_delta: int = 0

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass
class EndpointStats:
    """Lifetime aggregate for one endpoint."""
    count: int = 0
    total_time: float = 0.0
    max_time: float = 0.0
    min_time: float = math.inf
    error_count: int = 0
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    def record(self, duration_ms: float, status_code: int) -> None:
        self.count += 1
        self.total_time += duration_ms
        self.max_time = max(self.max_time, duration_ms)
        self.min_time = min(self.min_time, duration_ms)
        self.status_codes[status_code] += 1
        if status_code >= 400:
            self.error_count += 1

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count if self.count else 0.0

    def to_dict(self, endpoint: str) -> Dict[str, Any]:
        return {
            "endpoint": endpoint,
            "count": self.count,
            "avg_time_ms": round(self.avg_time, 2),
            "max_time_ms": round(self.max_time, 2),
            "min_time_ms": round(self.min_time, 2) if self.count else None,
            "errors": self.error_count,
            "error_rate": round(self.error_rate, 4),
            "status_codes": {str(code): n for code, n in sorted(self.status_codes.items())},
        }


class PerformanceMonitor:
    """Collects request latency, error and throughput statistics.

    Also counts rate limit decisions per strategy and outcome so the
    Prometheus export can show how often each limiter rejects or fails open.
    """

    def __init__(
        self,
        window_seconds: float = 300,
        slow_request_threshold_ms: float = 1000.0,
        memory_spike_threshold_bytes: int = 50 * MB,
        error_rate_threshold: float = 0.05,
        memory_threshold_bytes: int = 500 * MB,
        min_throughput: float = 0.1,
        max_endpoints: int = 200,
        clock: Callable[[], float] = time.time,
        memory_reader: Callable[[], int] = current_rss_bytes,
    ):
        self.window_seconds = window_seconds
        self.slow_request_threshold_ms = slow_request_threshold_ms
        self.memory_spike_threshold_bytes = memory_spike_threshold_bytes
        self.error_rate_threshold = error_rate_threshold
        self.memory_threshold_bytes = memory_threshold_bytes
        self.min_throughput = min_throughput
        self.max_endpoints = max_endpoints
        self._clock = clock
        self._memory_reader = memory_reader

        self._endpoints: Dict[str, EndpointStats] = defaultdict(EndpointStats)
        self._ledger: Deque[RequestSample] = deque()
        self._rate_limit_decisions: Dict[tuple, int] = defaultdict(int)
        self._total_requests = 0
        self._start_time = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, config: Settings, clock: Callable[[], float] = time.time) -> "PerformanceMonitor":
        return cls(
            window_seconds=config.metrics_window_seconds,
            slow_request_threshold_ms=config.slow_request_threshold_ms,
            memory_spike_threshold_bytes=int(config.memory_spike_threshold_mb * MB),
            error_rate_threshold=config.health_error_rate_threshold,
            memory_threshold_bytes=int(config.health_memory_threshold_mb * MB),
            min_throughput=config.health_min_throughput,
            max_endpoints=config.metrics_max_endpoints,
            clock=clock,
        )

    def _prune_locked(self, now: float) -> int:
        cutoff = now - self.window_seconds
        removed = 0
        while self._ledger and self._ledger[0].timestamp <= cutoff:
            self._ledger.popleft()
            removed += 1
        return removed

    async def record_request(
        self,
        endpoint: str,
        duration_ms: float,
        status_code: int,
        method: str = "GET",
        memory_delta: int = 0,
        request_id: Optional[str] = None,
    ) -> None:
        """Record a completed request and flag slow requests or memory spikes."""
        now = self._clock()
        async with self._lock:
            if endpoint not in self._endpoints and len(self._endpoints) >= self.max_endpoints:
                endpoint = OVERFLOW_ENDPOINT
            self._endpoints[endpoint].record(duration_ms, status_code)
            self._ledger.append(
                RequestSample(
                    timestamp=now,
                    endpoint=endpoint,
                    method=method,
                    status_code=status_code,
                    duration_ms=duration_ms,
                    memory_delta=memory_delta,
                )
            )
            self._total_requests += 1
            self._prune_locked(now)

        context = get_log_context(
            request_id=request_id,
            path=endpoint,
            method=method,
            status_code=status_code,
            duration_ms=round(duration_ms, 2),
        )
        if duration_ms > self.slow_request_threshold_ms:
            logger.warning(f"Slow request: {method} {endpoint} took {duration_ms:.0f}ms", extra=context)
        if memory_delta > self.memory_spike_threshold_bytes:
            logger.warning(
                f"Memory spike: {method} {endpoint} grew RSS by {memory_delta / MB:.1f}MB",
                extra=context,
            )

    async def record_rate_limit(self, strategy: str, outcome: str) -> None:
        """Count one limiter decision (allowed, rejected, blocked, fail_open)."""
        async with self._lock:
            self._rate_limit_decisions[(strategy, outcome)] += 1

    async def prune(self) -> int:
        """Drop ledger entries older than the window; returns how many."""
        async with self._lock:
            return self._prune_locked(self._clock())

    async def get_endpoint_stats(self, endpoint: str) -> Optional[EndpointStats]:
        async with self._lock:
            return self._endpoints.get(endpoint)

    async def get_report(self) -> Dict[str, Any]:
        """Lifetime report with the slowest, busiest and most error-prone endpoints."""
        async with self._lock:
            endpoints = [stats.to_dict(name) for name, stats in self._endpoints.items()]
            total_count = sum(s.count for s in self._endpoints.values())
            total_time = sum(s.total_time for s in self._endpoints.values())
            total_errors = sum(s.error_count for s in self._endpoints.values())
            total_requests = self._total_requests

        return {
            "summary": {
                "total_requests": total_requests,
                "avg_response_time_ms": round(total_time / total_count, 2) if total_count else 0,
                "total_endpoints": len(endpoints),
                "error_rate": round(total_errors / total_count, 4) if total_count else 0,
            },
            "endpoints": endpoints,
            "slowest_endpoints": sorted(endpoints, key=lambda e: e["avg_time_ms"], reverse=True)[:10],
            "most_frequent": sorted(endpoints, key=lambda e: e["count"], reverse=True)[:10],
            "error_prone": sorted(
                (e for e in endpoints if e["errors"] > 0),
                key=lambda e: e["error_rate"],
                reverse=True,
            )[:10],
            "memory_rss_mb": round(self._memory_reader() / MB, 2),
            "uptime_seconds": round(self._clock() - self._start_time, 2),
        }

    async def get_real_time_metrics(self) -> Dict[str, Any]:
        """Aggregates over the rolling window only."""
        now = self._clock()
        async with self._lock:
            self._prune_locked(now)
            samples: List[RequestSample] = list(self._ledger)

        requests = len(samples)
        errors = sum(1 for s in samples if s.is_error)
        total_time = sum(s.duration_ms for s in samples)
        return {
            "timestamp": now,
            "window_seconds": self.window_seconds,
            "requests": requests,
            "errors": errors,
            "avg_response_time_ms": round(total_time / requests, 2) if requests else 0,
            "error_rate": round(errors / requests, 4) if requests else 0,
            "throughput": round(requests / self.window_seconds, 4),
        }

    async def get_health_status(self) -> Dict[str, Any]:
        """Threshold checks over the rolling window.

        Throughput is reported but advisory: an idle service is not unhealthy.
        """
        metrics = await self.get_real_time_metrics()
        rss = self._memory_reader()
        checks = {
            "response_time": {
                "value": metrics["avg_response_time_ms"],
                "threshold": self.slow_request_threshold_ms,
                "healthy": metrics["avg_response_time_ms"] < self.slow_request_threshold_ms,
                "unit": "ms",
            },
            "error_rate": {
                "value": metrics["error_rate"],
                "threshold": self.error_rate_threshold,
                "healthy": metrics["error_rate"] < self.error_rate_threshold,
            },
            "memory": {
                "value": round(rss / MB, 2),
                "threshold": round(self.memory_threshold_bytes / MB, 2),
                "healthy": rss < self.memory_threshold_bytes,
                "unit": "MB",
            },
            "throughput": {
                "value": metrics["throughput"],
                "threshold": self.min_throughput,
                "healthy": metrics["requests"] == 0 or metrics["throughput"] >= self.min_throughput,
                "advisory": True,
                "unit": "req/s",
            },
        }
        healthy = all(check["healthy"] for check in checks.values() if not check.get("advisory"))
        return {"healthy": healthy, "checks": checks, "timestamp": metrics["timestamp"]}

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP careerguard_requests_total Total number of requests")
            lines.append("# TYPE careerguard_requests_total counter")
            for endpoint, stats in self._endpoints.items():
                lines.append(f'careerguard_requests_total{{endpoint="{endpoint}"}} {stats.count}')

            lines.append("\n# HELP careerguard_request_duration_ms_total Total request duration in milliseconds")
            lines.append("# TYPE careerguard_request_duration_ms_total counter")
            for endpoint, stats in self._endpoints.items():
                lines.append(
                    f'careerguard_request_duration_ms_total{{endpoint="{endpoint}"}} {round(stats.total_time, 3)}'
                )

            lines.append("\n# HELP careerguard_errors_total Total number of error responses")
            lines.append("# TYPE careerguard_errors_total counter")
            for endpoint, stats in self._endpoints.items():
                lines.append(f'careerguard_errors_total{{endpoint="{endpoint}"}} {stats.error_count}')

            lines.append("\n# HELP careerguard_rate_limit_decisions_total Rate limit decisions by strategy and outcome")
            lines.append("# TYPE careerguard_rate_limit_decisions_total counter")
            for (strategy, outcome), count in sorted(self._rate_limit_decisions.items()):
                lines.append(
                    f'careerguard_rate_limit_decisions_total{{strategy="{strategy}",outcome="{outcome}"}} {count}'
                )

            lines.append("\n# HELP careerguard_uptime_seconds Uptime in seconds")
            lines.append("# TYPE careerguard_uptime_seconds gauge")
            lines.append(f"careerguard_uptime_seconds {round(self._clock() - self._start_time, 2)}")

            return "\n".join(lines) + "\n"

    async def reset(self) -> None:
        async with self._lock:
            self._endpoints.clear()
            self._ledger.clear()
            self._rate_limit_decisions.clear()
            self._total_requests = 0
        logger.info("Performance metrics reset")
