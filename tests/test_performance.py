"""Tests for PerformanceMonitor."""

from unittest.mock import patch

import pytest

from careerguard.app.core.config import Settings
from careerguard.app.services.performance import MB, OVERFLOW_ENDPOINT, EndpointStats, PerformanceMonitor


@pytest.fixture
def rss():
    return {"bytes": 100 * MB}


@pytest.fixture
def monitor(clock, rss):
    return PerformanceMonitor(window_seconds=300, clock=clock, memory_reader=lambda: rss["bytes"])


class TestEndpointStats:

    def test_aggregates(self):
        stats = EndpointStats()
        for duration, status in [(100, 200), (300, 200), (200, 500)]:
            stats.record(duration, status)

        assert stats.count == 3
        assert stats.avg_time == 200
        assert stats.max_time == 300
        assert stats.min_time == 100
        assert stats.error_count == 1
        assert stats.error_rate == pytest.approx(1 / 3)
        assert stats.status_codes == {200: 2, 500: 1}

    def test_empty_stats(self):
        stats = EndpointStats()
        assert stats.avg_time == 0
        assert stats.error_rate == 0
        assert stats.to_dict("/x")["min_time_ms"] is None


class TestPerformanceMonitor:

    @pytest.mark.asyncio
    async def test_record_request(self, monitor):
        await monitor.record_request("/api/jobs", 120.0, 200)
        await monitor.record_request("/api/jobs", 80.0, 404)

        stats = await monitor.get_endpoint_stats("/api/jobs")
        assert stats.count == 2
        assert stats.avg_time == 100.0
        assert stats.error_count == 1

    @pytest.mark.asyncio
    async def test_endpoint_labels_are_capped(self, clock):
        monitor = PerformanceMonitor(clock=clock, max_endpoints=2, memory_reader=lambda: 0)
        for endpoint in ("/a", "/b", "/c", "/d", "/a"):
            await monitor.record_request(endpoint, 10.0, 200)

        report = await monitor.get_report()
        counts = {e["endpoint"]: e["count"] for e in report["endpoints"]}
        assert counts == {"/a": 2, "/b": 1, OVERFLOW_ENDPOINT: 2}

    @pytest.mark.asyncio
    async def test_report_rankings(self, monitor):
        for _ in range(3):
            await monitor.record_request("/fast", 10.0, 200)
        await monitor.record_request("/slow", 900.0, 200)
        await monitor.record_request("/broken", 50.0, 500)

        report = await monitor.get_report()

        assert report["summary"]["total_requests"] == 5
        assert report["summary"]["total_endpoints"] == 3
        assert report["summary"]["error_rate"] == 0.2
        assert report["slowest_endpoints"][0]["endpoint"] == "/slow"
        assert report["most_frequent"][0]["endpoint"] == "/fast"
        assert [e["endpoint"] for e in report["error_prone"]] == ["/broken"]
        assert report["memory_rss_mb"] == 100.0

    @pytest.mark.asyncio
    async def test_real_time_metrics_use_window(self, monitor, clock):
        await monitor.record_request("/a", 100.0, 200)
        clock.advance(200)
        await monitor.record_request("/a", 300.0, 500)
        clock.advance(150)

        metrics = await monitor.get_real_time_metrics()
        assert metrics["requests"] == 1
        assert metrics["errors"] == 1
        assert metrics["avg_response_time_ms"] == 300.0
        assert metrics["error_rate"] == 1.0
        assert metrics["throughput"] == pytest.approx(1 / 300, abs=1e-4)

        # Lifetime stats keep both
        report = await monitor.get_report()
        assert report["summary"]["total_requests"] == 2

    @pytest.mark.asyncio
    async def test_prune(self, monitor, clock):
        await monitor.record_request("/a", 1.0, 200)
        await monitor.record_request("/a", 1.0, 200)
        clock.advance(301)

        assert await monitor.prune() == 2
        assert await monitor.prune() == 0

    @pytest.mark.asyncio
    async def test_slow_request_logged(self, monitor):
        with patch("careerguard.app.services.performance.logger") as mock_logger:
            await monitor.record_request("/slow", 1500.0, 200, method="POST")

        mock_logger.warning.assert_called_once()
        assert "Slow request" in mock_logger.warning.call_args[0][0]

    @pytest.mark.asyncio
    async def test_memory_spike_logged(self, monitor):
        with patch("careerguard.app.services.performance.logger") as mock_logger:
            await monitor.record_request("/big", 10.0, 200, memory_delta=60 * MB)

        mock_logger.warning.assert_called_once()
        assert "Memory spike" in mock_logger.warning.call_args[0][0]

    @pytest.mark.asyncio
    async def test_healthy_when_idle(self, monitor):
        status = await monitor.get_health_status()

        assert status["healthy"] is True
        assert set(status["checks"]) == {"response_time", "error_rate", "memory", "throughput"}

    @pytest.mark.asyncio
    async def test_unhealthy_on_error_rate(self, monitor):
        for status_code in (200, 200, 500):
            await monitor.record_request("/a", 10.0, status_code)

        status = await monitor.get_health_status()
        assert status["healthy"] is False
        assert status["checks"]["error_rate"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_unhealthy_on_memory(self, monitor, rss):
        rss["bytes"] = 600 * MB
        status = await monitor.get_health_status()
        assert status["healthy"] is False
        assert status["checks"]["memory"]["value"] == 600.0

    @pytest.mark.asyncio
    async def test_unhealthy_on_slow_average(self, monitor):
        await monitor.record_request("/a", 2000.0, 200)
        status = await monitor.get_health_status()
        assert status["checks"]["response_time"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_low_throughput_is_advisory(self, monitor):
        await monitor.record_request("/a", 10.0, 200)
        status = await monitor.get_health_status()

        assert status["checks"]["throughput"]["healthy"] is False
        assert status["healthy"] is True

    @pytest.mark.asyncio
    async def test_prometheus_output(self, monitor):
        await monitor.record_request("/a", 10.0, 200)
        await monitor.record_request("/a", 20.0, 503)
        await monitor.record_rate_limit("api", "rejected")

        text = await monitor.get_prometheus_metrics()

        assert "# TYPE careerguard_requests_total counter" in text
        assert 'careerguard_requests_total{endpoint="/a"} 2' in text
        assert 'careerguard_errors_total{endpoint="/a"} 1' in text
        assert 'careerguard_rate_limit_decisions_total{strategy="api",outcome="rejected"} 1' in text

    @pytest.mark.asyncio
    async def test_reset(self, monitor):
        await monitor.record_request("/a", 10.0, 200)
        await monitor.record_rate_limit("api", "allowed")
        await monitor.reset()

        report = await monitor.get_report()
        assert report["summary"]["total_requests"] == 0
        assert report["endpoints"] == []
        assert "outcome=" not in await monitor.get_prometheus_metrics()

    def test_from_settings(self, clock):
        config = Settings(_env_file=None, metrics_window_seconds=60, slow_request_threshold_ms=250)
        monitor = PerformanceMonitor.from_settings(config, clock=clock)

        assert monitor.window_seconds == 60
        assert monitor.slow_request_threshold_ms == 250
        assert monitor.memory_spike_threshold_bytes == 50 * MB
