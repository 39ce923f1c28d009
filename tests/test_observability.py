"""Unit tests for self-instrumentation metrics."""

from pathlib import Path

import httpx
import respx
from helpers import make_check, server_error_check
from prometheus_client import REGISTRY

from deploy_guard.models import HealthCheckResult
from deploy_guard.observability.metrics import (
    DIRECTORY_REQUESTS_TOTAL,
    HEALTH_CHECK_DURATION,
    HEALTH_CHECKS_TOTAL,
    HEALTH_WINDOWS_TOTAL,
    NOTIFICATIONS_TOTAL,
    ROLLBACKS_TOTAL,
    write_metrics_textfile,
)
from deploy_guard.probe import HealthProbe
from deploy_guard.sampler import HealthWindowSampler

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sample(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Read current value from the default registry, treating a missing series as zero."""
    return REGISTRY.get_sample_value(metric_name, labels or {}) or 0.0


# ---------------------------------------------------------------------------
# Metric definition tests
# ---------------------------------------------------------------------------


class TestMetricDefinitions:
    def test_health_checks_total_is_counter(self) -> None:
        assert HEALTH_CHECKS_TOTAL._type == "counter"

    def test_health_check_duration_is_histogram(self) -> None:
        assert HEALTH_CHECK_DURATION._type == "histogram"

    def test_windows_total_is_counter(self) -> None:
        assert HEALTH_WINDOWS_TOTAL._type == "counter"

    def test_directory_requests_labels(self) -> None:
        assert DIRECTORY_REQUESTS_TOTAL._labelnames == ("operation", "status")

    def test_rollbacks_labels(self) -> None:
        assert ROLLBACKS_TOTAL._labelnames == ("reason", "status")

    def test_notifications_labels(self) -> None:
        assert NOTIFICATIONS_TOTAL._labelnames == ("channel", "status")


# ---------------------------------------------------------------------------
# Instrumentation tests
# ---------------------------------------------------------------------------


class TestInstrumentation:
    @respx.mock
    async def test_probe_counts_results(self) -> None:
        respx.get("https://metrics.test/health").mock(return_value=httpx.Response(503))
        before = _sample("deploy_guard_health_checks_total", {"result": "unhealthy"})

        await HealthProbe().check("https://metrics.test")

        assert _sample("deploy_guard_health_checks_total", {"result": "unhealthy"}) == before + 1

    async def test_sampler_counts_verdicts(self) -> None:
        class _Probe:
            def __init__(self) -> None:
                self._results = [make_check(), server_error_check()]

            async def check(self, url: str) -> HealthCheckResult:
                return self._results.pop(0)

        now = [0.0]

        def _clock() -> float:
            return now[0]

        async def _sleep(seconds: float) -> None:
            now[0] += seconds

        before = _sample("deploy_guard_health_windows_total", {"verdict": "unhealthy"})
        sampler = HealthWindowSampler(_Probe(), interval_ms=1000, clock=_clock, sleep=_sleep)

        await sampler.sample("https://metrics.test", duration_ms=2000)

        assert _sample("deploy_guard_health_windows_total", {"verdict": "unhealthy"}) == before + 1

    def test_write_textfile(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy_guard.prom"
        ROLLBACKS_TOTAL.labels(reason="manual", status="success").inc()

        write_metrics_textfile(str(path))

        text = path.read_text()
        assert "deploy_guard_rollbacks_total" in text
        assert 'reason="manual"' in text
