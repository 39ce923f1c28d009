"""Time-boxed health sampling and threshold-based window verdicts.

The sampler probes one URL sequentially for a fixed wall-clock duration,
sleeping between probes so load is spread out rather than bursted.  The
verdict is computed once, after the loop, by ``summarize_window``.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from deploy_guard.models import HealthCheckResult, HealthMetrics, HealthWindowSummary, Issue, IssueKind
from deploy_guard.observability.metrics import HEALTH_WINDOWS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 5000
DEFAULT_ERROR_THRESHOLD_PERCENT = 5.0
DEFAULT_RESPONSE_TIME_THRESHOLD_MS = 5000


class Probe(Protocol):
    async def check(self, url: str) -> HealthCheckResult: ...


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


def summarize_window(
    url: str,
    checks: Sequence[HealthCheckResult],
    started_at: datetime,
    finished_at: datetime,
    error_threshold_percent: float = DEFAULT_ERROR_THRESHOLD_PERCENT,
    response_time_threshold_ms: int = DEFAULT_RESPONSE_TIME_THRESHOLD_MS,
) -> HealthWindowSummary:
    """Compute metrics and the health verdict for a finished window.

    Args:
        url: The deployment URL that was sampled.
        checks: Probe results in chronological order.
        started_at: When the window opened.
        finished_at: When the window closed.
        error_threshold_percent: Error rate above which the window is unhealthy.
        response_time_threshold_ms: Average latency above which the window is unhealthy.

    Returns:
        An immutable summary. A window with no checks is unhealthy rather than
        dividing by zero.
    """
    total = len(checks)
    successful = sum(1 for c in checks if c.healthy)
    errors = total - successful
    response_times = [c.response_time_ms for c in checks if c.response_time_ms is not None]
    average = sum(response_times) / len(response_times) if response_times else 0.0
    error_rate = errors * 100 / total if total else 0.0

    metrics = HealthMetrics(
        total_checks=total,
        successful_checks=successful,
        error_count=errors,
        average_response_time_ms=average,
        max_response_time_ms=max(response_times, default=0),
        error_rate_percent=error_rate,
    )

    issues: list[Issue] = [issue for c in checks if not c.healthy for issue in c.issues]
    healthy = True

    if total == 0:
        healthy = False
        issues.append(Issue(kind=IssueKind.NO_CHECKS, message="No health checks completed"))
    else:
        if error_rate > error_threshold_percent:
            healthy = False
            issues.append(
                Issue(
                    kind=IssueKind.ERROR_RATE,
                    message=f"Error rate {error_rate:.1f}% exceeds threshold {error_threshold_percent:g}%",
                )
            )
        if average > response_time_threshold_ms:
            healthy = False
            issues.append(
                Issue(
                    kind=IssueKind.LATENCY,
                    message=f"Average response time {average:.0f}ms exceeds threshold {response_time_threshold_ms}ms",
                )
            )

    return HealthWindowSummary(
        url=url,
        started_at=started_at,
        finished_at=finished_at,
        checks=tuple(checks),
        metrics=metrics,
        healthy=healthy,
        issues=tuple(issues),
    )


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------


class HealthWindowSampler:
    """Runs a probe repeatedly over a bounded duration and summarises the window."""

    def __init__(
        self,
        probe: Probe,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        error_threshold_percent: float = DEFAULT_ERROR_THRESHOLD_PERCENT,
        response_time_threshold_ms: int = DEFAULT_RESPONSE_TIME_THRESHOLD_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.probe = probe
        self.interval_ms = interval_ms
        self.error_threshold_percent = error_threshold_percent
        self.response_time_threshold_ms = response_time_threshold_ms
        self._clock = clock
        self._sleep = sleep

    async def sample(self, url: str, duration_ms: int, interval_ms: int | None = None) -> HealthWindowSummary:
        """Probe ``url`` until ``duration_ms`` has elapsed, then return the verdict.

        Every iteration yields exactly one result: an exception escaping the
        probe is recorded as an unhealthy check instead of ending the window.
        """
        interval = self.interval_ms if interval_ms is None else interval_ms
        logger.info("Monitoring %s for %.0fs", url, duration_ms / 1000)

        started_at = datetime.now(UTC)
        start = self._clock()
        checks: list[HealthCheckResult] = []

        while (self._clock() - start) * 1000 < duration_ms:
            try:
                result = await self.probe.check(url)
            except Exception as e:
                logger.warning("Health probe raised for %s: %s", url, e)
                result = HealthCheckResult(
                    timestamp=datetime.now(UTC),
                    url=url,
                    issues=(Issue(kind=IssueKind.PROBE_ERROR, message=str(e) or type(e).__name__),),
                )
            checks.append(result)

            elapsed_ms = (self._clock() - start) * 1000
            logger.debug(
                "Progress: %d%% | Checks: %d | Errors: %d",
                min(100, round(elapsed_ms / duration_ms * 100)),
                len(checks),
                sum(1 for c in checks if not c.healthy),
            )
            await self._sleep(interval / 1000)

        summary = summarize_window(
            url,
            checks,
            started_at,
            datetime.now(UTC),
            self.error_threshold_percent,
            self.response_time_threshold_ms,
        )
        HEALTH_WINDOWS_TOTAL.labels(verdict="healthy" if summary.healthy else "unhealthy").inc()

        m = summary.metrics
        logger.info(
            "Health window for %s: %d checks, error rate %.1f%%, avg %.0fms, max %dms -> %s",
            url,
            m.total_checks,
            m.error_rate_percent,
            m.average_response_time_ms,
            m.max_response_time_ms,
            "healthy" if summary.healthy else "unhealthy",
        )
        return summary
