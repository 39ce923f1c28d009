"""Single HTTP health probe against a deployment's health endpoint."""

import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

import httpx

from deploy_guard.config import VERSION
from deploy_guard.models import HealthCheckResult, Issue, IssueKind
from deploy_guard.observability.metrics import HEALTH_CHECK_DURATION, HEALTH_CHECKS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PATH = "/health"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RESPONSE_TIME_THRESHOLD_MS = 5000
USER_AGENT = f"deploy-guard/{VERSION}"
HEALTHY_STATUSES = frozenset({"healthy", "ok"})


# --- Classification ---


def _parse_reported_status(body: str) -> str | None:
    """Return the ``status`` field of a JSON health body, or None if the body isn't one."""
    try:
        data: object = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(data, dict) and "status" in data:
        return str(data["status"])  # pyright: ignore[reportUnknownArgumentType]
    return None


def classify_response(
    status_code: int,
    response_time_ms: int,
    body: str,
    response_time_threshold_ms: int = DEFAULT_RESPONSE_TIME_THRESHOLD_MS,
) -> list[Issue]:
    """Apply the health rules to one HTTP response. An empty list means healthy.

    Rules are not exclusive: a slow 503 produces both a server-error and a
    slow-response issue.
    """
    issues: list[Issue] = []

    if status_code >= 500:
        issues.append(Issue(kind=IssueKind.SERVER_ERROR, message=f"Server error: HTTP {status_code}"))
    elif status_code >= 400:
        issues.append(Issue(kind=IssueKind.CLIENT_ERROR, message=f"Client error: HTTP {status_code}"))

    if response_time_ms > response_time_threshold_ms:
        issues.append(Issue(kind=IssueKind.SLOW_RESPONSE, message=f"Slow response: {response_time_ms}ms"))

    reported = _parse_reported_status(body)
    if reported is not None:
        if reported not in HEALTHY_STATUSES:
            issues.append(Issue(kind=IssueKind.ENDPOINT_STATUS, message=f"Health endpoint reports: {reported}"))
    elif status_code != 200:
        issues.append(Issue(kind=IssueKind.BAD_RESPONSE, message="Health endpoint not responding correctly"))

    return issues


def health_url(base_url: str, health_path: str = DEFAULT_HEALTH_PATH) -> str:
    """Join a deployment URL and the health path without doubling slashes."""
    return base_url.rstrip("/") + "/" + health_path.lstrip("/")


# --- Probe ---


class HealthProbe:
    """Performs one GET against ``<url><health_path>`` and classifies the result.

    No retries: repeated sampling is the job of ``HealthWindowSampler``.
    """

    def __init__(
        self,
        health_path: str = DEFAULT_HEALTH_PATH,
        response_time_threshold_ms: int = DEFAULT_RESPONSE_TIME_THRESHOLD_MS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.health_path = health_path
        self.response_time_threshold_ms = response_time_threshold_ms
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def check(self, url: str) -> HealthCheckResult:
        """Probe ``url`` once. Transport failures become an unhealthy result, never an exception."""
        target = health_url(url, self.health_path)
        timestamp = datetime.now(UTC)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                start = self._clock()
                response = await client.get(target)
                response_time_ms = max(0, round((self._clock() - start) * 1000))
        except httpx.HTTPError as e:
            cause = str(e) or type(e).__name__
            logger.debug("Health probe to %s failed: %s", target, cause)
            HEALTH_CHECKS_TOTAL.labels(result="error").inc()
            return HealthCheckResult(
                timestamp=timestamp,
                url=target,
                issues=(Issue(kind=IssueKind.TRANSPORT, message=f"Health check failed: {cause}"),),
            )

        HEALTH_CHECK_DURATION.observe(response_time_ms / 1000)
        issues = classify_response(
            response.status_code,
            response_time_ms,
            response.text,
            self.response_time_threshold_ms,
        )
        HEALTH_CHECKS_TOTAL.labels(result="unhealthy" if issues else "healthy").inc()

        return HealthCheckResult(
            timestamp=timestamp,
            url=target,
            response_time_ms=response_time_ms,
            status_code=response.status_code,
            issues=tuple(issues),
        )
