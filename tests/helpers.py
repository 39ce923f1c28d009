"""Builders and fakes shared by the unit tests."""

from datetime import UTC, datetime

from deploy_guard.models import (
    DeploymentRecord,
    DeploymentState,
    DeploymentTarget,
    HealthCheckResult,
    Issue,
    IssueKind,
)


def make_check(
    status_code: int | None = 200,
    response_time_ms: int | None = 50,
    issues: tuple[Issue, ...] = (),
    url: str = "https://app.test/health",
) -> HealthCheckResult:
    return HealthCheckResult(
        timestamp=datetime(2026, 10, 19, 8, 0, tzinfo=UTC),
        url=url,
        status_code=status_code,
        response_time_ms=response_time_ms,
        issues=issues,
    )


def server_error_check() -> HealthCheckResult:
    return make_check(503, 40, (Issue(kind=IssueKind.SERVER_ERROR, message="Server error: HTTP 503"),))


def make_deployment(
    deployment_id: str,
    state: DeploymentState = DeploymentState.READY,
    target: DeploymentTarget = DeploymentTarget.PRODUCTION,
    ready_state: DeploymentState | None = None,
    url: str | None = None,
) -> DeploymentRecord:
    return DeploymentRecord(
        id=deployment_id,
        url=url or f"https://app-{deployment_id}.vercel.app",
        state=state,
        target=target,
        ready_state=ready_state if ready_state is not None else state,
    )


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self, step_per_call: float = 0.0) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._step_per_call = step_per_call

    def __call__(self) -> float:
        current = self.now
        self.now += self._step_per_call
        return current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedProbe:
    """Probe that returns (or raises) scripted outcomes in order, repeating the last."""

    def __init__(self, *outcomes: HealthCheckResult | Exception) -> None:
        self._outcomes = list(outcomes)
        self.urls: list[str] = []

    async def check(self, url: str) -> HealthCheckResult:
        self.urls.append(url)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
