"""Monitor a deployment and roll back to the last stable one when it is unhealthy.

State flow for one run::

    IDLE -> MONITORING -> HEALTHY_DONE
                       -> UNHEALTHY -> FETCHING_HISTORY -> SELECTING_STABLE -> PROMOTING
                                    -> VERIFYING_HEALTH -> NOTIFYING -> SUCCEEDED | FAILED

Promotion is never retried; a failed run is left for an operator to rerun.
Each call works on its own ``_RollbackRun`` and returns a frozen result;
nothing is carried over between calls.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from deploy_guard.directory import deployment_id_from_url
from deploy_guard.errors import (
    ConfigurationError,
    DeployGuardError,
    NoHistoryAvailable,
    NoStableDeploymentAvailable,
    RollbackError,
    RollbackTimedOut,
)
from deploy_guard.models import (
    DeploymentRecord,
    HealthWindowSummary,
    Issue,
    IssueKind,
    MonitorResult,
    OrchestratorState,
    RollbackReason,
    RollbackResult,
    RollbackStep,
    StepOutcome,
    issue_messages,
)
from deploy_guard.notify import Notifiable
from deploy_guard.observability.metrics import ROLLBACKS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_MONITOR_WINDOW_MS = 60_000
DEFAULT_VERIFY_WINDOW_MS = 30_000
DEFAULT_SETTLE_DELAY_MS = 10_000
DEFAULT_ROLLBACK_TIMEOUT_MS = 300_000
DEFAULT_HISTORY_LIMIT = 10

STEP_FETCH_HISTORY = "Fetching deployment history"
STEP_FIND_STABLE = "Finding stable deployment"
STEP_PROMOTE = "Promoting previous deployment"
STEP_VERIFY = "Verifying rollback health"
STEP_NOTIFY = "Sending notifications"


# --- Collaborator interfaces ---


class Sampler(Protocol):
    async def sample(self, url: str, duration_ms: int, interval_ms: int | None = None) -> HealthWindowSummary: ...


class Directory(Protocol):
    async def list_deployments(self, limit: int = ...) -> list[DeploymentRecord]: ...

    def find_last_stable(self, deployments: Sequence[DeploymentRecord]) -> DeploymentRecord | None: ...

    async def promote(self, deployment_id: str) -> DeploymentRecord: ...


class Notifier(Protocol):
    async def send(self, result: Notifiable) -> None: ...


# --- Per-run working state ---


class _RollbackRun:
    """Mutable scratch state for a single rollback, frozen into a RollbackResult."""

    def __init__(self, reason: RollbackReason, issues: Sequence[Issue]) -> None:
        self.reason = reason
        self.triggering_issues = tuple(issues)
        self.issues: list[Issue] = list(issues)
        self.steps: list[RollbackStep] = []
        self.previous_deployment: DeploymentRecord | None = None
        self.new_deployment: DeploymentRecord | None = None
        self.verification: HealthWindowSummary | None = None
        self.success = False
        self.started_at = datetime.now(UTC)

    def begin(self, description: str) -> int:
        self.steps.append(RollbackStep(description=description))
        logger.info("Rollback step %d: %s", len(self.steps), description)
        return len(self.steps) - 1

    def finish(self, index: int, outcome: StepOutcome, detail: str | None = None) -> None:
        self.steps[index] = self.steps[index].model_copy(update={"outcome": outcome, "detail": detail})

    def fail(self, message: str) -> None:
        for index, step in enumerate(self.steps):
            if step.outcome == StepOutcome.PENDING:
                self.finish(index, StepOutcome.FAILED, message)
        self.steps.append(RollbackStep(description=f"Failed: {message}", outcome=StepOutcome.FAILED))
        self.issues.append(Issue(kind=IssueKind.ROLLBACK_FAILURE, message=message))
        self.success = False

    def freeze(self) -> RollbackResult:
        return RollbackResult(
            reason=self.reason,
            triggering_issues=self.triggering_issues,
            issues=tuple(self.issues),
            steps=tuple(self.steps),
            previous_deployment=self.previous_deployment,
            new_deployment=self.new_deployment,
            verification=self.verification,
            started_at=self.started_at,
            finished_at=datetime.now(UTC),
            success=self.success,
        )


def _transition(state: OrchestratorState) -> None:
    logger.debug("Orchestrator state -> %s", state.value)


# --- Orchestrator ---


class RollbackOrchestrator:
    """Sequences health monitoring, rollback, verification and notification.

    Args:
        sampler: Runs time-boxed health windows.
        directory: Deployment directory client. Optional for health-only use;
            rollback raises ``ConfigurationError`` without one.
        notifier: Receives every rollback result. Failures never propagate.
        monitor_window_ms: Default length of the initial monitoring window.
        verify_window_ms: Length of the post-rollback verification window.
        settle_delay_ms: Wait after promotion before verifying.
        rollback_timeout_ms: Upper bound for history -> verification.
        history_limit: Number of deployments fetched when looking for a target.
        fallback_url: Production URL to verify when the promotion response has none.
        sleep: Injectable sleep for tests.
    """

    def __init__(
        self,
        sampler: Sampler,
        directory: Directory | None,
        notifier: Notifier,
        monitor_window_ms: int = DEFAULT_MONITOR_WINDOW_MS,
        verify_window_ms: int = DEFAULT_VERIFY_WINDOW_MS,
        settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS,
        rollback_timeout_ms: int = DEFAULT_ROLLBACK_TIMEOUT_MS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        fallback_url: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sampler = sampler
        self.directory = directory
        self.notifier = notifier
        self.monitor_window_ms = monitor_window_ms
        self.verify_window_ms = verify_window_ms
        self.settle_delay_ms = settle_delay_ms
        self.rollback_timeout_ms = rollback_timeout_ms
        self.history_limit = history_limit
        self.fallback_url = fallback_url
        self._sleep = sleep

    async def check_health(self, url: str, duration_ms: int | None = None) -> HealthWindowSummary:
        """Sample ``url`` once without any rollback side effects."""
        return await self.sampler.sample(url, self.verify_window_ms if duration_ms is None else duration_ms)

    async def monitor_and_rollback(
        self,
        url: str,
        auto_rollback: bool = True,
        duration_ms: int | None = None,
        reason: RollbackReason = RollbackReason.HEALTH_CHECK_FAILURE,
    ) -> MonitorResult:
        """Monitor ``url`` and, if the window is unhealthy, roll back.

        A healthy window never touches the deployment directory.  Rollback
        errors are folded into the returned result (with the partial rollback
        trail) rather than raised.
        """
        current_id = deployment_id_from_url(url)
        logger.info(
            "Monitoring deployment %s (%s), auto rollback %s",
            current_id or "unknown",
            url,
            "enabled" if auto_rollback else "disabled",
        )

        _transition(OrchestratorState.MONITORING)
        window = self.monitor_window_ms if duration_ms is None else duration_ms
        summary = await self.sampler.sample(url, window)

        if summary.healthy:
            _transition(OrchestratorState.HEALTHY_DONE)
            logger.info("Deployment is healthy, no rollback needed")
            return MonitorResult(
                action="monitor",
                url=url,
                current_deployment_id=current_id,
                state=OrchestratorState.HEALTHY_DONE,
                summary=summary,
                success=True,
            )

        _transition(OrchestratorState.UNHEALTHY)
        logger.warning("Deployment health check failed: %s", ", ".join(issue_messages(summary.issues)))

        if not auto_rollback:
            logger.warning("Auto-rollback disabled, manual intervention required")
            return MonitorResult(
                action="monitor",
                url=url,
                current_deployment_id=current_id,
                state=OrchestratorState.FAILED,
                summary=summary,
                errors=tuple(issue_messages(summary.issues)),
                success=False,
            )

        try:
            rollback = await self.perform_rollback(reason, summary.issues)
        except DeployGuardError as e:
            return MonitorResult(
                action="rollback",
                url=url,
                current_deployment_id=current_id,
                state=OrchestratorState.FAILED,
                summary=summary,
                rollback=e.result,
                errors=(str(e),),
                success=False,
            )

        return MonitorResult(
            action="rollback",
            url=url,
            current_deployment_id=current_id,
            state=OrchestratorState.SUCCEEDED if rollback.success else OrchestratorState.FAILED,
            summary=summary,
            rollback=rollback,
            success=rollback.success,
        )

    async def perform_rollback(
        self,
        reason: RollbackReason = RollbackReason.MANUAL,
        issues: Sequence[Issue] = (),
        verify_window_ms: int | None = None,
    ) -> RollbackResult:
        """Roll production back to the last stable deployment and verify it.

        ``verify_window_ms`` overrides the verification window for this call only.

        Returns:
            The rollback result. ``success`` is True only if promotion succeeded
            and the verification window was healthy.

        Raises:
            ConfigurationError: No directory client, or directory configuration missing.
            NoHistoryAvailable: The directory returned no deployments.
            NoStableDeploymentAvailable: Fewer than two stable production deployments.
            PromotionFailed: The directory refused the promotion.
            RollbackTimedOut: The run exceeded ``rollback_timeout_ms``.
            RollbackError: Any other failure raised while remediating.

            Every error carries the partial result as ``error.result``.
        """
        if self.directory is None:
            raise ConfigurationError("A deployment directory client is required for rollback")

        verify_window = self.verify_window_ms if verify_window_ms is None else verify_window_ms
        run = _RollbackRun(reason, issues)
        logger.info("Performing deployment rollback (reason: %s)", reason.value)
        if run.triggering_issues:
            logger.info("Issues: %s", ", ".join(issue_messages(run.triggering_issues)))

        try:
            async with asyncio.timeout(self.rollback_timeout_ms / 1000):
                await self._remediate(run, self.directory, verify_window)
        except TimeoutError:
            error = RollbackTimedOut(f"Rollback did not complete within {self.rollback_timeout_ms / 1000:.0f}s")
            await self._abort(run, error)
            raise error from None
        except DeployGuardError as error:
            await self._abort(run, error)
            raise
        except Exception as e:
            logger.exception("Unexpected error during rollback")
            error = RollbackError(f"{type(e).__name__}: {e}")
            await self._abort(run, error)
            raise error from e

        await self._notify(run)
        _transition(OrchestratorState.SUCCEEDED if run.success else OrchestratorState.FAILED)
        ROLLBACKS_TOTAL.labels(reason=reason.value, status="success" if run.success else "unhealthy").inc()
        return run.freeze()

    async def _remediate(self, run: _RollbackRun, directory: Directory, verify_window_ms: int) -> None:
        _transition(OrchestratorState.FETCHING_HISTORY)
        step = run.begin(STEP_FETCH_HISTORY)
        deployments = await directory.list_deployments(self.history_limit)
        if not deployments:
            raise NoHistoryAvailable("No previous deployment found to roll back to")
        run.finish(step, StepOutcome.SUCCEEDED, f"{len(deployments)} deployment(s)")

        _transition(OrchestratorState.SELECTING_STABLE)
        step = run.begin(STEP_FIND_STABLE)
        stable = directory.find_last_stable(deployments)
        if stable is None:
            raise NoStableDeploymentAvailable("No stable deployment found to roll back to")
        run.previous_deployment = stable
        run.finish(step, StepOutcome.SUCCEEDED, stable.id)
        logger.info("Target deployment: %s (%s)", stable.id, stable.created_at)

        _transition(OrchestratorState.PROMOTING)
        step = run.begin(STEP_PROMOTE)
        promoted = await directory.promote(stable.id)
        run.new_deployment = promoted
        run.finish(step, StepOutcome.SUCCEEDED, promoted.id)

        _transition(OrchestratorState.VERIFYING_HEALTH)
        step = run.begin(STEP_VERIFY)
        url = promoted.url or self.fallback_url or stable.url
        if not url:
            raise ConfigurationError("No URL available to verify the rollback; set PRODUCTION_URL")

        # TODO: poll the directory for the promoted deployment's readiness instead of a fixed delay
        await self._sleep(self.settle_delay_ms / 1000)
        verification = await self.sampler.sample(url, verify_window_ms)
        run.verification = verification

        if verification.healthy:
            run.success = True
            run.finish(step, StepOutcome.SUCCEEDED, url)
            logger.info("Rollback completed successfully, production URL: %s", url)
        else:
            run.success = False
            run.issues.extend(verification.issues)
            run.finish(step, StepOutcome.FAILED, "rollback deployment is unhealthy")
            logger.warning(
                "Rollback completed but health check shows issues: %s",
                ", ".join(issue_messages(verification.issues)),
            )

    async def _notify(self, run: _RollbackRun) -> None:
        _transition(OrchestratorState.NOTIFYING)
        step = run.begin(STEP_NOTIFY)
        try:
            await self.notifier.send(run.freeze())
            run.finish(step, StepOutcome.SUCCEEDED)
        except Exception as e:
            logger.exception("Failed to send rollback notification")
            run.finish(step, StepOutcome.FAILED, str(e))

    async def _abort(self, run: _RollbackRun, error: DeployGuardError) -> None:
        logger.error("Rollback failed: %s", error)
        run.fail(str(error))
        await self._notify(run)
        _transition(OrchestratorState.FAILED)
        ROLLBACKS_TOTAL.labels(reason=run.reason.value, status="failed").inc()
        error.result = run.freeze()
