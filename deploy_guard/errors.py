"""Exception hierarchy for structural (non-recoverable) failures.

Transient problems such as a refused health probe or a failed history fetch
are turned into data by the components that see them; only the errors below
propagate to the caller.
"""

from deploy_guard.models import RollbackResult


class DeployGuardError(Exception):
    """Base class for all deploy-guard errors.

    When a failure happens during a rollback, the orchestrator attaches the
    partial ``RollbackResult`` as ``result`` before re-raising, so callers can
    still print the audit trail.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.result: RollbackResult | None = None


class ConfigurationError(DeployGuardError):
    """Required configuration (token, project id) is missing."""


class RollbackError(DeployGuardError):
    """A rollback could not be completed."""


class PromotionFailed(RollbackError):
    """The directory API refused or failed to promote a deployment."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NoStableDeploymentAvailable(RollbackError):
    """No earlier ready production deployment exists to roll back to."""


class NoHistoryAvailable(NoStableDeploymentAvailable):
    """The directory returned no deployments at all (or could not be reached)."""


class RollbackTimedOut(RollbackError):
    """The rollback did not finish within the configured time budget."""
