"""Pydantic models for health checks, deployments, and rollback results.

Every model is frozen: operations build fresh values and hand them back to the
caller instead of appending to shared state.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


class IssueKind(StrEnum):
    """Cause of a health or rollback issue, for matching without parsing text."""

    TRANSPORT = "transport"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    SLOW_RESPONSE = "slow_response"
    ENDPOINT_STATUS = "endpoint_status"
    BAD_RESPONSE = "bad_response"
    PROBE_ERROR = "probe_error"
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    NO_CHECKS = "no_checks"
    ROLLBACK_FAILURE = "rollback_failure"
    MANUAL = "manual"


class Issue(BaseModel):
    """A single human-readable problem tagged with its cause."""

    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    message: str

    def __str__(self) -> str:
        return self.message


def issue_messages(issues: tuple[Issue, ...] | list[Issue]) -> list[str]:
    """Return the plain messages of a sequence of issues, in order."""
    return [issue.message for issue in issues]


# ---------------------------------------------------------------------------
# Health sampling
# ---------------------------------------------------------------------------


class HealthCheckResult(BaseModel):
    """Outcome of one probe against a health endpoint."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    url: str
    response_time_ms: int | None = Field(default=None, ge=0)
    status_code: int | None = None
    issues: tuple[Issue, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def healthy(self) -> bool:
        return not self.issues


class HealthMetrics(BaseModel):
    """Aggregate counters for a sampling window."""

    model_config = ConfigDict(frozen=True)

    total_checks: int = 0
    successful_checks: int = 0
    error_count: int = 0
    average_response_time_ms: float = 0.0
    max_response_time_ms: int = 0
    error_rate_percent: float = 0.0

    @model_validator(mode="after")
    def _check_totals(self) -> "HealthMetrics":
        if self.total_checks != self.successful_checks + self.error_count:
            raise ValueError("total_checks must equal successful_checks + error_count")
        return self


class HealthWindowSummary(BaseModel):
    """Final verdict for a time-boxed series of health checks."""

    model_config = ConfigDict(frozen=True)

    url: str
    started_at: datetime
    finished_at: datetime
    checks: tuple[HealthCheckResult, ...] = ()
    metrics: HealthMetrics = Field(default_factory=HealthMetrics)
    healthy: bool
    issues: tuple[Issue, ...] = ()


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


class DeploymentState(StrEnum):
    BUILDING = "BUILDING"
    READY = "READY"
    ERROR = "ERROR"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"


class DeploymentTarget(StrEnum):
    PRODUCTION = "production"
    PREVIEW = "preview"


class DeploymentRecord(BaseModel):
    """Read-only snapshot of a deployment as reported by the directory API.

    Accepts both the Vercel wire names (``uid``, ``createdAt``, ``readyState``)
    and the Python field names.  States the platform reports that we do not
    know about become ``UNKNOWN``; a missing target means a preview deployment.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("uid", "id"))
    url: str | None = None
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("createdAt", "created", "created_at")
    )
    state: DeploymentState = DeploymentState.UNKNOWN
    target: DeploymentTarget = DeploymentTarget.PREVIEW
    ready_state: DeploymentState = Field(
        default=DeploymentState.UNKNOWN, validation_alias=AliasChoices("readyState", "ready_state")
    )

    @field_validator("state", "ready_state", mode="before")
    @classmethod
    def _coerce_state(cls, value: object) -> object:
        if isinstance(value, str):
            upper = value.upper()
            return upper if upper in DeploymentState.__members__ else DeploymentState.UNKNOWN
        if value is None:
            return DeploymentState.UNKNOWN
        return value

    @field_validator("target", mode="before")
    @classmethod
    def _coerce_target(cls, value: object) -> object:
        if isinstance(value, str) and value.lower() == DeploymentTarget.PRODUCTION:
            return DeploymentTarget.PRODUCTION
        return DeploymentTarget.PREVIEW

    @field_validator("url", mode="before")
    @classmethod
    def _add_scheme(cls, value: object) -> object:
        # Vercel reports bare hostnames ("my-app-abc123.vercel.app")
        if isinstance(value, str) and value and "://" not in value:
            return f"https://{value}"
        return value or None

    @property
    def is_stable(self) -> bool:
        return (
            self.state == DeploymentState.READY
            and self.target == DeploymentTarget.PRODUCTION
            and self.ready_state == DeploymentState.READY
        )


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class RollbackReason(StrEnum):
    HEALTH_CHECK_FAILURE = "health_check_failure"
    MANUAL = "manual"


class StepOutcome(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RollbackStep(BaseModel):
    """One entry in the rollback audit trail."""

    model_config = ConfigDict(frozen=True)

    description: str
    outcome: StepOutcome = StepOutcome.PENDING
    detail: str | None = None


class RollbackResult(BaseModel):
    """Outcome of one rollback attempt, including its partial progress."""

    model_config = ConfigDict(frozen=True)

    reason: RollbackReason
    triggering_issues: tuple[Issue, ...] = ()
    issues: tuple[Issue, ...] = ()
    steps: tuple[RollbackStep, ...] = ()
    previous_deployment: DeploymentRecord | None = None
    new_deployment: DeploymentRecord | None = None
    verification: HealthWindowSummary | None = None
    started_at: datetime
    finished_at: datetime | None = None
    success: bool = False


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class OrchestratorState(StrEnum):
    IDLE = "idle"
    MONITORING = "monitoring"
    HEALTHY_DONE = "healthy_done"
    UNHEALTHY = "unhealthy"
    FETCHING_HISTORY = "fetching_history"
    SELECTING_STABLE = "selecting_stable"
    PROMOTING = "promoting"
    VERIFYING_HEALTH = "verifying_health"
    NOTIFYING = "notifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MonitorResult(BaseModel):
    """Complete outcome of a monitor run (and the rollback it triggered, if any)."""

    model_config = ConfigDict(frozen=True)

    action: str
    url: str
    current_deployment_id: str | None = None
    state: OrchestratorState
    summary: HealthWindowSummary | None = None
    rollback: RollbackResult | None = None
    errors: tuple[str, ...] = ()
    success: bool
