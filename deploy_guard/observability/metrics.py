"""Prometheus metric definitions for deploy-guard self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
The CLI can dump the registry to a node_exporter textfile after each run.
"""

from prometheus_client import REGISTRY, Counter, Histogram, Info, write_to_textfile

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

HEALTH_CHECK_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

# ---------------------------------------------------------------------------
# Health sampling metrics
# ---------------------------------------------------------------------------

HEALTH_CHECKS_TOTAL = Counter(
    "deploy_guard_health_checks_total",
    "Total number of individual health probes",
    labelnames=["result"],
)

HEALTH_CHECK_DURATION = Histogram(
    "deploy_guard_health_check_duration_seconds",
    "Round-trip time of health probes that received a response",
    buckets=HEALTH_CHECK_DURATION_BUCKETS,
)

HEALTH_WINDOWS_TOTAL = Counter(
    "deploy_guard_health_windows_total",
    "Total number of completed sampling windows",
    labelnames=["verdict"],
)

# ---------------------------------------------------------------------------
# Deployment directory and rollback metrics
# ---------------------------------------------------------------------------

DIRECTORY_REQUESTS_TOTAL = Counter(
    "deploy_guard_directory_requests_total",
    "Total number of deployment directory API calls",
    labelnames=["operation", "status"],
)

ROLLBACKS_TOTAL = Counter(
    "deploy_guard_rollbacks_total",
    "Total number of rollback attempts",
    labelnames=["reason", "status"],
)

# ---------------------------------------------------------------------------
# Notification metrics
# ---------------------------------------------------------------------------

NOTIFICATIONS_TOTAL = Counter(
    "deploy_guard_notifications_total",
    "Total number of notification deliveries",
    labelnames=["channel", "status"],
)

APP_INFO = Info(
    "deploy_guard",
    "deploy-guard build information",
)


def write_metrics_textfile(path: str) -> None:
    """Write the default registry in Prometheus text format (atomic rename)."""
    write_to_textfile(path, REGISTRY)
