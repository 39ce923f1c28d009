"""Best-effort delivery of health and rollback summaries.

Every channel is independent and wrapped in try/except: a notification
failure is logged and counted, never raised, and never changes the outcome of
the operation being reported.  Email uses stdlib smtplib with STARTTLS.
"""

import asyncio
import json
import logging
import os
import smtplib
from collections import Counter
from datetime import UTC, datetime
from email.mime.text import MIMEText

import httpx

from deploy_guard.config import get_settings
from deploy_guard.models import HealthWindowSummary, MonitorResult, RollbackResult
from deploy_guard.observability.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30

Notifiable = RollbackResult | HealthWindowSummary | MonitorResult


# ---------------------------------------------------------------------------
# Structured payload
# ---------------------------------------------------------------------------


def _rollback_payload(result: RollbackResult) -> dict[str, object]:
    return {
        "type": "deployment_rollback",
        "timestamp": (result.finished_at or result.started_at).isoformat(),
        "status": "success" if result.success else "failed",
        "success": result.success,
        "reason": result.reason.value,
        "previous_deployment": result.previous_deployment.id if result.previous_deployment else None,
        "new_deployment": result.new_deployment.id if result.new_deployment else None,
        "issues": [issue.message for issue in result.issues],
        "steps": [step.model_dump(mode="json") for step in result.steps],
    }


def _health_payload(summary: HealthWindowSummary) -> dict[str, object]:
    return {
        "type": "deployment_health",
        "timestamp": summary.finished_at.isoformat(),
        "status": "healthy" if summary.healthy else "unhealthy",
        "success": summary.healthy,
        "url": summary.url,
        "metrics": summary.metrics.model_dump(mode="json"),
        "issues": [issue.message for issue in summary.issues],
    }


def build_notification(result: Notifiable) -> dict[str, object]:
    """Build the machine-readable notification payload for any result type."""
    if isinstance(result, RollbackResult):
        return _rollback_payload(result)
    if isinstance(result, HealthWindowSummary):
        return _health_payload(result)

    payload: dict[str, object] = {
        "type": "deployment_monitor",
        "timestamp": datetime.now(UTC).isoformat(),
        "status": "success" if result.success else "failed",
        "success": result.success,
        "action": result.action,
        "url": result.url,
        "current_deployment": result.current_deployment_id,
        "state": result.state.value,
        "errors": list(result.errors),
    }
    if result.summary is not None:
        payload["health"] = _health_payload(result.summary)
    if result.rollback is not None:
        payload["rollback"] = _rollback_payload(result.rollback)
    return payload


# ---------------------------------------------------------------------------
# Markdown rendering
# ---------------------------------------------------------------------------


def _collapse(messages: list[str]) -> list[str]:
    """Deduplicate messages keeping first-seen order, annotating repeats."""
    counts = Counter(messages)
    seen: set[str] = set()
    lines: list[str] = []
    for message in messages:
        if message in seen:
            continue
        seen.add(message)
        lines.append(f"{message} (x{counts[message]})" if counts[message] > 1 else message)
    return lines


def format_health_markdown(summary: HealthWindowSummary) -> str:
    """Render a sampling window as a short markdown summary."""
    m = summary.metrics
    lines: list[str] = [
        "## Deployment Health Summary",
        "",
        f"**Status:** {'Healthy' if summary.healthy else 'Unhealthy'}",
        f"**URL:** {summary.url}",
        f"**Window:** {summary.started_at.isoformat()} to {summary.finished_at.isoformat()}",
        "",
        f"- **Total checks:** {m.total_checks}",
        f"- **Successful:** {m.successful_checks}",
        f"- **Error rate:** {m.error_rate_percent:.1f}%",
        f"- **Avg response time:** {m.average_response_time_ms:.0f}ms",
        f"- **Max response time:** {m.max_response_time_ms}ms",
    ]
    if summary.issues:
        lines.append("")
        lines.append("### Issues Detected")
        lines.extend(f"- {line}" for line in _collapse([i.message for i in summary.issues]))
    return "\n".join(lines)


def format_rollback_markdown(result: RollbackResult) -> str:
    """Render a rollback result as markdown, suitable for a CI step summary."""
    timestamp = (result.finished_at or result.started_at).isoformat()
    lines: list[str] = [
        "## Deployment Rollback Summary",
        "",
        f"**Status:** {'Success' if result.success else 'Failed'}",
        f"**Reason:** {result.reason.value}",
        f"**Timestamp:** {timestamp}",
    ]
    if result.previous_deployment is not None:
        lines.append(f"**Rolled back to:** {result.previous_deployment.id}")
    if result.new_deployment is not None and result.new_deployment.url:
        lines.append(f"**Production URL:** {result.new_deployment.url}")
    lines.append("")

    if result.issues:
        lines.append("### Issues Detected")
        lines.extend(f"- {line}" for line in _collapse([i.message for i in result.issues]))
        lines.append("")

    lines.append("### Rollback Steps")
    for index, step in enumerate(result.steps, 1):
        suffix = f": {step.detail}" if step.detail else ""
        lines.append(f"{index}. {step.description} ({step.outcome.value}){suffix}")

    return "\n".join(lines)


def format_markdown(result: Notifiable) -> str:
    if isinstance(result, RollbackResult):
        return format_rollback_markdown(result)
    if isinstance(result, HealthWindowSummary):
        return format_health_markdown(result)

    sections: list[str] = []
    if result.summary is not None:
        sections.append(format_health_markdown(result.summary))
    if result.rollback is not None:
        sections.append(format_rollback_markdown(result.rollback))
    if not sections:
        sections.append(f"## Deployment Monitor\n\n**Status:** {'Success' if result.success else 'Failed'}")
    if result.errors:
        sections.append("### Errors\n" + "\n".join(f"- {e}" for e in result.errors))
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


def is_email_configured() -> bool:
    """Check whether all required SMTP settings are present."""
    settings = get_settings()
    return bool(
        settings.smtp_host and settings.smtp_username and settings.smtp_password and settings.notify_recipient_email
    )


def send_notification_email(markdown: str, subject: str) -> bool:
    """Send a plain-text markdown summary via SMTP with STARTTLS.

    Returns:
        True if the email was sent successfully, False otherwise.
    """
    settings = get_settings()

    if not is_email_configured():
        logger.warning("Email not configured, skipping send")
        return False

    msg = MIMEText(markdown, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_username
    msg["To"] = settings.notify_recipient_email

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=DEFAULT_TIMEOUT_SECONDS) as server:
            _ = server.starttls()
            server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(msg)
        logger.info("Notification email sent to %s", settings.notify_recipient_email)
        return True
    except Exception:
        logger.exception("Failed to send notification email")
        return False


def write_github_summary(markdown: str, title: str) -> None:
    """Emit a collapsible log group and append to the job's step summary, if available."""
    print(f"::group::{title}")
    print(markdown)
    print("::endgroup::")

    summary_path = os.environ.get("GITHUB_STEP_SUMMARY")
    if summary_path:
        with open(summary_path, "a", encoding="utf-8") as f:
            f.write(markdown + "\n\n")


async def post_webhook(url: str, text: str) -> None:
    """POST a Slack-compatible ``{"text": ...}`` message. Raises on failure."""
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
        response = await client.post(url, json={"text": text})
        _ = response.raise_for_status()


def _subject(payload: dict[str, object]) -> str:
    kind = str(payload.get("type", "deployment")).replace("_", " ")
    return f"deploy-guard: {kind} {payload.get('status', '')}".strip()


class NotificationSink:
    """Fans a result out to every configured channel. ``send`` never raises."""

    def __init__(self, webhook_url: str = "", email: bool = False, github_actions: bool | None = None) -> None:
        self.webhook_url = webhook_url
        self.email = email
        self._github_actions = github_actions

    @classmethod
    def from_settings(cls) -> "NotificationSink":
        settings = get_settings()
        return cls(webhook_url=settings.notify_webhook_url, email=is_email_configured())

    @property
    def github_actions(self) -> bool:
        if self._github_actions is not None:
            return self._github_actions
        return bool(os.environ.get("GITHUB_ACTIONS"))

    async def send(self, result: Notifiable) -> None:
        try:
            payload = build_notification(result)
            markdown = format_markdown(result)
        except Exception:
            logger.exception("Failed to build notification")
            NOTIFICATIONS_TOTAL.labels(channel="log", status="error").inc()
            return

        logger.info("Notification: %s", json.dumps(payload, default=str))
        NOTIFICATIONS_TOTAL.labels(channel="log", status="ok").inc()

        if self.github_actions:
            try:
                is_rollback = payload.get("type") == "deployment_rollback" or "rollback" in payload
                title = "Rollback Summary" if is_rollback else "Health Summary"
                write_github_summary(markdown, title)
                NOTIFICATIONS_TOTAL.labels(channel="github", status="ok").inc()
            except Exception:
                logger.exception("Failed to write GitHub Actions summary")
                NOTIFICATIONS_TOTAL.labels(channel="github", status="error").inc()

        if self.webhook_url:
            try:
                await post_webhook(self.webhook_url, markdown)
                NOTIFICATIONS_TOTAL.labels(channel="webhook", status="ok").inc()
            except Exception:
                logger.exception("Failed to post notification webhook")
                NOTIFICATIONS_TOTAL.labels(channel="webhook", status="error").inc()

        if self.email:
            try:
                sent = await asyncio.to_thread(send_notification_email, markdown, _subject(payload))
            except Exception:
                logger.exception("Failed to send notification email")
                sent = False
            NOTIFICATIONS_TOTAL.labels(channel="email", status="ok" if sent else "error").inc()
