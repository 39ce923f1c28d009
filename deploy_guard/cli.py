"""Command-line driver: monitor a deployment, force a rollback, or check health.

Usage:
    deploy-guard monitor https://my-app-abc123.vercel.app
    deploy-guard rollback https://my-app-abc123.vercel.app
    deploy-guard health https://my-app-abc123.vercel.app --duration-ms 30000
    # or without installing:
    uv run python -m deploy_guard.cli monitor https://my-app-abc123.vercel.app

Exit code is 0 on success and 1 on any failure.  The full structured result
is always printed, even when the run fails.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from pydantic import BaseModel

from deploy_guard.config import VERSION, Settings, get_settings
from deploy_guard.directory import DeploymentDirectoryClient
from deploy_guard.errors import DeployGuardError
from deploy_guard.models import Issue, IssueKind, RollbackReason
from deploy_guard.notify import NotificationSink, format_markdown
from deploy_guard.observability.metrics import APP_INFO, write_metrics_textfile
from deploy_guard.orchestrator import RollbackOrchestrator
from deploy_guard.probe import HealthProbe
from deploy_guard.sampler import HealthWindowSampler

logger = logging.getLogger(__name__)

COMMANDS = ("monitor", "rollback", "health")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploy-guard",
        description="Monitor a deployment's health and roll back to the last stable deployment",
    )
    parser.add_argument("command", choices=COMMANDS, help="monitor, rollback, or health")
    parser.add_argument("url", help="Deployment URL, e.g. https://my-app-abc123.vercel.app")
    parser.add_argument(
        "--no-auto-rollback",
        action="store_true",
        help="Only report an unhealthy deployment, don't roll it back (monitor only)",
    )
    parser.add_argument(
        "--duration-ms",
        type=int,
        default=None,
        help="Sampling window length in milliseconds; for rollback, the verification window (defaults from settings)",
    )
    parser.add_argument("--json", action="store_true", help="Print the result as JSON instead of markdown")
    parser.add_argument(
        "--metrics-file",
        type=str,
        default="",
        help="Write Prometheus metrics to this file (node_exporter textfile format)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress at INFO level")
    return parser


def build_orchestrator(settings: Settings, with_directory: bool) -> RollbackOrchestrator:
    """Wire probe, sampler, directory client and notification sink from settings.

    Raises:
        ConfigurationError: ``with_directory`` is set but no API token is configured.
    """
    probe = HealthProbe(
        health_path=settings.health_check_path,
        response_time_threshold_ms=settings.response_time_threshold_ms,
        timeout_seconds=settings.request_timeout_seconds,
    )
    sampler = HealthWindowSampler(
        probe,
        interval_ms=settings.health_check_interval_ms,
        error_threshold_percent=settings.error_threshold_percent,
        response_time_threshold_ms=settings.response_time_threshold_ms,
    )
    directory = DeploymentDirectoryClient.from_settings(settings) if with_directory else None

    return RollbackOrchestrator(
        sampler,
        directory,
        NotificationSink.from_settings(),
        monitor_window_ms=settings.health_check_timeout_ms,
        verify_window_ms=settings.verify_window_ms,
        settle_delay_ms=settings.settle_delay_ms,
        rollback_timeout_ms=settings.rollback_timeout_ms,
        history_limit=settings.history_limit,
        fallback_url=settings.production_url,
    )


async def run_command(
    command: str,
    url: str,
    auto_rollback: bool = True,
    duration_ms: int | None = None,
) -> tuple[bool, BaseModel]:
    """Run one command and return ``(success, result)``.

    Raises:
        DeployGuardError: Configuration problems, or a forced rollback that failed.
    """
    settings = get_settings()
    needs_directory = command == "rollback" or (command == "monitor" and auto_rollback)
    orchestrator = build_orchestrator(settings, with_directory=needs_directory)

    if command == "monitor":
        monitored = await orchestrator.monitor_and_rollback(url, auto_rollback=auto_rollback, duration_ms=duration_ms)
        return monitored.success, monitored

    if command == "rollback":
        logger.info("Forcing rollback away from %s", url)
        rollback = await orchestrator.perform_rollback(
            RollbackReason.MANUAL,
            [Issue(kind=IssueKind.MANUAL, message="Manual rollback requested")],
            verify_window_ms=duration_ms,
        )
        return rollback.success, rollback

    if command == "health":
        summary = await orchestrator.check_health(url, duration_ms)
        await orchestrator.notifier.send(summary)
        return summary.healthy, summary

    raise ValueError(f"Unknown command: {command}")


def _print_result(result: BaseModel, as_json: bool) -> None:
    if as_json:
        print(result.model_dump_json(indent=2))
    else:
        print(format_markdown(result))  # type: ignore[arg-type]  # pyright: ignore[reportArgumentType]


def _emit_github_outputs(command: str, success: bool, result: BaseModel | None) -> None:
    """Publish the result JSON and step outputs when running under GitHub Actions."""
    if result is not None:
        print("::group::Rollback Results JSON")
        print(result.model_dump_json(indent=2))
        print("::endgroup::")

    output_path = os.environ.get("GITHUB_OUTPUT")
    if output_path:
        with open(output_path, "a", encoding="utf-8") as f:
            f.write(f"success={json.dumps(success)}\n")
            f.write(f"action={command}\n")


def main(argv: list[str] | None = None) -> None:
    """Parse args, run the command, and exit with 0 on success or 1 on failure."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    APP_INFO.info({"version": VERSION, "command": args.command})

    success = False
    result: BaseModel | None = None
    try:
        success, result = asyncio.run(
            run_command(
                args.command,
                args.url,
                auto_rollback=not args.no_auto_rollback,
                duration_ms=args.duration_ms,
            )
        )
    except DeployGuardError as e:
        print(f"Deployment {args.command} failed: {e}", file=sys.stderr)
        result = e.result

    if result is not None:
        _print_result(result, args.json)

    if os.environ.get("GITHUB_ACTIONS"):
        _emit_github_outputs(args.command, success, result)

    if args.metrics_file:
        try:
            write_metrics_textfile(args.metrics_file)
        except OSError:
            logger.exception("Failed to write metrics file %s", args.metrics_file)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
