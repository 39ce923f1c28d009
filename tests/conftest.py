"""Shared pytest configuration and fixtures."""

from collections.abc import Iterator
from typing import Any
from unittest.mock import patch

import pytest
from helpers import FakeClock

from deploy_guard.config import Settings, get_settings


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real services (requires .env with valid credentials)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Iterator[None]:
    """Block .env loading so a developer's local credentials never leak into tests.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Iterator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        vercel_token="vercel-test-token",
        vercel_project_id="prj_test",
        vercel_team_id="",
        vercel_api_url="https://api.vercel.test",
        production_url="https://app.test",
        health_check_path="/health",
        health_check_timeout_ms=60_000,
        health_check_interval_ms=5_000,
        error_threshold_percent=5.0,
        response_time_threshold_ms=5_000,
        request_timeout_seconds=30.0,
        rollback_timeout_ms=300_000,
        max_retries=3,
        settle_delay_ms=10_000,
        verify_window_ms=30_000,
        history_limit=10,
        notify_webhook_url="",
        smtp_host="",
        smtp_port=587,
        smtp_username="",
        smtp_password="",
        notify_recipient_email="",
    )
    with (
        patch("deploy_guard.config.get_settings", return_value=fake_settings),
        patch("deploy_guard.notify.get_settings", return_value=fake_settings),
        patch("deploy_guard.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
