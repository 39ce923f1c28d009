"""Unit tests for deployment records and stable-deployment selection."""

from datetime import UTC, datetime

import pytest
from helpers import make_deployment

from deploy_guard.config import Settings
from deploy_guard.directory import DeploymentDirectoryClient, deployment_id_from_url, find_last_stable
from deploy_guard.errors import ConfigurationError
from deploy_guard.models import DeploymentRecord, DeploymentState, DeploymentTarget


class TestDeploymentRecord:
    def test_parses_vercel_wire_format(self) -> None:
        record = DeploymentRecord.model_validate({
            "uid": "dpl_abc123",
            "name": "my-app",
            "url": "my-app-abc123.vercel.app",
            "createdAt": 1760860800000,
            "state": "READY",
            "readyState": "READY",
            "target": "production",
        })
        assert record.id == "dpl_abc123"
        assert record.url == "https://my-app-abc123.vercel.app"
        assert record.created_at == datetime(2025, 10, 19, 8, 0, tzinfo=UTC)
        assert record.state == DeploymentState.READY
        assert record.ready_state == DeploymentState.READY
        assert record.target == DeploymentTarget.PRODUCTION
        assert record.is_stable is True

    def test_null_target_is_preview(self) -> None:
        record = DeploymentRecord.model_validate({"uid": "d1", "state": "READY", "readyState": "READY", "target": None})
        assert record.target == DeploymentTarget.PREVIEW
        assert record.is_stable is False

    def test_unknown_state_is_coerced(self) -> None:
        record = DeploymentRecord.model_validate({"uid": "d1", "state": "QUEUED", "readyState": "initializing"})
        assert record.state == DeploymentState.UNKNOWN
        assert record.ready_state == DeploymentState.UNKNOWN

    def test_lowercase_state_is_accepted(self) -> None:
        record = DeploymentRecord.model_validate({"uid": "d1", "state": "ready"})
        assert record.state == DeploymentState.READY

    def test_url_with_scheme_is_kept(self) -> None:
        record = DeploymentRecord.model_validate({"id": "d1", "url": "http://localhost:3000"})
        assert record.url == "http://localhost:3000"

    def test_state_and_ready_state_checked_independently(self) -> None:
        record = make_deployment("d1", ready_state=DeploymentState.BUILDING)
        assert record.state == DeploymentState.READY
        assert record.is_stable is False

    def test_missing_id_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            DeploymentRecord.model_validate({"state": "READY"})


class TestFindLastStable:
    def test_returns_second_stable_deployment(self) -> None:
        d0 = make_deployment("d0")
        d1 = make_deployment("d1")
        d2 = make_deployment("d2")
        d3 = make_deployment("d3", state=DeploymentState.ERROR)

        assert find_last_stable([d0, d1, d2, d3]) == d1

    def test_current_deployment_not_yet_stable(self) -> None:
        # The deployment under evaluation is still building, so it is not in the stable list:
        # D1 occupies index 0 of the filtered list and D2 is the rollback target.
        d0 = make_deployment("d0", state=DeploymentState.BUILDING)
        d1 = make_deployment("d1")
        d2 = make_deployment("d2")
        d3 = make_deployment("d3", state=DeploymentState.ERROR)

        assert find_last_stable([d0, d1, d2, d3]) == d2

    def test_skips_preview_and_unready(self) -> None:
        deployments = [
            make_deployment("current"),
            make_deployment("preview", target=DeploymentTarget.PREVIEW),
            make_deployment("half-ready", ready_state=DeploymentState.BUILDING),
            make_deployment("canceled", state=DeploymentState.CANCELED),
            make_deployment("good"),
        ]
        result = find_last_stable(deployments)
        assert result is not None
        assert result.id == "good"

    def test_empty_list(self) -> None:
        assert find_last_stable([]) is None

    def test_single_stable_deployment(self) -> None:
        assert find_last_stable([make_deployment("only")]) is None

    def test_client_delegates(self) -> None:
        client = DeploymentDirectoryClient(token="t", project_id="p")
        deployments = [make_deployment("a"), make_deployment("b")]
        assert client.find_last_stable(deployments) == deployments[1]


class TestDeploymentIdFromUrl:
    def test_vercel_url(self) -> None:
        assert deployment_id_from_url("https://foosball-tracker-abc123.vercel.app") == "abc123"

    def test_vercel_url_with_path(self) -> None:
        assert deployment_id_from_url("https://my-app-x9y8.vercel.app/api/health") == "x9y8"

    def test_custom_domain(self) -> None:
        assert deployment_id_from_url("https://app.example.com") is None


class TestClientConfiguration:
    def test_missing_token_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="VERCEL_TOKEN"):
            DeploymentDirectoryClient(token="")

    def test_from_settings(self) -> None:
        settings = Settings(
            vercel_token="tok",
            vercel_project_id="prj",
            vercel_team_id="team",
            vercel_api_url="https://api.vercel.test/",
            max_retries=5,
        )
        client = DeploymentDirectoryClient.from_settings(settings)
        assert client.project_id == "prj"
        assert client.team_id == "team"
        assert client.api_url == "https://api.vercel.test"
        assert client.max_retries == 5

    def test_max_retries_floor(self) -> None:
        assert DeploymentDirectoryClient(token="t", max_retries=0).max_retries == 1
