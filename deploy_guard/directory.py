"""Thin client for the Vercel deployment directory API.

History listing degrades to an empty list on any failure so that monitoring
keeps working when the API is flaky.  Promotion failures are fatal and raise.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from deploy_guard.config import Settings
from deploy_guard.errors import ConfigurationError, PromotionFailed
from deploy_guard.models import DeploymentRecord
from deploy_guard.observability.metrics import DIRECTORY_REQUESTS_TOTAL
from deploy_guard.probe import USER_AGENT

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.vercel.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_HISTORY_LIMIT = 10
LIST_DEPLOYMENTS_PATH = "/v6/deployments"
PROMOTE_PATH = "/v13/deployments/{deployment_id}/promote"
RETRY_BACKOFF_SECONDS = (1.0, 2.0, 4.0)  # wait before each history retry, last value repeats


# --- Pure helpers ---


def find_last_stable(deployments: Sequence[DeploymentRecord]) -> DeploymentRecord | None:
    """Return the second most recent ready production deployment.

    The API lists newest first, and the newest stable entry is assumed to be
    the deployment being rolled back from, so index 1 of the stable list is
    the rollback target.
    """
    stable = [d for d in deployments if d.is_stable]
    return stable[1] if len(stable) > 1 else None


def deployment_id_from_url(url: str) -> str | None:
    """Extract the deployment id from a ``<project>-<id>.vercel.app`` URL.

    Returns None for custom domains, which need an API lookup to resolve.
    """
    hostname = urlparse(url).hostname or ""
    if not hostname.endswith(".vercel.app"):
        return None
    return hostname.split(".")[0].split("-")[-1] or None


# --- Client ---


class DeploymentDirectoryClient:
    """Lists and promotes deployments for one project."""

    def __init__(
        self,
        token: str,
        project_id: str = "",
        team_id: str = "",
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not token:
            raise ConfigurationError("VERCEL_TOKEN environment variable is required")
        self._token = token
        self.project_id = project_id
        self.team_id = team_id
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeploymentDirectoryClient":
        return cls(
            token=settings.vercel_token,
            project_id=settings.vercel_project_id,
            team_id=settings.vercel_team_id,
            api_url=settings.vercel_api_url,
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if self.team_id:
            headers["X-Vercel-Team-Id"] = self.team_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.request(method, f"{self.api_url}{path}", headers=self._headers(), params=params)

    async def _backoff(self, attempt: int) -> None:
        wait = RETRY_BACKOFF_SECONDS[min(attempt, len(RETRY_BACKOFF_SECONDS)) - 1]
        logger.debug("Retrying deployment history in %.0fs", wait)
        await self._sleep(wait)

    async def list_deployments(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[DeploymentRecord]:
        """Fetch recent deployments, newest first.

        Transport errors and 5xx responses are retried up to ``max_retries``
        attempts, waiting ``RETRY_BACKOFF_SECONDS`` between them.  Any failure
        that remains is logged and an empty list is returned, so callers cannot
        tell "API unreachable" from "no deployments".  A missing project id is a
        configuration error and raises.
        """
        if not self.project_id:
            raise ConfigurationError("VERCEL_PROJECT_ID is required for deployment history")

        params = {"projectId": self.project_id, "limit": str(limit)}
        response: httpx.Response | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._request("GET", LIST_DEPLOYMENTS_PATH, params=params)
            except httpx.HTTPError as e:
                logger.debug("Deployment history attempt %d/%d failed: %s", attempt, self.max_retries, e)
                response = None
                if attempt < self.max_retries:
                    await self._backoff(attempt)
                    continue
                logger.warning("Could not fetch deployment history: %s", str(e) or type(e).__name__)
                DIRECTORY_REQUESTS_TOTAL.labels(operation="list", status="error").inc()
                return []
            if response.status_code >= 500 and attempt < self.max_retries:
                logger.debug(
                    "Deployment history attempt %d/%d got HTTP %d", attempt, self.max_retries, response.status_code
                )
                await self._backoff(attempt)
                continue
            break

        if response is None or not response.is_success:
            status = response.status_code if response is not None else "no response"
            logger.warning("Could not fetch deployment history: HTTP %s", status)
            DIRECTORY_REQUESTS_TOTAL.labels(operation="list", status="error").inc()
            return []

        try:
            body: object = response.json()
        except ValueError:
            logger.warning("Could not fetch deployment history: response is not JSON")
            DIRECTORY_REQUESTS_TOTAL.labels(operation="list", status="error").inc()
            return []

        raw = body.get("deployments") if isinstance(body, dict) else None  # pyright: ignore[reportUnknownMemberType]
        if not isinstance(raw, list):
            logger.warning("Deployment history response has no 'deployments' list")
            DIRECTORY_REQUESTS_TOTAL.labels(operation="list", status="error").inc()
            return []

        deployments: list[DeploymentRecord] = []
        for entry in raw:  # pyright: ignore[reportUnknownVariableType]
            try:
                deployments.append(DeploymentRecord.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed deployment entry: %r", entry)

        DIRECTORY_REQUESTS_TOTAL.labels(operation="list", status="ok").inc()
        logger.info("Fetched %d deployment(s) for project %s", len(deployments), self.project_id)
        return deployments

    def find_last_stable(self, deployments: Sequence[DeploymentRecord]) -> DeploymentRecord | None:
        return find_last_stable(deployments)

    async def promote(self, deployment_id: str) -> DeploymentRecord:
        """Promote a deployment to the production alias.

        The response body is treated opaquely: any deployment fields it carries
        are used, otherwise the record only holds the promoted id.

        Raises:
            PromotionFailed: On a non-2xx response or a transport error.
        """
        logger.info("Promoting deployment %s to production", deployment_id)
        path = PROMOTE_PATH.format(deployment_id=deployment_id)
        try:
            response = await self._request("POST", path)
        except httpx.HTTPError as e:
            DIRECTORY_REQUESTS_TOTAL.labels(operation="promote", status="error").inc()
            cause = str(e) or type(e).__name__
            raise PromotionFailed(f"Failed to promote deployment: {cause}", body=cause) from e

        if not response.is_success:
            DIRECTORY_REQUESTS_TOTAL.labels(operation="promote", status="error").inc()
            raise PromotionFailed(
                f"Failed to promote deployment: HTTP {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        DIRECTORY_REQUESTS_TOTAL.labels(operation="promote", status="ok").inc()
        try:
            body: object = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            try:
                payload: dict[str, object] = {"id": deployment_id, **body}  # pyright: ignore[reportUnknownArgumentType]
                return DeploymentRecord.model_validate(payload)
            except ValidationError:
                logger.debug("Promotion response for %s is not a deployment record", deployment_id)
        return DeploymentRecord(id=deployment_id)
