"""Vercel REST client implementing the DeploymentPlatform protocol."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Optional

import httpx

from issueflow.core.config import DeploymentConfig
from issueflow.core.exceptions import ConfigError, DeploymentError
from issueflow.core.models import Deployment, DeploymentState, HealthReport

logger = logging.getLogger("issueflow.integrations.vercel")

_FAILED_STATES = {DeploymentState.ERROR, DeploymentState.CANCELED}


class VercelClient:
    """Creates deployments from git branches and polls them until ready."""

    def __init__(
        self,
        config: Optional[DeploymentConfig] = None,
        token: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or DeploymentConfig()
        self.token = token or os.getenv("VERCEL_TOKEN", "")
        if not self.config.project_id:
            raise ConfigError("deployment.project_id must be configured")
        self._sleep = sleep
        self._clock = clock
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.api_url.rstrip("/"),
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=httpx.Timeout(30),
            )
        return self._client

    def create_deployment(self, branch_name: str, target: str) -> Deployment:
        payload = {
            "name": self.config.project_id,
            "project": self.config.project_id,
            "gitSource": {"type": "github", "ref": branch_name},
            "target": target,
        }
        data = self._request("POST", "/v13/deployments", json=payload).json()
        deployment = _to_deployment(data)
        logger.info("Created %s deployment %s for %s", target, deployment.id, branch_name)
        return deployment

    def get_deployment(self, deployment_id: str) -> Deployment:
        return _to_deployment(self._request("GET", f"/v13/deployments/{deployment_id}").json())

    def wait_for_deployment(
        self, deployment_id: str, timeout_seconds: float = 600, poll_interval_seconds: float = 5,
    ) -> Deployment:
        """Poll until READY; raise DeploymentError on ERROR, CANCELED or timeout."""
        deadline = self._clock() + timeout_seconds
        while True:
            deployment = self.get_deployment(deployment_id)
            if deployment.state == DeploymentState.READY:
                logger.info("Deployment %s ready at %s", deployment_id, deployment.url)
                return deployment
            if deployment.state in _FAILED_STATES:
                raise DeploymentError(f"Deployment {deployment_id} failed with state: {deployment.state.value}")
            if self._clock() >= deadline:
                raise DeploymentError(f"Deployment {deployment_id} timed out after {timeout_seconds:.0f}s")
            logger.debug("Deployment %s is %s, waiting", deployment_id, deployment.state.value)
            self._sleep(poll_interval_seconds)

    def get_deployment_logs(self, deployment_id: str) -> list[str]:
        data = self._request("GET", f"/v2/deployments/{deployment_id}/events").json()
        return [
            item.get("text") or item.get("message") or ""
            for item in data
            if isinstance(item, dict)
        ]

    def check_health(self, url: str) -> HealthReport:
        """GET the deployment; never raises, an unreachable site is unhealthy."""
        target = url if url.startswith("http") else f"https://{url}"
        target = target.rstrip("/") + self.config.health_path
        start = time.monotonic()
        try:
            resp = self.client.get(target, headers={"User-Agent": "issueflow-health-check"})
        except httpx.HTTPError as e:
            logger.error("Health check of %s failed: %s", target, e)
            return HealthReport(healthy=False, error=str(e))
        elapsed_ms = int((time.monotonic() - start) * 1000)
        healthy = resp.is_success
        logger.info("Health check %s: %d in %dms", target, resp.status_code, elapsed_ms)
        return HealthReport(
            healthy=healthy,
            status_code=resp.status_code,
            response_time_ms=elapsed_ms,
            error=None if healthy else f"HTTP {resp.status_code}",
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        params = dict(kwargs.pop("params", {}) or {})
        if self.config.team_id:
            params["teamId"] = self.config.team_id
        try:
            resp = self.client.request(method, path, params=params or None, **kwargs)
        except httpx.HTTPError as e:
            raise DeploymentError(f"Vercel {method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise DeploymentError(f"Vercel API error: {resp.status_code} - {resp.text[:300]}")
        return resp

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def _to_deployment(data: dict[str, Any]) -> Deployment:
    raw_state = data.get("readyState") or data.get("status") or DeploymentState.QUEUED.value
    try:
        state = DeploymentState(raw_state)
    except ValueError:
        logger.warning("Unknown deployment state %r, treating as BUILDING", raw_state)
        state = DeploymentState.BUILDING
    url = data.get("url", "")
    if url and not url.startswith("http"):
        url = f"https://{url}"
    return Deployment(id=data["id"], url=url, state=state)
