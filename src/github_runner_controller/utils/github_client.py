"""
GitHub client wrapper for GitHub Runner Controller.

Thin, rate-limited wrapper around the GitHub Actions REST endpoints the
controller needs: registration tokens, queued jobs, runner presence and
runner removal. Failures are mapped onto the controller's error kinds so
callers can tell a retryable outage from a broken configuration.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..exceptions import PlatformAuthenticationError, TransientPlatformError, UnknownRepository
from ..models.runner import Credential, JobRequest, PlatformRunner, utcnow
from .security import RateLimiter, SecurityValidator

# GitHub registration tokens are valid for one hour
DEFAULT_TOKEN_TTL = timedelta(hours=1)


class GitHubPlatformClient:
    """
    Async GitHub Actions API client.

    One instance is shared by every component; the underlying
    ``httpx.AsyncClient`` is created lazily and closed by ``close()``.
    """

    def __init__(self,
                 api_url: str,
                 token: str,
                 request_timeout: float = 10.0,
                 tls_verify: bool = True,
                 max_requests_per_minute: int = 60,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 logger: Any = None) -> None:
        self.logger = (logger or structlog.get_logger()).bind(component="github_client")
        self.security_validator = SecurityValidator()
        self.rate_limiter = RateLimiter(max_requests=max_requests_per_minute, window_seconds=60)

        self.api_url = api_url.rstrip("/")
        self._token = token
        self.request_timeout = request_timeout
        self.tls_verify = tls_verify
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self.logger.info(
            "GitHub client initialized",
            api_url=self.api_url,
            tls_verify=self.tls_verify,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def issue_registration_token(self, repository: str, runner_name: str) -> Credential:
        """Request a runner registration token scoped to one repository."""
        response = await self._request("POST", f"/repos/{repository}/actions/runners/registration-token", repository)
        if response.status_code != 201:
            raise TransientPlatformError(
                f"Unexpected status {response.status_code} issuing registration token for {repository}"
            )

        data = response.json()
        token = data.get("token")
        if not token:
            raise TransientPlatformError("Registration token response missing token")

        issued_at = utcnow()
        expires_at = self._parse_timestamp(data.get("expires_at")) or issued_at + DEFAULT_TOKEN_TTL

        self.logger.info(
            "Registration token issued",
            repository=repository,
            runner_name=runner_name,
            expires_at=expires_at.isoformat(),
        )
        return Credential(
            value=token,
            issued_at=issued_at,
            expires_at=expires_at,
            repository=repository,
            runner_name=runner_name,
        )

    async def list_queued_jobs(self, repository: str) -> List[JobRequest]:
        """Jobs waiting for a runner, gathered from queued workflow runs."""
        response = await self._request(
            "GET", f"/repos/{repository}/actions/runs", repository, params={"status": "queued", "per_page": 100}
        )
        self._expect_ok(response, "listing queued runs")

        jobs: List[JobRequest] = []
        for run in response.json().get("workflow_runs", []):
            run_id = run.get("id")
            if run_id is None:
                continue
            jobs_response = await self._request(
                "GET", f"/repos/{repository}/actions/runs/{run_id}/jobs", repository, allow_not_found=True
            )
            if jobs_response.status_code == 404:
                # Run finished and was cleaned up since the listing
                continue
            self._expect_ok(jobs_response, "listing run jobs")

            for job in jobs_response.json().get("jobs", []):
                if job.get("status") != "queued":
                    continue
                jobs.append(JobRequest(
                    job_id=str(job["id"]),
                    repository=repository,
                    labels=job.get("labels", []),
                    name=job.get("name"),
                    job_type=run.get("event"),
                    queued_at=self._parse_timestamp(job.get("created_at")) or utcnow(),
                ))

        self.logger.debug("Retrieved queued jobs", repository=repository, count=len(jobs))
        return jobs

    async def list_runners(self, repository: str) -> List[PlatformRunner]:
        response = await self._request(
            "GET", f"/repos/{repository}/actions/runners", repository, params={"per_page": 100}
        )
        self._expect_ok(response, "listing runners")

        return [
            PlatformRunner(
                id=runner["id"],
                name=runner["name"],
                status=runner.get("status", "offline"),
                busy=runner.get("busy", False),
                labels=[label.get("name", "") for label in runner.get("labels", [])],
            )
            for runner in response.json().get("runners", [])
        ]

    async def find_runner(self, repository: str, runner_name: str) -> Optional[PlatformRunner]:
        for runner in await self.list_runners(repository):
            if runner.name == runner_name:
                return runner
        return None

    async def remove_runner(self, repository: str, runner_name: str) -> bool:
        """
        Deregister a runner by name.

        Returns True when the runner is gone afterwards, including when it
        was never registered or its repository no longer exists.
        """
        try:
            runner = await self.find_runner(repository, runner_name)
        except UnknownRepository:
            self.logger.warning("Repository gone, nothing to deregister", repository=repository, runner_name=runner_name)
            return True
        if runner is None:
            return True

        response = await self._request(
            "DELETE", f"/repos/{repository}/actions/runners/{runner.id}", repository, allow_not_found=True
        )
        if response.status_code in (204, 404):  # 404 means already deleted
            self.logger.info("Runner deregistered", repository=repository, runner_name=runner_name)
            return True

        self.logger.warning(
            "Runner deregistration failed",
            repository=repository,
            runner_name=runner_name,
            status_code=response.status_code,
        )
        return False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": "GitHub-Runner-Controller/1.0.0",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "Authorization": f"Bearer {self._token}",
            }
            kwargs: Dict[str, Any] = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=httpx.Timeout(self.request_timeout),
                headers=headers,
                verify=self.tls_verify,
                follow_redirects=False,
                **kwargs,
            )
        return self._client

    async def _request(self,
                       method: str,
                       endpoint: str,
                       repository: str,
                       params: Optional[Dict[str, Any]] = None,
                       json: Optional[Dict[str, Any]] = None,
                       allow_not_found: bool = False) -> httpx.Response:
        """
        Make a rate-limited API request.

        Raises:
            TransientPlatformError: rate limited (locally or by GitHub),
                timed out, unreachable, or a 5xx response
            PlatformAuthenticationError: 401 or 403 without rate-limit headers
            UnknownRepository: 404, unless ``allow_not_found`` is set
        """
        endpoint = self.security_validator.sanitize_input(endpoint, max_length=500)
        if not self.rate_limiter.allow_request("api_call"):
            raise TransientPlatformError("GitHub API client-side rate limit reached")

        try:
            response = await self._get_client().request(method, endpoint, params=params, json=json)
        except httpx.TimeoutException as e:
            self.logger.warning("GitHub API request timeout", method=method, endpoint=endpoint)
            raise TransientPlatformError(f"Request timeout: {method} {endpoint}") from e
        except httpx.TransportError as e:
            self.logger.warning("GitHub API transport error", method=method, endpoint=endpoint, error=str(e))
            raise TransientPlatformError(f"Transport error: {e}") from e

        self.logger.debug(
            "GitHub API request",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
        )

        status = response.status_code
        if status == 429 or status >= 500 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise TransientPlatformError(f"GitHub returned {status} for {method} {endpoint}")
        if status in (401, 403):
            self.logger.error("GitHub rejected controller credentials", endpoint=endpoint, status_code=status)
            raise PlatformAuthenticationError(f"GitHub returned {status} for {method} {endpoint}")
        if status == 404 and not allow_not_found:
            self.logger.error("GitHub does not know the repository", repository=repository, endpoint=endpoint)
            raise UnknownRepository(repository)
        return response

    def _expect_ok(self, response: httpx.Response, action: str) -> None:
        if response.status_code != 200:
            raise TransientPlatformError(f"Unexpected status {response.status_code} {action}")

    @staticmethod
    def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
