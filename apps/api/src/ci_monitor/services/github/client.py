from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx
import structlog

from ci_monitor.errors import AuthError, MonitorError, ProviderError, TransportError
from ci_monitor.services.github.app_auth import GITHUB_ACCEPT, utcnow
from ci_monitor.services.github.types import (
    CommitResult,
    JobRecord,
    ProviderResult,
    RunRecord,
    format_timestamp,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 100


class TokenSource(Protocol):
    async def get_valid_token(self) -> str: ...

    async def force_renew(self, rejected: str | None = None) -> str: ...


class RunProvider(Protocol):
    async def trigger_run(self, message: str) -> ProviderResult[CommitResult]: ...

    async def list_runs(self, limit: int = 10) -> ProviderResult[list[RunRecord]]: ...

    async def list_jobs(self, run_id: int) -> ProviderResult[list[JobRecord]]: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return ""


def _is_rate_limited(response: httpx.Response) -> bool:
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


class GitHubRunProvider:
    def __init__(
        self,
        *,
        owner: str,
        repo: str,
        tokens: TokenSource,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.github.com",
        status_path: str = "ci-status.txt",
        branch: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._owner = owner
        self._repo = repo
        self._tokens = tokens
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._status_path = status_path.lstrip("/")
        self._branch = branch
        self._clock = clock

    @property
    def repository(self) -> str:
        return f"{self._owner}/{self._repo}"

    async def trigger_run(self, message: str) -> ProviderResult[CommitResult]:
        return await self.execute_with_retry(
            lambda token: self._write_status_file(token, message),
            name="trigger_run",
        )

    async def list_runs(self, limit: int = 10) -> ProviderResult[list[RunRecord]]:
        page_size = max(1, min(limit, MAX_PAGE_SIZE))
        return await self.execute_with_retry(
            lambda token: self._fetch_runs(token, page_size),
            name="list_runs",
        )

    async def list_jobs(self, run_id: int) -> ProviderResult[list[JobRecord]]:
        return await self.execute_with_retry(
            lambda token: self._fetch_jobs(token, run_id),
            name="list_jobs",
        )

    async def execute_with_retry(
        self,
        operation: Callable[[str], Awaitable[T]],
        *,
        name: str,
    ) -> ProviderResult[T]:
        try:
            token = await self._tokens.get_valid_token()
        except AuthError as exc:
            logger.warning("provider_token_unavailable", operation=name, error=str(exc))
            return ProviderResult.failed(str(exc))

        try:
            return ProviderResult.ok(await operation(token))
        except AuthError as exc:
            logger.warning("provider_auth_rejected", operation=name, error=str(exc))
        except MonitorError as exc:
            logger.warning("provider_call_failed", operation=name, error=str(exc))
            return ProviderResult.failed(str(exc))

        # retried writes can duplicate a commit when the first attempt landed unseen
        try:
            token = await self._tokens.force_renew(token)
            return ProviderResult.ok(await operation(token))
        except MonitorError as exc:
            logger.warning("provider_retry_failed", operation=name, error=str(exc))
            return ProviderResult.failed(str(exc))

    async def _request(
        self,
        token: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}{path}",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": GITHUB_ACCEPT,
                },
                params=params,
                json=json,
            )
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if allow_not_found and status == 404:
            return None
        if status in {401, 403} and not _is_rate_limited(response):
            raise AuthError(f"{method} {path} rejected (status={status}): {_error_message(response)}")
        if status >= 400:
            raise ProviderError(
                f"{method} {path} failed (status={status}): {_error_message(response)}",
                status_code=status,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"{method} {path} returned invalid JSON") from exc

    async def _write_status_file(self, token: str, message: str) -> CommitResult:
        path = f"/repos/{self._owner}/{self._repo}/contents/{self._status_path}"
        params = {"ref": self._branch} if self._branch else None

        existing = await self._request(token, "GET", path, params=params, allow_not_found=True)
        existing_sha = existing.get("sha") if isinstance(existing, dict) else None

        content = (
            f"CI/CD Pipeline triggered at: {format_timestamp(self._clock())}\n"
            f"Message: {message}\n"
        )
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if existing_sha:
            body["sha"] = existing_sha
        if self._branch:
            body["branch"] = self._branch

        payload = await self._request(token, "PUT", path, json=body)
        commit = payload.get("commit") if isinstance(payload, dict) else None
        sha = commit.get("sha") if isinstance(commit, dict) else None
        if not isinstance(sha, str) or not sha:
            raise ProviderError("Invalid contents payload: missing commit sha")

        logger.info("status_file_committed", repository=self.repository, sha=sha)
        return CommitResult(sha=sha, message=message, url=commit.get("html_url"))

    async def _fetch_runs(self, token: str, page_size: int) -> list[RunRecord]:
        payload = await self._request(
            token,
            "GET",
            f"/repos/{self._owner}/{self._repo}/actions/runs",
            params={"per_page": page_size},
        )
        runs = payload.get("workflow_runs") if isinstance(payload, dict) else None
        if not isinstance(runs, list):
            raise ProviderError("Invalid runs payload: missing workflow_runs")
        try:
            return [RunRecord.from_api(run) for run in runs[:page_size]]
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"Invalid runs payload: {exc}") from exc

    async def _fetch_jobs(self, token: str, run_id: int) -> list[JobRecord]:
        payload = await self._request(
            token,
            "GET",
            f"/repos/{self._owner}/{self._repo}/actions/runs/{run_id}/jobs",
            params={"per_page": MAX_PAGE_SIZE},
        )
        jobs = payload.get("jobs") if isinstance(payload, dict) else None
        if not isinstance(jobs, list):
            raise ProviderError("Invalid jobs payload: missing jobs")
        try:
            return [JobRecord.from_api(job) for job in jobs]
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"Invalid jobs payload: {exc}") from exc
