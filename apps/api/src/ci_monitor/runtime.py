from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import httpx
import structlog

from ci_monitor.config import Settings
from ci_monitor.errors import AuthError, CredentialError
from ci_monitor.services.github.app_auth import GitHubAppTokenMinter, sign_app_jwt, utcnow
from ci_monitor.services.github.client import GitHubRunProvider, RunProvider
from ci_monitor.services.github.credentials import DirectorySecretStore, SecretStore, load_credentials
from ci_monitor.services.github.token_manager import TokenManager
from ci_monitor.services.live.engine import RunMonitor
from ci_monitor.services.live.registry import ConnectionRegistry

logger = structlog.get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"


@dataclass
class MonitorRuntime:
    """Everything the HTTP layer talks to.

    Without usable credentials only the registry exists: subscribers can still
    connect and receive `connected`/`error` events.
    """

    settings: Settings
    registry: ConnectionRegistry
    http_client: httpx.AsyncClient | None = None
    tokens: TokenManager | None = None
    provider: RunProvider | None = None
    monitor: RunMonitor | None = None

    @property
    def available(self) -> bool:
        return self.provider is not None and self.monitor is not None

    async def start(self) -> None:
        if self.tokens is None:
            return
        try:
            await self.tokens.start()
        except AuthError as exc:
            # the manager keeps retrying on its own schedule
            logger.error("initial_token_mint_failed", error=str(exc))

    async def aclose(self) -> None:
        if self.monitor is not None:
            await self.monitor.aclose()
        if self.tokens is not None:
            await self.tokens.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_runtime(settings: Settings, *, secret_store: SecretStore | None = None) -> MonitorRuntime:
    registry = ConnectionRegistry(send_timeout_seconds=settings.send_timeout_seconds)

    if secret_store is None and settings.secrets_dir:
        secret_store = DirectorySecretStore(Path(settings.secrets_dir))

    try:
        credentials = load_credentials(settings, secret_store)
        # fail fast on a malformed key instead of on the first poll
        sign_app_jwt(app_id=credentials.app_id, private_key=credentials.signing_key, now=utcnow())
    except CredentialError as exc:
        logger.error("run_provider_disabled", error=str(exc))
        return MonitorRuntime(settings=settings, registry=registry)

    http_client = httpx.AsyncClient(
        timeout=settings.github_timeout_seconds,
        headers={
            "User-Agent": "ci-pipeline-monitor",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        },
    )
    minter = GitHubAppTokenMinter(
        app_id=credentials.app_id,
        installation_id=credentials.installation_id,
        private_key=credentials.signing_key,
        http_client=http_client,
        base_url=settings.github_api_url,
    )

    tokens = TokenManager(
        minter,
        safety_margin=timedelta(seconds=settings.token_safety_margin_seconds),
        renew_after=timedelta(seconds=settings.token_renew_after_seconds),
        retry_delay=timedelta(seconds=settings.token_retry_seconds),
    )
    provider = GitHubRunProvider(
        owner=credentials.owner,
        repo=credentials.repo,
        tokens=tokens,
        http_client=http_client,
        base_url=settings.github_api_url,
        status_path=settings.status_file_path,
        branch=settings.status_branch,
    )
    monitor = RunMonitor(
        provider,
        registry,
        poll_interval_seconds=settings.poll_interval_seconds,
        runs_page_size=settings.runs_page_size,
        discover_delay_seconds=settings.discover_delay_seconds,
    )
    return MonitorRuntime(
        settings=settings,
        registry=registry,
        http_client=http_client,
        tokens=tokens,
        provider=provider,
        monitor=monitor,
    )
