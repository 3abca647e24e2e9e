"""GitHub App authentication: signing-key JWT -> installation access token.

The app JWT is only ever used for the exchange call below; everything else
talks to the API with the installation token it returns.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import httpx
import jwt
import structlog

from ci_monitor.errors import CredentialError, ProviderError
from ci_monitor.services.github.types import BearerToken, parse_timestamp

logger = structlog.get_logger(__name__)

JWT_CLOCK_SKEW = timedelta(seconds=60)
JWT_LIFETIME = timedelta(seconds=600)
GITHUB_ACCEPT = "application/vnd.github+json"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sign_app_jwt(*, app_id: str, private_key: str, now: datetime) -> str:
    payload = {
        "iat": int((now - JWT_CLOCK_SKEW).timestamp()),
        "exp": int((now + JWT_LIFETIME).timestamp()),
        "iss": app_id,
    }
    try:
        return jwt.encode(payload, private_key, algorithm="RS256")
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise CredentialError(f"Invalid GitHub App private key: {exc}") from exc


class TokenMinter(Protocol):
    async def mint(self) -> BearerToken: ...


class GitHubAppTokenMinter:
    def __init__(
        self,
        *,
        app_id: str,
        installation_id: str,
        private_key: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.github.com",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._app_id = app_id
        self._installation_id = installation_id
        self._private_key = private_key
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    def build_app_jwt(self) -> str:
        return sign_app_jwt(app_id=self._app_id, private_key=self._private_key, now=self._clock())

    async def mint(self) -> BearerToken:
        app_jwt = self.build_app_jwt()
        url = f"{self._base_url}/app/installations/{self._installation_id}/access_tokens"

        try:
            response = await self._http_client.post(
                url,
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    "Accept": GITHUB_ACCEPT,
                },
            )
        except httpx.HTTPError as exc:
            raise CredentialError(f"Installation token exchange failed: {exc}") from exc

        if response.status_code in {401, 403, 404}:
            raise CredentialError(
                f"GitHub rejected app {self._app_id} for installation "
                f"{self._installation_id} (status={response.status_code})"
            )
        if response.status_code >= 400:
            raise CredentialError(
                f"Installation token exchange failed (status={response.status_code})"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError("Installation token response is not JSON") from exc

        value = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            raise CredentialError("Installation token response is missing the token")
        try:
            expires_at = parse_timestamp(payload.get("expires_at"))
        except ProviderError as exc:
            raise CredentialError(str(exc)) from exc
        if expires_at is None:
            raise CredentialError("Installation token response is missing expires_at")

        logger.info(
            "installation_token_minted",
            installation_id=self._installation_id,
            expires_at=expires_at.isoformat(),
        )
        return BearerToken(value=value, expires_at=expires_at)
