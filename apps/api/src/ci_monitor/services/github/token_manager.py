"""Owner of the installation token used for every Run Provider call.

States: uninitialized -> minting -> valid -> (renewing | invalid).
Renewal is single-flight: all callers awaiting a renewal share one task, and a
token is only handed out while it stays valid for at least the safety margin.
A renewal is scheduled a fixed time after each mint; a failed renewal leaves
the manager invalid until the scheduled retry (or an explicit start()).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import structlog

from ci_monitor.errors import AuthError
from ci_monitor.services.github.app_auth import TokenMinter, utcnow
from ci_monitor.services.github.types import BearerToken

logger = structlog.get_logger(__name__)


class TokenState(str, Enum):
    UNINITIALIZED = "uninitialized"
    MINTING = "minting"
    VALID = "valid"
    RENEWING = "renewing"
    INVALID = "invalid"


class TokenManager:
    def __init__(
        self,
        minter: TokenMinter,
        *,
        safety_margin: timedelta = timedelta(minutes=5),
        renew_after: timedelta = timedelta(minutes=50),
        retry_delay: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._minter = minter
        self._safety_margin = safety_margin
        self._renew_after = renew_after
        self._retry_delay = retry_delay
        self._clock = clock
        self._token: BearerToken | None = None
        self._state = TokenState.UNINITIALIZED
        self._last_error: str | None = None
        self._inflight: asyncio.Task[BearerToken] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def expires_at(self) -> datetime | None:
        token = self._token
        return token.expires_at if token is not None else None

    @property
    def renewal_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        """Mint eagerly; also the explicit way out of the invalid state."""
        self._closed = False
        await self._renew(reason="start")

    async def get_valid_token(self) -> str:
        if self._state is TokenState.INVALID and self._inflight is None:
            raise AuthError(f"Token unavailable: {self._last_error or 'renewal failed'}")

        token = self._token
        if token is not None and token.is_valid_for(self._safety_margin, self._clock()):
            return token.value

        reason = "expiring" if token is not None else "initial"
        token = await self._renew(reason=reason)
        return token.value

    async def force_renew(self, rejected: str | None = None) -> str:
        """Replace a token the provider rejected.

        When `rejected` no longer matches the current token, another caller
        already renewed it and the current one is returned as is.
        """
        current = self._token
        if (
            rejected is not None
            and current is not None
            and current.value != rejected
            and current.is_valid_for(self._safety_margin, self._clock())
        ):
            return current.value

        if self._inflight is None and current is not None:
            self._token = None
        token = await self._renew(reason="forced")
        return token.value

    async def aclose(self) -> None:
        self._closed = True
        for task in (self._timer, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        self._timer = None
        self._inflight = None

    async def _renew(self, *, reason: str) -> BearerToken:
        if self._inflight is None:
            task = asyncio.create_task(self._mint(reason))
            # failures are re-raised to awaiters; this only silences orphaned ones
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self._inflight = task
        return await asyncio.shield(self._inflight)

    async def _mint(self, reason: str) -> BearerToken:
        self._state = (
            TokenState.RENEWING if self._state is TokenState.VALID else TokenState.MINTING
        )
        logger.info("token_renewal_started", reason=reason, state=self._state.value)
        try:
            token = await self._minter.mint()
            if not token.is_valid_for(self._safety_margin, self._clock()):
                raise AuthError("minted token expires within the safety margin")
        except Exception as exc:
            self._token = None
            self._state = TokenState.INVALID
            self._last_error = str(exc)
            logger.error("token_renewal_failed", reason=reason, error=str(exc))
            self._schedule(self._retry_delay, reason="retry")
            if isinstance(exc, AuthError):
                raise
            raise AuthError(f"Token renewal failed: {exc}") from exc
        finally:
            self._inflight = None

        self._token = token
        self._state = TokenState.VALID
        self._last_error = None
        self._schedule(self._renew_after, reason="scheduled")
        logger.info("token_renewed", reason=reason, expires_at=token.expires_at.isoformat())
        return token

    def _schedule(self, delay: timedelta, *, reason: str) -> None:
        if self._closed:
            return
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._renew_later(delay, reason))

    async def _renew_later(self, delay: timedelta, reason: str) -> None:
        await asyncio.sleep(delay.total_seconds())
        self._timer = None
        try:
            await self._renew(reason=reason)
        except AuthError as exc:
            logger.warning("scheduled_token_renewal_failed", reason=reason, error=str(exc))
