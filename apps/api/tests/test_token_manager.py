import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ci_monitor.errors import AuthError, CredentialError
from ci_monitor.services.github.token_manager import TokenManager, TokenState
from ci_monitor.services.github.types import BearerToken

MARGIN = timedelta(minutes=5)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMinter:
    def __init__(self, clock: FakeClock, *, lifetime: timedelta = timedelta(hours=1)) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def mint(self) -> BearerToken:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_with is not None:
                raise self.fail_with
            return BearerToken(value=f"token-{self.calls}", expires_at=self.clock() + self.lifetime)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_first_access_mints_and_caches_token() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    manager = TokenManager(minter, safety_margin=MARGIN, clock=clock)
    assert manager.state is TokenState.UNINITIALIZED

    first = await manager.get_valid_token()
    second = await manager.get_valid_token()

    assert first == second == "token-1"
    assert minter.calls == 1
    assert manager.state is TokenState.VALID
    assert manager.renewal_scheduled
    await manager.aclose()


@pytest.mark.asyncio
async def test_concurrent_callers_share_a_single_renewal() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    minter.gate = asyncio.Event()
    manager = TokenManager(minter, safety_margin=MARGIN, clock=clock)

    callers = [asyncio.create_task(manager.get_valid_token()) for _ in range(5)]
    for _ in range(3):
        await asyncio.sleep(0)
    assert manager.state is TokenState.MINTING
    assert minter.calls == 1
    minter.gate.set()
    tokens = await asyncio.gather(*callers)

    assert tokens == ["token-1"] * 5
    assert minter.calls == 1
    assert minter.max_active == 1
    await manager.aclose()


@pytest.mark.asyncio
async def test_token_inside_safety_margin_is_renewed_before_return() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    manager = TokenManager(minter, safety_margin=MARGIN, clock=clock)

    assert await manager.get_valid_token() == "token-1"
    clock.advance(minutes=54)
    assert await manager.get_valid_token() == "token-1"

    clock.advance(minutes=2)
    token = await manager.get_valid_token()

    assert token == "token-2"
    assert manager.expires_at is not None
    assert manager.expires_at - clock() >= MARGIN
    await manager.aclose()


@pytest.mark.asyncio
async def test_minted_token_shorter_than_margin_is_never_returned() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock, lifetime=timedelta(minutes=3))
    manager = TokenManager(minter, safety_margin=MARGIN, clock=clock)

    with pytest.raises(AuthError, match="safety margin"):
        await manager.get_valid_token()

    assert manager.state is TokenState.INVALID
    await manager.aclose()


@pytest.mark.asyncio
async def test_failed_renewal_surfaces_auth_error_and_schedules_retry() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    minter.fail_with = CredentialError("installation suspended")
    manager = TokenManager(
        minter,
        safety_margin=MARGIN,
        retry_delay=timedelta(seconds=30),
        clock=clock,
    )

    with pytest.raises(AuthError, match="installation suspended"):
        await manager.get_valid_token()

    assert manager.state is TokenState.INVALID
    assert manager.renewal_scheduled

    with pytest.raises(AuthError):
        await manager.get_valid_token()
    assert minter.calls == 1

    minter.fail_with = None
    await manager.start()

    assert manager.state is TokenState.VALID
    assert await manager.get_valid_token() == "token-2"
    await manager.aclose()


@pytest.mark.asyncio
async def test_scheduled_retry_recovers_from_invalid_state() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    minter.fail_with = CredentialError("temporary outage")
    manager = TokenManager(
        minter,
        safety_margin=MARGIN,
        retry_delay=timedelta(milliseconds=10),
        clock=clock,
    )

    with pytest.raises(AuthError):
        await manager.start()
    minter.fail_with = None
    await asyncio.sleep(0.1)

    assert minter.calls == 2
    assert manager.state is TokenState.VALID
    assert await manager.get_valid_token() == "token-2"
    await manager.aclose()


@pytest.mark.asyncio
async def test_scheduled_renewal_replaces_token_before_expiry() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    manager = TokenManager(
        minter,
        safety_margin=MARGIN,
        renew_after=timedelta(milliseconds=10),
        clock=clock,
    )

    await manager.start()
    await asyncio.sleep(0.1)
    await manager.aclose()

    assert minter.calls >= 2
    assert minter.max_active == 1
    assert manager.state is TokenState.VALID


@pytest.mark.asyncio
async def test_force_renew_replaces_rejected_token_once() -> None:
    clock = FakeClock()
    minter = FakeMinter(clock)
    manager = TokenManager(minter, safety_margin=MARGIN, clock=clock)

    rejected = await manager.get_valid_token()
    renewed = await manager.force_renew(rejected)
    again = await manager.force_renew(rejected)

    assert rejected == "token-1"
    assert renewed == again == "token-2"
    assert minter.calls == 2
    await manager.aclose()
