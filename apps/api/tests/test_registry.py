import asyncio
from typing import Any

import pytest

from ci_monitor.services.live.events import ErrorEvent
from ci_monitor.services.live.registry import DROPPED_CLOSE_CODE, ConnectionRegistry


class RecordingConnection:
    def __init__(self, *, yield_on_send: bool = False) -> None:
        self.received: list[dict[str, Any]] = []
        self.yield_on_send = yield_on_send
        self.closed_with: int | None = None

    async def send_json(self, data: Any) -> None:
        if self.yield_on_send:
            await asyncio.sleep(0)
        self.received.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


class BrokenConnection(RecordingConnection):
    def __init__(self, *, close_fails: bool = False) -> None:
        super().__init__()
        self.attempts = 0
        self.close_fails = close_fails

    async def send_json(self, data: Any) -> None:
        self.attempts += 1
        raise ConnectionResetError("peer went away")

    async def close(self, code: int = 1000) -> None:
        if self.close_fails:
            raise RuntimeError("already closed")
        await super().close(code)


class StalledConnection(RecordingConnection):
    """First send hangs; later sends go through."""

    def __init__(self) -> None:
        super().__init__()
        self.stalled = False

    async def send_json(self, data: Any) -> None:
        if not self.stalled:
            self.stalled = True
            await asyncio.sleep(10)
        await super().send_json(data)


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection() -> None:
    registry = ConnectionRegistry()
    connections = [RecordingConnection() for _ in range(3)]
    for connection in connections:
        registry.add(connection)

    delivered = await registry.broadcast(ErrorEvent("boom"))

    assert delivered == 3
    for connection in connections:
        assert connection.received == [{"type": "error", "message": "boom"}]


@pytest.mark.asyncio
async def test_failed_send_drops_connection_and_others_still_receive() -> None:
    registry = ConnectionRegistry()
    first = RecordingConnection()
    broken = BrokenConnection()
    last = RecordingConnection()
    for connection in (first, broken, last):
        registry.add(connection)

    delivered = await registry.broadcast(ErrorEvent("one"))
    await registry.broadcast(ErrorEvent("two"))

    assert delivered == 2
    assert broken not in registry
    assert broken.attempts == 1
    assert broken.closed_with == DROPPED_CLOSE_CODE
    assert len(registry) == 2
    assert [item["message"] for item in first.received] == ["one", "two"]
    assert [item["message"] for item in last.received] == ["one", "two"]


@pytest.mark.asyncio
async def test_concurrent_broadcasts_keep_per_connection_order() -> None:
    registry = ConnectionRegistry()
    connections = [RecordingConnection(yield_on_send=True) for _ in range(3)]
    for connection in connections:
        registry.add(connection)

    await asyncio.gather(*(registry.broadcast(ErrorEvent(f"event-{index}")) for index in range(5)))

    expected = [f"event-{index}" for index in range(5)]
    for connection in connections:
        assert [item["message"] for item in connection.received] == expected


@pytest.mark.asyncio
async def test_removing_during_broadcast_does_not_disturb_iteration() -> None:
    registry = ConnectionRegistry()
    survivor = RecordingConnection()

    class SelfRemovingConnection(RecordingConnection):
        async def send_json(self, data: Any) -> None:
            await super().send_json(data)
            registry.remove(self)

    leaving = SelfRemovingConnection()
    registry.add(leaving)
    registry.add(survivor)

    delivered = await registry.broadcast(ErrorEvent("bye"))

    assert delivered == 2
    assert leaving not in registry
    assert survivor in registry
    assert survivor.received == [{"type": "error", "message": "bye"}]


@pytest.mark.asyncio
async def test_stalled_send_times_out_and_connection_is_dropped() -> None:
    registry = ConnectionRegistry(send_timeout_seconds=0.05)
    stalled = StalledConnection()
    healthy = RecordingConnection()
    registry.add(stalled)
    registry.add(healthy)

    delivered = await registry.broadcast(ErrorEvent("late"))

    assert delivered == 1
    assert stalled not in registry
    assert healthy.received == [{"type": "error", "message": "late"}]


@pytest.mark.asyncio
async def test_direct_send_targets_one_connection() -> None:
    registry = ConnectionRegistry()
    target = RecordingConnection()
    bystander = RecordingConnection()
    registry.add(target)
    registry.add(bystander)

    assert await registry.send(target, ErrorEvent("only you"))
    assert target.received == [{"type": "error", "message": "only you"}]
    assert bystander.received == []


def test_remove_unknown_connection_is_a_no_op() -> None:
    registry = ConnectionRegistry()

    registry.remove(RecordingConnection())

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_dropped_connection_is_closed_and_gets_nothing_further() -> None:
    registry = ConnectionRegistry(send_timeout_seconds=0.05)
    stalled = StalledConnection()
    healthy = RecordingConnection()
    registry.add(stalled)
    registry.add(healthy)

    await registry.broadcast(ErrorEvent("first"))
    await registry.broadcast(ErrorEvent("second"))

    assert stalled.closed_with == DROPPED_CLOSE_CODE
    assert stalled.received == []
    assert healthy.closed_with is None
    assert [item["message"] for item in healthy.received] == ["first", "second"]


@pytest.mark.asyncio
async def test_failed_close_of_dropped_connection_is_tolerated() -> None:
    registry = ConnectionRegistry()
    broken = BrokenConnection(close_fails=True)
    healthy = RecordingConnection()
    registry.add(broken)
    registry.add(healthy)

    delivered = await registry.broadcast(ErrorEvent("still sent"))

    assert delivered == 1
    assert broken not in registry
    assert healthy.received == [{"type": "error", "message": "still sent"}]
