from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from fleetpulse._mqtt import ChannelMessage
from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FatalAuthError, FleetTransportError, TransientChannelError
from fleetpulse.state.events import ChangeEvent
from fleetpulse.state.snapshot import FleetStore
from fleetpulse.subscription import SubscriptionManager, SubscriptionState


def _row(vehicle_id: str, ts: str = "2026-01-01T10:00:00Z", **extra: Any) -> dict[str, Any]:
    row = {"id": vehicle_id, "route_no": "15", "lat": 12.87, "lng": 74.84, "is_active": True, "updated_at": ts}
    row.update(extra)
    return row


@dataclass
class FakeChannel:
    log: list[str] = field(default_factory=list)
    fail_open: Exception | None = None
    opened: int = 0
    closed: int = 0
    on_message: Callable[[ChannelMessage], None] | None = None
    on_drop: Callable[[Exception], None] | None = None

    async def open(
        self,
        on_message: Callable[[ChannelMessage], None],
        on_drop: Callable[[Exception], None],
    ) -> None:
        self.opened += 1
        self.log.append("open")
        if self.fail_open is not None:
            raise self.fail_open
        self.on_message = on_message
        self.on_drop = on_drop

    async def close(self) -> None:
        self.closed += 1

    def emit(self, payload: dict[str, Any]) -> None:
        assert self.on_message is not None
        self.on_message(ChannelMessage(topic="fleet/live_fleet/changes", payload=payload, received_at=0.0))

    def drop(self) -> None:
        assert self.on_drop is not None
        self.on_drop(TransientChannelError("broker went away"))


@dataclass
class FakeTransport:
    log: list[str] = field(default_factory=list)
    reads: list[list[dict[str, Any]] | Exception] = field(default_factory=list)
    during_fetch: Callable[[], None] | None = None
    published: list[ChangeEvent] = field(default_factory=list)

    async def fetch_rows(self) -> list[dict[str, Any]]:
        self.log.append("fetch")
        if self.during_fetch is not None:
            self.during_fetch()
        result = self.reads.pop(0) if len(self.reads) > 1 else self.reads[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def publish_event(self, event: ChangeEvent) -> None:
        self.published.append(event)


class _FixedRandom:
    def __init__(self, value: float) -> None:
        self._value = value

    def random(self) -> float:
        return self._value


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


def _manager(
    transport: FakeTransport,
    channel: FakeChannel,
    delays: list[float] | None = None,
    **config: Any,
) -> SubscriptionManager:
    async def _fast_sleep(delay: float) -> None:
        if delays is not None:
            delays.append(delay)
        await asyncio.sleep(0)

    return SubscriptionManager(FleetConfig(**config), transport=transport, channel=channel, sleep=_fast_sleep)


@pytest.mark.asyncio
async def test_subscribes_before_bulk_read_and_reaches_synced() -> None:
    log: list[str] = []
    transport = FakeTransport(log=log, reads=[[_row("b1"), _row("b2")]])
    channel = FakeChannel(log=log)
    seen: list[FleetStore] = []

    async with _manager(transport, channel) as manager:
        manager.add_listener(seen.append)
        assert await manager.wait_synced(1.0) is True

        assert log == ["open", "fetch"]
        assert manager.state == SubscriptionState.SYNCED
        assert sorted(snap.id for snap in manager.snapshot) == ["b1", "b2"]
        assert manager.is_stale is False
        assert len(seen[-1]) == 2

    assert manager.state == SubscriptionState.DISCONNECTED
    assert channel.closed >= 1


@pytest.mark.asyncio
async def test_live_events_are_folded_and_published_to_listeners() -> None:
    transport = FakeTransport(reads=[[_row("b1")]])
    channel = FakeChannel()
    seen: list[FleetStore] = []

    async with _manager(transport, channel) as manager:
        await manager.wait_synced(1.0)
        manager.add_listener(seen.append)

        channel.emit({"eventType": "UPDATE", "new": _row("b1", "2026-01-01T10:00:05Z", lat=12.9)})
        channel.emit({"eventType": "DELETE", "old": {"id": "b1"}, "commit_timestamp": "2026-01-01T10:00:10Z"})
        await _until(lambda: "b1" not in manager.snapshot)

    assert len(seen) == 2
    first = seen[0].get("b1")
    assert first is not None
    assert first.latitude == 12.9


@pytest.mark.asyncio
async def test_events_committed_during_bulk_read_are_not_lost() -> None:
    transport = FakeTransport(reads=[[_row("b1")]])
    channel = FakeChannel()

    def _concurrent_writes() -> None:
        # Newer than the row the bulk read returns: must win.
        channel.emit({"eventType": "UPDATE", "new": _row("b1", "2026-01-01T10:01:00Z", last_stop="Market")})
        # Already reflected in the bulk read: must be a no-op.
        channel.emit({"eventType": "UPDATE", "new": _row("b1", "2026-01-01T09:00:00Z", last_stop="Depot")})
        channel.emit({"eventType": "INSERT", "new": _row("b9", "2026-01-01T10:01:00Z")})

    transport.during_fetch = _concurrent_writes

    async with _manager(transport, channel) as manager:
        await manager.wait_synced(1.0)
        await _until(lambda: "b9" in manager.snapshot)

        b1 = manager.snapshot.get("b1")
        assert b1 is not None
        assert b1.last_stop_label == "Market"


@pytest.mark.asyncio
async def test_malformed_notification_is_dropped_without_breaking_the_pump() -> None:
    transport = FakeTransport(reads=[[]])
    channel = FakeChannel()

    async with _manager(transport, channel) as manager:
        await manager.wait_synced(1.0)

        channel.emit({"eventType": "BOGUS", "new": {"id": "x"}})
        channel.emit({"eventType": "INSERT", "new": _row("b1", lat=200.0)})
        channel.emit({"eventType": "INSERT", "new": _row("b2")})
        await _until(lambda: "b2" in manager.snapshot)

        assert "b1" not in manager.snapshot
        assert manager.store.rejected_count == 1
        assert manager.state == SubscriptionState.SYNCED


@pytest.mark.asyncio
async def test_drop_degrades_then_reconnects_and_reseeds() -> None:
    transport = FakeTransport(reads=[[_row("b1"), _row("b2")], [_row("b2")]])
    channel = FakeChannel()
    delays: list[float] = []
    transitions: list[tuple[SubscriptionState, bool]] = []

    async with _manager(transport, channel, delays) as manager:
        manager.add_state_listener(lambda state: transitions.append((state, manager.is_stale)))
        await manager.wait_synced(1.0)

        channel.drop()
        await _until(lambda: channel.opened == 2 and manager.state == SubscriptionState.SYNCED)

        assert [snap.id for snap in manager.snapshot] == ["b2"]

    assert (SubscriptionState.DEGRADED, True) in transitions
    assert transitions[-2:] == [(SubscriptionState.SYNCED, False), (SubscriptionState.DISCONNECTED, True)]
    assert len(delays) == 1


@pytest.mark.asyncio
async def test_failed_bulk_read_is_retried() -> None:
    transport = FakeTransport(reads=[FleetTransportError("HTTP 503", status_code=503), [_row("b1")]])
    channel = FakeChannel()
    delays: list[float] = []

    async with _manager(transport, channel, delays) as manager:
        assert await manager.wait_synced(1.0) is True
        assert "b1" in manager.snapshot
        assert isinstance(manager.last_error, FleetTransportError)

    # The channel opened for the failed attempt was released.
    assert channel.opened == 2
    assert channel.closed >= 2
    assert len(delays) == 1


@pytest.mark.asyncio
async def test_auth_failure_halts_without_retry() -> None:
    transport = FakeTransport(reads=[FatalAuthError("HTTP 401", endpoint="/live_fleet")])
    channel = FakeChannel()
    delays: list[float] = []
    manager = _manager(transport, channel, delays)

    await manager.start()
    assert await manager.wait_synced(1.0) is False

    assert manager.state == SubscriptionState.DISCONNECTED
    assert isinstance(manager.fatal_error, FatalAuthError)
    assert channel.opened == 1
    assert delays == []
    await manager.stop()


@pytest.mark.asyncio
async def test_broker_auth_rejection_halts() -> None:
    transport = FakeTransport(reads=[[]])
    channel = FakeChannel(fail_open=FatalAuthError("Broker rejected credentials"))
    manager = _manager(transport, channel)

    await manager.start()
    assert await manager.wait_synced(1.0) is False

    assert manager.fatal_error is not None
    assert transport.log == []
    await manager.stop()


@pytest.mark.asyncio
async def test_gives_up_after_max_reconnect_attempts() -> None:
    transport = FakeTransport(reads=[[]])
    channel = FakeChannel(fail_open=TransientChannelError("connection refused"))
    delays: list[float] = []
    manager = _manager(transport, channel, delays, reconnect_max_attempts=2)

    await manager.start()
    assert await manager.wait_synced(1.0) is False

    assert manager.state == SubscriptionState.DISCONNECTED
    assert manager.fatal_error is None
    assert isinstance(manager.last_error, TransientChannelError)
    assert "Giving up" in str(manager.last_error)
    assert channel.opened == 3
    assert len(delays) == 2
    await manager.stop()


@pytest.mark.asyncio
async def test_stop_while_waiting_to_reconnect_releases_everything() -> None:
    transport = FakeTransport(reads=[[]])
    channel = FakeChannel(fail_open=TransientChannelError("connection refused"))
    gate = asyncio.Event()

    async def _blocked_sleep(_delay: float) -> None:
        await gate.wait()

    manager = SubscriptionManager(FleetConfig(), transport=transport, channel=channel, sleep=_blocked_sleep)
    await manager.start()
    await _until(lambda: manager.state == SubscriptionState.DEGRADED)

    await manager.stop()

    assert manager.state == SubscriptionState.DISCONNECTED
    assert channel.opened == 1
    assert channel.closed >= 1


def test_backoff_delay_is_capped_and_jittered() -> None:
    config = FleetConfig(reconnect_initial_delay=1.0, reconnect_max_delay=8.0)
    low = SubscriptionManager(config, transport=FakeTransport(), channel=FakeChannel(), rng=_FixedRandom(0.0))  # type: ignore[arg-type]
    high = SubscriptionManager(config, transport=FakeTransport(), channel=FakeChannel(), rng=_FixedRandom(1.0))  # type: ignore[arg-type]

    assert [low.backoff_delay(n) for n in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0]
    assert [high.backoff_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]

    seeded = SubscriptionManager(config, transport=FakeTransport(), channel=FakeChannel(), rng=random.Random(7))
    for attempt in range(1, 10):
        cap = min(8.0, 2.0 ** (attempt - 1))
        assert cap / 2 <= seeded.backoff_delay(attempt) <= cap


@pytest.mark.asyncio
async def test_listener_errors_and_removal() -> None:
    transport = FakeTransport(reads=[[_row("b1")]])
    channel = FakeChannel()
    calls: list[int] = []

    def _broken(_store: FleetStore) -> None:
        raise RuntimeError("view bug")

    async with _manager(transport, channel) as manager:
        manager.add_listener(_broken)
        remove = manager.add_listener(lambda store: calls.append(len(store)))
        assert await manager.wait_synced(1.0) is True
        assert calls == [1]

        remove()
        remove()
        channel.emit({"eventType": "INSERT", "new": _row("b2")})
        await _until(lambda: "b2" in manager.snapshot)

    assert calls == [1]
