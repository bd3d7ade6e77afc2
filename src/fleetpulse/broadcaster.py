"""Operator position broadcasting.

Samples the local position source on a fixed interval and writes the
operator's own vehicle position through the outbound publish path. The
write comes back through the live channel like anyone else's; nothing is
applied to the local store directly.

Failures are perishable: a sample that cannot be sent is dropped, because
the next interval's sample supersedes it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from enum import StrEnum
from typing import Any, Protocol

from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FleetError, FleetValidationError, StalePositionSample
from fleetpulse.models.position import PositionSample, distance_m
from fleetpulse.models.vehicle import Position
from fleetpulse.state.events import ChangeEvent

_logger = logging.getLogger(__name__)


class PositionSource(Protocol):
    """Opaque producer of device positions."""

    async def read(self) -> PositionSample | None:
        ...


class StaticPositionSource:
    """Always reports the same position (stationary device, demos)."""

    def __init__(self, latitude: float, longitude: float, *, accuracy: float | None = None) -> None:
        self._latitude = latitude
        self._longitude = longitude
        self._accuracy = accuracy

    async def read(self) -> PositionSample | None:
        return PositionSample(
            latitude=self._latitude,
            longitude=self._longitude,
            accuracy=self._accuracy,
            timestamp=time.time(),
        )


class IterablePositionSource:
    """Replays samples from an iterable; ``None`` once exhausted."""

    def __init__(self, samples: Iterable[PositionSample]) -> None:
        self._samples: Iterator[PositionSample] = iter(samples)

    async def read(self) -> PositionSample | None:
        return next(self._samples, None)


class BroadcastOutcome(StrEnum):
    EMITTED = "emitted"
    SUPPRESSED = "suppressed"
    DROPPED = "dropped"
    STALE = "stale"
    INVALID = "invalid"
    IDLE = "idle"


class PositionBroadcaster:
    """Publishes the self vehicle's position while enabled.

    Parameters
    ----------
    publish
        Outbound write, normally ``RestTransport.publish_event``.
    can_publish
        Returns True only while the fleet subscription is ``SYNCED``.
    sleep
        Timer wait; the period is measured from the start of each cycle.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        source: PositionSource,
        publish: Callable[[ChangeEvent], Awaitable[None]],
        can_publish: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._source = source
        self._publish = publish
        self._can_publish = can_publish
        self._clock = clock
        self._sleep = sleep
        self._self_id: str | None = config.self_id
        self._enabled = False
        self._task: asyncio.Task[None] | None = None
        self._last_sample_ts: float | None = None
        self._last_emitted: Position | None = None

    async def __aenter__(self) -> PositionBroadcaster:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disable()

    @property
    def self_id(self) -> str | None:
        return self._self_id

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_emitted(self) -> Position | None:
        return self._last_emitted

    def enable(self, self_id: str | None = None) -> None:
        """Start broadcasting (idempotent).

        Changing ``self_id`` resets the distance filter so the first sample
        for the new vehicle is always sent.
        """
        if self_id is not None and self_id != self._self_id:
            self._self_id = self_id
            self._last_emitted = None
            self._last_sample_ts = None
        self._enabled = True
        if self._self_id is None:
            _logger.debug("Broadcasting enabled without a self id; idle")
            return
        if not self.is_running:
            self._task = asyncio.create_task(self._run(), name="fleetpulse-broadcaster")

    async def disable(self) -> None:
        """Stop broadcasting and release the sampling timer (idempotent)."""
        self._enabled = False
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._enabled:
            try:
                await self.sample_once()
            except Exception:
                # Never let one bad cycle kill the timer.
                _logger.warning("Position broadcast cycle failed", exc_info=True)
            # Fixed period: time spent sampling and publishing comes out of the wait.
            now = loop.time()
            next_tick = max(next_tick + self._config.broadcast_interval, now)
            await self._sleep(next_tick - now)

    def _check_sample(self, sample: PositionSample) -> Position:
        position = sample.to_position()
        if self._last_sample_ts is not None and sample.timestamp < self._last_sample_ts:
            raise StalePositionSample(
                f"Sample at {sample.timestamp} is older than last accepted {self._last_sample_ts}"
            )
        max_accuracy = self._config.max_accuracy_m
        if max_accuracy is not None and sample.accuracy is not None and sample.accuracy > max_accuracy:
            raise FleetValidationError(f"Sample accuracy {sample.accuracy}m worse than {max_accuracy}m")
        return position

    async def sample_once(self) -> BroadcastOutcome:
        """Run one sampling cycle."""
        self_id = self._self_id
        if not self._enabled or self_id is None:
            return BroadcastOutcome.IDLE

        sample = await self._source.read()
        if sample is None:
            return BroadcastOutcome.IDLE

        try:
            position = self._check_sample(sample)
        except StalePositionSample:
            _logger.debug("Ignoring stale position sample ts=%s", sample.timestamp)
            return BroadcastOutcome.STALE
        except FleetValidationError as exc:
            _logger.warning("Dropping position sample: %s", exc)
            return BroadcastOutcome.INVALID
        self._last_sample_ts = sample.timestamp

        if self._last_emitted is not None:
            moved = distance_m(self._last_emitted, position)
            if moved < self._config.min_distance_m:
                _logger.debug("Suppressing broadcast; moved %.1fm", moved)
                return BroadcastOutcome.SUPPRESSED

        if not self._can_publish():
            _logger.debug("Channel not synced; dropping position sample")
            return BroadcastOutcome.DROPPED

        event = ChangeEvent.update(
            self_id,
            {"latitude": position.latitude, "longitude": position.longitude},
            self._clock(),
        )
        try:
            await self._publish(event)
        except FleetError as exc:
            _logger.info("Position publish failed, waiting for next sample: %s", exc)
            return BroadcastOutcome.DROPPED

        self._last_emitted = position
        _logger.debug("Broadcast position for id=%s lat=%.6f lng=%.6f", self_id, position.latitude, position.longitude)
        return BroadcastOutcome.EMITTED
