"""Live subscription lifecycle.

Owns:
- opening/closing the live change channel
- seeding the store from a bulk read on every (re)connect
- folding queued change events into the store, one at a time
- reconnecting with capped, jittered exponential backoff
- publishing new store snapshots and state transitions to listeners
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from fleetpulse._mqtt import ChangeChannel, ChannelMessage
from fleetpulse._transport import Transport
from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FatalAuthError, FleetValidationError, TransientChannelError
from fleetpulse.ingestion.realtime import event_from_message, events_from_rows
from fleetpulse.state.events import ChangeEvent
from fleetpulse.state.snapshot import FleetStore
from fleetpulse.state.store import EntityStore

_logger = logging.getLogger(__name__)

# Queued by the channel's drop callback; ends the current SYNCED session.
_DROPPED = object()


class SubscriptionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCED = "synced"
    DEGRADED = "degraded"


StoreListener = Callable[[FleetStore], None]
StateListener = Callable[[SubscriptionState], None]


class SubscriptionManager:
    """Keeps an :class:`EntityStore` in sync with the live fleet.

    Usage::

        async with SubscriptionManager(config, transport=..., channel=...) as manager:
            manager.add_listener(on_fleet)
            await manager.wait_synced()

    Only this class may surface a fatal condition: when the backend or the
    broker rejects credentials the manager halts in ``DISCONNECTED`` and
    exposes the error as :attr:`fatal_error`.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        transport: Transport,
        channel: ChangeChannel,
        store: EntityStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._channel = channel
        self._store = store if store is not None else EntityStore()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._state = SubscriptionState.DISCONNECTED
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._supervisor: asyncio.Task[None] | None = None
        self._listeners: list[StoreListener] = []
        self._state_listeners: list[StateListener] = []
        self._has_synced = False
        self.fatal_error: FatalAuthError | None = None
        self.last_error: Exception | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SubscriptionManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Begin connecting; returns immediately (see :meth:`wait_synced`)."""
        if self._supervisor is not None and not self._supervisor.done():
            return
        self.fatal_error = None
        self.last_error = None
        self._supervisor = asyncio.create_task(self._supervise(), name="fleetpulse-subscription")

    async def stop(self) -> None:
        """Release the channel and every task, whatever state we are in."""
        task = self._supervisor
        self._supervisor = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_channel()
        self._set_state(SubscriptionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def snapshot(self) -> FleetStore:
        return self._store.get()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_synced(self) -> bool:
        """Outbound publishes are only allowed while this is true."""
        return self._state == SubscriptionState.SYNCED

    @property
    def is_stale(self) -> bool:
        """True while views are showing last-known state from a lost session."""
        return self._has_synced and self._state != SubscriptionState.SYNCED

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener`` with every new fleet snapshot; returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` on every state transition; returns a remover."""
        self._state_listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._state_listeners.remove(listener)

        return _remove

    async def wait_synced(self, timeout: float | None = None) -> bool:
        """Wait until ``SYNCED``; False on timeout or if the manager halts."""
        if self._state == SubscriptionState.SYNCED:
            return True
        fut: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

        def _watch(state: SubscriptionState) -> None:
            if fut.done():
                return
            if state == SubscriptionState.SYNCED:
                fut.set_result(True)
            elif state == SubscriptionState.DISCONNECTED:
                fut.set_result(False)

        remove = self.add_state_listener(_watch)
        try:
            return await asyncio.wait_for(fut, timeout)
        except TimeoutError:
            return False
        finally:
            remove()

    def backoff_delay(self, attempt: int) -> float:
        """Capped exponential delay for reconnect ``attempt`` (1-based), with jitter.

        The result lies in ``[cap/2, cap]`` where
        ``cap = min(max_delay, initial_delay * 2 ** (attempt - 1))``.
        """
        exponent = max(0, attempt - 1)
        cap = min(self._config.reconnect_max_delay, self._config.reconnect_initial_delay * (2**exponent))
        return cap * (0.5 + self._rng.random() / 2)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: SubscriptionState) -> None:
        if state == self._state:
            return
        _logger.info("Subscription %s -> %s", self._state.value, state.value)
        self._state = state
        if state == SubscriptionState.SYNCED:
            self._has_synced = True
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                _logger.warning("State listener failed", exc_info=True)

    def _publish(self, value: FleetStore) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                _logger.warning("Fleet listener failed", exc_info=True)

    def _on_message(self, message: ChannelMessage) -> None:
        """Channel callback (runs on the event loop)."""
        try:
            event = event_from_message(message.payload, received_at=message.received_at)
        except FleetValidationError:
            _logger.warning("Dropping malformed change notification on %s", message.topic, exc_info=True)
            return
        self._queue.put_nowait(event)

    def _on_drop(self, exc: Exception) -> None:
        """Channel callback (runs on the event loop)."""
        self.last_error = exc
        self._queue.put_nowait(_DROPPED)

    async def _close_channel(self) -> None:
        try:
            await self._channel.close()
        except Exception:
            _logger.debug("Channel close failed", exc_info=True)

    async def _connect(self) -> None:
        # Subscribe before the bulk read so nothing committed in between is
        # missed; buffered events are folded after the seed.
        self._queue = asyncio.Queue()
        await self._channel.open(self._on_message, self._on_drop)
        rows = await self._transport.fetch_rows()
        value = self._store.reset(events_from_rows(rows))
        _logger.info("Fleet seeded with %d vehicle(s)", len(value))
        self._publish(value)

    def _apply(self, event: ChangeEvent) -> None:
        before = self._store.get()
        after = self._store.apply(event)
        if after is not before:
            self._publish(after)

    async def _pump(self) -> None:
        """Fold queued events into the store until the channel drops."""
        while True:
            item = await self._queue.get()
            if item is _DROPPED:
                return
            self._apply(item)

    async def _supervise(self) -> None:
        attempt = 0
        while True:
            self._set_state(SubscriptionState.CONNECTING)
            try:
                await self._connect()
            except FatalAuthError as exc:
                _logger.error("Fleet subscription halted: %s", exc)
                self.fatal_error = exc
                self.last_error = exc
                await self._close_channel()
                self._set_state(SubscriptionState.DISCONNECTED)
                return
            except Exception as exc:
                _logger.warning("Fleet subscription connect failed: %s", exc, exc_info=True)
                self.last_error = exc
                await self._close_channel()
            else:
                attempt = 0
                self._set_state(SubscriptionState.SYNCED)
                await self._pump()
                _logger.warning("Fleet channel dropped: %s", self.last_error)
                await self._close_channel()

            self._set_state(SubscriptionState.DEGRADED)
            attempt += 1
            max_attempts = self._config.reconnect_max_attempts
            if max_attempts and attempt > max_attempts:
                self.last_error = TransientChannelError(
                    f"Giving up after {max_attempts} reconnect attempt(s): {self.last_error}"
                )
                _logger.error("%s", self.last_error)
                self._set_state(SubscriptionState.DISCONNECTED)
                return
            delay = self.backoff_delay(attempt)
            _logger.info("Reconnecting in %.1fs (attempt %d)", delay, attempt)
            await self._sleep(delay)
