"""Deterministic in-memory fleet store.

This is the only component allowed to hold the authoritative fleet
snapshot. Every mutation goes through :func:`fleetpulse.state.reducer.reduce`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from fleetpulse.state.events import ChangeEvent, Rejection
from fleetpulse.state.reducer import reduce
from fleetpulse.state.snapshot import FleetStore

_logger = logging.getLogger(__name__)


class EntityStore:
    """Owner of the current :class:`FleetStore` value.

    The store is designed to be deterministic: given the same sequence of
    ``ChangeEvent``s, it will produce the same snapshots.  ``apply`` swaps in
    a new immutable value, so a reader holding the previous one keeps a
    consistent point-in-time view.
    """

    def __init__(
        self,
        *,
        on_reject: Callable[[Rejection], None] | None = None,
    ) -> None:
        self._on_reject = on_reject
        self._current = FleetStore()
        self._version = 0
        self._rejected_count = 0

    @property
    def version(self) -> int:
        """Incremented every time the stored value changes."""
        return self._version

    @property
    def rejected_count(self) -> int:
        return self._rejected_count

    def get(self) -> FleetStore:
        """Current immutable snapshot."""
        return self._current

    def _record_rejection(self, rejection: Rejection) -> None:
        self._rejected_count += 1
        if self._on_reject is not None:
            self._on_reject(rejection)

    def _replace(self, value: FleetStore) -> FleetStore:
        if value is not self._current:
            self._current = value
            self._version += 1
        return value

    def apply(self, event: ChangeEvent) -> FleetStore:
        """Fold one change event into the store and return the new snapshot."""
        return self._replace(reduce(self._current, event, on_reject=self._record_rejection))

    def apply_many(self, events: Iterable[ChangeEvent]) -> FleetStore:
        value = self._current
        for event in events:
            value = reduce(value, event, on_reject=self._record_rejection)
        return self._replace(value)

    def reset(self, events: Iterable[ChangeEvent] = ()) -> FleetStore:
        """Discard all state (tombstones included) and seed from a bulk read.

        The seed is a sequence of Insert events (see
        :func:`fleetpulse.ingestion.realtime.events_from_rows`), so seeding
        follows the same validation and duplicate-id rules as live events.
        """
        value = FleetStore()
        for event in events:
            value = reduce(value, event, on_reject=self._record_rejection)
        _logger.debug("Fleet store reset with %d vehicle(s)", len(value))
        self._current = value
        self._version += 1
        return value
