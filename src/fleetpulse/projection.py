"""Read-only fleet projections and marker reconciliation.

Projections never touch the store; they derive ordered tuples from a
:class:`FleetStore` value. Marker reconciliation diffs two projections so
the visual layer only creates, moves or removes what actually changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from fleetpulse.models.vehicle import VehicleSnapshot
from fleetpulse.state.snapshot import FleetStore

_logger = logging.getLogger(__name__)

M = TypeVar("M")


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Inclusive lat/lng rectangle (no antimeridian wrap)."""

    south: float
    west: float
    north: float
    east: float

    def contains(self, snapshot: VehicleSnapshot) -> bool:
        return self.south <= snapshot.latitude <= self.north and self.west <= snapshot.longitude <= self.east


@dataclass(frozen=True, slots=True)
class ProjectionFilter:
    """Selection applied by :func:`project`.

    The default selects every active vehicle.
    """

    route_label: str | None = None
    region: BoundingBox | None = None
    include_inactive: bool = False

    def matches(self, snapshot: VehicleSnapshot) -> bool:
        if not self.include_inactive and not snapshot.active:
            return False
        if self.route_label is not None and snapshot.route_label != self.route_label:
            return False
        return self.region is None or self.region.contains(snapshot)


ALL_ACTIVE = ProjectionFilter()


def project(store: FleetStore, flt: ProjectionFilter = ALL_ACTIVE) -> tuple[VehicleSnapshot, ...]:
    """Return the matching vehicles ordered by id.

    Ordering does not depend on insertion order, so an unchanged store always
    projects to an identical sequence.
    """
    return tuple(sorted((snap for snap in store if flt.matches(snap)), key=lambda snap: snap.id))


@dataclass(frozen=True, slots=True)
class MarkerDiff:
    """Disjoint id sets describing how to move from one projection to the next."""

    created: tuple[VehicleSnapshot, ...]
    updated: tuple[VehicleSnapshot, ...]
    removed: tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.updated or self.removed)


def diff_projections(old: Iterable[VehicleSnapshot], new: Iterable[VehicleSnapshot]) -> MarkerDiff:
    """Compare two projections.

    ``updated`` lists only vehicles present in both whose snapshot changed;
    unchanged vehicles appear in no set.
    """
    previous = {snap.id: snap for snap in old}
    created: list[VehicleSnapshot] = []
    updated: list[VehicleSnapshot] = []
    seen: set[str] = set()
    for snap in new:
        seen.add(snap.id)
        before = previous.get(snap.id)
        if before is None:
            created.append(snap)
        elif before is not snap and before != snap:
            updated.append(snap)
    removed = tuple(sorted(vid for vid in previous if vid not in seen))
    return MarkerDiff(created=tuple(created), updated=tuple(updated), removed=removed)


class MarkerLayer(Protocol[M]):
    """The visual layer a reconciler drives (map widget, terminal table...)."""

    def create_marker(self, snapshot: VehicleSnapshot) -> M:
        ...

    def move_marker(self, marker: M, snapshot: VehicleSnapshot) -> None:
        ...

    def remove_marker(self, marker: M) -> None:
        ...


class MarkerReconciler(Generic[M]):
    """Keeps a persistent ``{id: marker}`` map in step with projections.

    A marker is created once per vehicle and then only moved, so interaction
    state attached to it (an open popup) survives updates.
    """

    def __init__(self, layer: MarkerLayer[M]) -> None:
        self._layer = layer
        self._markers: dict[str, M] = {}
        self._projection: tuple[VehicleSnapshot, ...] = ()

    @property
    def markers(self) -> dict[str, M]:
        return dict(self._markers)

    @property
    def projection(self) -> tuple[VehicleSnapshot, ...]:
        return self._projection

    def reconcile(self, projection: tuple[VehicleSnapshot, ...]) -> MarkerDiff:
        diff = diff_projections(self._projection, projection)
        # Only layer calls that succeeded are recorded, so a failure part way
        # through is retried by the next reconcile instead of duplicated.
        shown = {snap.id: snap for snap in self._projection}
        try:
            for vehicle_id in diff.removed:
                marker = self._markers.get(vehicle_id)
                if marker is not None:
                    self._layer.remove_marker(marker)
                    del self._markers[vehicle_id]
                del shown[vehicle_id]
            for snap in diff.updated:
                self._layer.move_marker(self._markers[snap.id], snap)
                shown[snap.id] = snap
            for snap in diff.created:
                self._markers[snap.id] = self._layer.create_marker(snap)
                shown[snap.id] = snap
        finally:
            self._projection = tuple(shown[vehicle_id] for vehicle_id in sorted(shown))
        if not diff.is_empty:
            _logger.debug(
                "Markers reconciled: +%d ~%d -%d",
                len(diff.created),
                len(diff.updated),
                len(diff.removed),
            )
        return diff

    def clear(self) -> None:
        """Remove every marker this reconciler created."""
        for marker in self._markers.values():
            self._layer.remove_marker(marker)
        self._markers.clear()
        self._projection = ()


class FleetView(Generic[M]):
    """A filtered projection bound to a store listener and a marker layer.

    ``subscribe`` is usually ``SubscriptionManager.add_listener``.  Detaching
    only unsubscribes this view and clears its markers; the shared store and
    channel are untouched.
    """

    def __init__(
        self,
        layer: MarkerLayer[M],
        flt: ProjectionFilter = ALL_ACTIVE,
        *,
        subscribe: Callable[[Callable[[FleetStore], None]], Callable[[], None]] | None = None,
        initial: FleetStore | None = None,
    ) -> None:
        self._filter = flt
        self._reconciler: MarkerReconciler[M] = MarkerReconciler(layer)
        self._unsubscribe: Callable[[], None] | None = None
        if initial is not None:
            self.refresh(initial)
        if subscribe is not None:
            self._unsubscribe = subscribe(self.refresh)

    @property
    def filter(self) -> ProjectionFilter:
        return self._filter

    @property
    def reconciler(self) -> MarkerReconciler[M]:
        return self._reconciler

    @property
    def vehicles(self) -> tuple[VehicleSnapshot, ...]:
        return self._reconciler.projection

    def refresh(self, store: FleetStore) -> MarkerDiff:
        return self._reconciler.reconcile(project(store, self._filter))

    def set_filter(self, flt: ProjectionFilter, store: FleetStore) -> MarkerDiff:
        self._filter = flt
        return self.refresh(store)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._reconciler.clear()

    def __enter__(self) -> FleetView[M]:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.detach()
