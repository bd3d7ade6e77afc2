from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from fleetpulse.models.vehicle import VehicleSnapshot
from fleetpulse.projection import (
    ALL_ACTIVE,
    BoundingBox,
    FleetView,
    MarkerReconciler,
    ProjectionFilter,
    diff_projections,
    project,
)
from fleetpulse.state.events import ChangeEvent
from fleetpulse.state.snapshot import EMPTY_STORE, FleetStore
from fleetpulse.state.store import EntityStore


def _seed(*rows: tuple[str, str, float, float, bool]) -> FleetStore:
    store = EntityStore()
    store.apply_many(
        ChangeEvent.insert(vid, {"route_label": route, "latitude": lat, "longitude": lng, "active": active}, 1.0)
        for vid, route, lat, lng, active in rows
    )
    return store.get()


@dataclass
class _Marker:
    vehicle_id: str
    position: tuple[float, float]
    popup_open: bool = False


@dataclass
class _RecordingLayer:
    created: list[str] = field(default_factory=list)
    moved: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def create_marker(self, snapshot: VehicleSnapshot) -> _Marker:
        self.created.append(snapshot.id)
        return _Marker(snapshot.id, (snapshot.latitude, snapshot.longitude))

    def move_marker(self, marker: _Marker, snapshot: VehicleSnapshot) -> None:
        self.moved.append(snapshot.id)
        marker.position = (snapshot.latitude, snapshot.longitude)

    def remove_marker(self, marker: _Marker) -> None:
        self.removed.append(marker.vehicle_id)


def test_route_filter_returns_only_active_matching_vehicles_in_id_order() -> None:
    store = _seed(
        ("c", "15", 1.0, 1.0, True),
        ("a", "15", 1.0, 1.0, True),
        ("b", "7", 1.0, 1.0, True),
        ("d", "15", 1.0, 1.0, False),
    )

    result = project(store, ProjectionFilter(route_label="15"))

    assert [snap.id for snap in result] == ["a", "c"]
    assert project(store, ProjectionFilter(route_label="15")) == result


def test_default_filter_excludes_inactive_unless_requested() -> None:
    store = _seed(("a", "15", 1.0, 1.0, True), ("b", "7", 1.0, 1.0, False))

    assert [snap.id for snap in project(store)] == ["a"]
    assert [snap.id for snap in project(store, ProjectionFilter(include_inactive=True))] == ["a", "b"]
    assert project(EMPTY_STORE) == ()


def test_region_filter_is_inclusive() -> None:
    store = _seed(
        ("in", "15", 12.9, 74.8, True),
        ("edge", "15", 13.0, 75.0, True),
        ("out", "15", 14.0, 74.8, True),
    )
    box = BoundingBox(south=12.0, west=74.0, north=13.0, east=75.0)

    assert [snap.id for snap in project(store, ProjectionFilter(region=box))] == ["edge", "in"]


def test_diff_projections_sorts_changes_into_disjoint_sets() -> None:
    before = project(_seed(("a", "15", 1.0, 1.0, True), ("b", "15", 1.0, 1.0, True)))
    store = _seed(("a", "15", 1.0, 1.0, True), ("b", "15", 2.0, 2.0, True), ("c", "15", 1.0, 1.0, True))

    diff = diff_projections(before, project(store))

    assert [s.id for s in diff.created] == ["c"]
    assert [s.id for s in diff.updated] == ["b"]
    assert diff.removed == ()
    assert diff_projections(project(store), project(store)).is_empty


def test_marker_is_moved_in_place_across_updates() -> None:
    layer = _RecordingLayer()
    reconciler: MarkerReconciler[_Marker] = MarkerReconciler(layer)
    store = EntityStore()
    store.apply(ChangeEvent.insert("x", {"route_label": "15", "latitude": 1.0, "longitude": 1.0}, 1.0))
    reconciler.reconcile(project(store.get()))
    marker = reconciler.markers["x"]
    marker.popup_open = True

    for step in range(2, 6):
        store.apply(ChangeEvent.update("x", {"latitude": float(step)}, float(step)))
        reconciler.reconcile(project(store.get()))

    assert layer.created == ["x"]
    assert layer.moved == ["x"] * 4
    assert reconciler.markers["x"] is marker
    assert marker.popup_open is True
    assert marker.position == (5.0, 1.0)


def test_marker_removed_when_vehicle_leaves_projection() -> None:
    layer = _RecordingLayer()
    reconciler: MarkerReconciler[_Marker] = MarkerReconciler(layer)
    store = EntityStore()
    store.apply(ChangeEvent.insert("x", {"route_label": "15", "latitude": 1.0, "longitude": 1.0}, 1.0))
    reconciler.reconcile(project(store.get()))

    store.apply(ChangeEvent.update("x", {"active": False}, 2.0))
    diff = reconciler.reconcile(project(store.get()))

    assert diff.removed == ("x",)
    assert layer.removed == ["x"]
    assert reconciler.markers == {}


def test_unchanged_projection_touches_nothing() -> None:
    layer = _RecordingLayer()
    reconciler: MarkerReconciler[_Marker] = MarkerReconciler(layer)
    store = _seed(("a", "15", 1.0, 1.0, True))

    reconciler.reconcile(project(store))
    diff = reconciler.reconcile(project(store))

    assert diff.is_empty
    assert layer.created == ["a"]
    assert layer.moved == []


def test_fleet_view_follows_listener_and_detach_clears_markers() -> None:
    listeners: list[Callable[[FleetStore], None]] = []

    def subscribe(listener: Callable[[FleetStore], None]) -> Callable[[], None]:
        listeners.append(listener)
        return lambda: listeners.remove(listener)

    layer = _RecordingLayer()
    store = EntityStore()
    store.apply(ChangeEvent.insert("a", {"route_label": "15", "latitude": 1.0, "longitude": 1.0}, 1.0))
    view = FleetView(layer, ProjectionFilter(route_label="15"), subscribe=subscribe, initial=store.get())
    assert [s.id for s in view.vehicles] == ["a"]

    store.apply(ChangeEvent.insert("b", {"route_label": "7", "latitude": 1.0, "longitude": 1.0}, 1.0))
    store.apply(ChangeEvent.insert("c", {"route_label": "15", "latitude": 1.0, "longitude": 1.0}, 1.0))
    for listener in list(listeners):
        listener(store.get())
    assert [s.id for s in view.vehicles] == ["a", "c"]

    view.detach()

    assert listeners == []
    assert sorted(layer.removed) == ["a", "c"]
    assert view.reconciler.markers == {}
    # Detaching twice is harmless.
    view.detach()


def test_set_filter_swaps_markers() -> None:
    layer = _RecordingLayer()
    store = _seed(("a", "15", 1.0, 1.0, True), ("b", "7", 1.0, 1.0, True))

    with FleetView(layer, ProjectionFilter(route_label="15"), initial=store) as view:
        diff = view.set_filter(ProjectionFilter(route_label="7"), store)
        assert [s.id for s in diff.created] == ["b"]
        assert diff.removed == ("a",)
        assert view.filter == ProjectionFilter(route_label="7")

    assert layer.removed == ["a", "b"]
    assert ALL_ACTIVE == ProjectionFilter()


@dataclass
class _FlakyLayer(_RecordingLayer):
    fail_create: set[str] = field(default_factory=set)
    live: list[str] = field(default_factory=list)

    def create_marker(self, snapshot: VehicleSnapshot) -> _Marker:
        if snapshot.id in self.fail_create:
            self.fail_create.discard(snapshot.id)
            raise RuntimeError(f"map refused marker {snapshot.id}")
        self.live.append(snapshot.id)
        return super().create_marker(snapshot)

    def remove_marker(self, marker: _Marker) -> None:
        self.live.remove(marker.vehicle_id)
        super().remove_marker(marker)


def test_failed_layer_call_is_retried_without_duplicating_markers() -> None:
    layer = _FlakyLayer(fail_create={"b"})
    reconciler: MarkerReconciler[_Marker] = MarkerReconciler(layer)
    store = _seed(("a", "15", 1.0, 1.0, True), ("b", "15", 2.0, 2.0, True))

    with pytest.raises(RuntimeError):
        reconciler.reconcile(project(store))
    assert [snap.id for snap in reconciler.projection] == ["a"]

    diff = reconciler.reconcile(project(store))

    assert [snap.id for snap in diff.created] == ["b"]
    assert sorted(layer.live) == ["a", "b"]
    assert sorted(reconciler.markers) == ["a", "b"]

    reconciler.clear()
    assert layer.live == []
