"""Immutable fleet snapshot value."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from fleetpulse.models.vehicle import VehicleSnapshot
from fleetpulse.state.events import Revision


@dataclass(frozen=True, slots=True, eq=False)
class FleetStore:
    """Point-in-time view of every known vehicle.

    ``vehicles`` holds live snapshots; ``revisions`` holds the last accepted
    (timestamp, kind) for every id seen this session, deleted ids included.
    Instances are never mutated: each accepted change produces a new
    ``FleetStore`` that shares every untouched snapshot with its parent.
    """

    vehicles: Mapping[str, VehicleSnapshot] = field(default_factory=lambda: MappingProxyType({}))
    revisions: Mapping[str, Revision] = field(default_factory=lambda: MappingProxyType({}))

    def __len__(self) -> int:
        return len(self.vehicles)

    def __contains__(self, vehicle_id: object) -> bool:
        return vehicle_id in self.vehicles

    def __iter__(self) -> Iterator[VehicleSnapshot]:
        return iter(self.vehicles.values())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FleetStore):
            return NotImplemented
        if other is self:
            return True
        return dict(self.vehicles) == dict(other.vehicles) and dict(self.revisions) == dict(other.revisions)

    __hash__ = None  # type: ignore[assignment]

    def get(self, vehicle_id: str) -> VehicleSnapshot | None:
        return self.vehicles.get(vehicle_id)

    def revision(self, vehicle_id: str) -> Revision | None:
        return self.revisions.get(vehicle_id)

    def with_vehicle(self, snapshot: VehicleSnapshot, revision: Revision) -> FleetStore:
        vehicles = dict(self.vehicles)
        vehicles[snapshot.id] = snapshot
        revisions = dict(self.revisions)
        revisions[snapshot.id] = revision
        return FleetStore(MappingProxyType(vehicles), MappingProxyType(revisions))

    def without_vehicle(self, vehicle_id: str, revision: Revision) -> FleetStore:
        vehicles = dict(self.vehicles)
        vehicles.pop(vehicle_id, None)
        revisions = dict(self.revisions)
        revisions[vehicle_id] = revision
        return FleetStore(MappingProxyType(vehicles), MappingProxyType(revisions))


EMPTY_STORE = FleetStore()
