"""State/store layer.

This package is the single source of truth for how change events from the
bulk read and the live channel are merged into a deterministic fleet
snapshot.
"""

from fleetpulse.state.events import ChangeEvent, ChangeKind, Rejection, Revision
from fleetpulse.state.reducer import reduce
from fleetpulse.state.snapshot import FleetStore
from fleetpulse.state.store import EntityStore

__all__ = ["ChangeEvent", "ChangeKind", "EntityStore", "FleetStore", "Rejection", "Revision", "reduce"]
