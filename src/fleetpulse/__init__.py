"""fleetpulse - Live fleet state reconciliation engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fleetpulse")
except PackageNotFoundError:
    __version__ = "0+local"
from fleetpulse.broadcaster import (
    BroadcastOutcome,
    IterablePositionSource,
    PositionBroadcaster,
    PositionSource,
    StaticPositionSource,
)
from fleetpulse.client import FleetClient
from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import (
    FatalAuthError,
    FleetConfigError,
    FleetError,
    FleetTransportError,
    FleetValidationError,
    StalePositionSample,
    TransientChannelError,
)
from fleetpulse.models import CrowdLevel, Position, PositionSample, VehicleSnapshot
from fleetpulse.projection import (
    BoundingBox,
    FleetView,
    MarkerDiff,
    MarkerLayer,
    MarkerReconciler,
    ProjectionFilter,
    diff_projections,
    project,
)
from fleetpulse.serialization import fleet_summary, snapshot_to_json
from fleetpulse.state import ChangeEvent, ChangeKind, EntityStore, FleetStore, Rejection, Revision, reduce
from fleetpulse.subscription import SubscriptionManager, SubscriptionState

__all__ = [
    "__version__",
    "BoundingBox",
    "BroadcastOutcome",
    "ChangeEvent",
    "ChangeKind",
    "CrowdLevel",
    "EntityStore",
    "FatalAuthError",
    "FleetClient",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "FleetStore",
    "FleetTransportError",
    "FleetValidationError",
    "FleetView",
    "IterablePositionSource",
    "MarkerDiff",
    "MarkerLayer",
    "MarkerReconciler",
    "Position",
    "PositionBroadcaster",
    "PositionSample",
    "PositionSource",
    "ProjectionFilter",
    "Rejection",
    "Revision",
    "StalePositionSample",
    "StaticPositionSource",
    "SubscriptionManager",
    "SubscriptionState",
    "TransientChannelError",
    "VehicleSnapshot",
    "diff_projections",
    "fleet_summary",
    "project",
    "reduce",
    "snapshot_to_json",
]
