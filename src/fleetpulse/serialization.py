"""Read-only snapshot serialization for external consumers.

The advisory text endpoint takes a JSON summary of the current fleet; no
state flows back from it.
"""

from __future__ import annotations

import json
from collections import Counter
from typing import Any

from fleetpulse.models.vehicle import CrowdLevel
from fleetpulse.projection import ALL_ACTIVE, ProjectionFilter, project
from fleetpulse.state.snapshot import FleetStore


def snapshot_rows(store: FleetStore, flt: ProjectionFilter = ALL_ACTIVE) -> list[dict[str, Any]]:
    """Projected vehicles as wire rows, ordered by id."""
    return [snap.to_row() for snap in project(store, flt)]


def fleet_summary(store: FleetStore) -> dict[str, Any]:
    """Aggregate counts over the whole store."""
    active = project(store, ALL_ACTIVE)
    by_route = Counter(snap.route_label for snap in active)
    by_crowd = Counter(snap.crowd_level.value for snap in active)
    return {
        "total": len(store),
        "active": len(active),
        "by_route": dict(sorted(by_route.items())),
        "by_crowd_level": {level.value: by_crowd.get(level.value, 0) for level in CrowdLevel},
    }


def snapshot_to_json(store: FleetStore, flt: ProjectionFilter = ALL_ACTIVE) -> str:
    """Serialize a snapshot as ``{"fleetData": [...], "summary": {...}}``."""
    body = {
        "fleetData": snapshot_rows(store, flt),
        "summary": fleet_summary(store),
    }
    return json.dumps(body, separators=(",", ":"), sort_keys=True)
