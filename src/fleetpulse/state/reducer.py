"""Change-event reducer.

``reduce`` is the only function that turns a :class:`ChangeEvent` into a
new :class:`FleetStore`. It never raises: malformed events are reported
through ``on_reject`` (and a WARNING log) and the input store is returned.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from fleetpulse.models._base import FleetBaseModel
from fleetpulse.models.vehicle import Position, VehicleSnapshot, position_in_range
from fleetpulse.state.events import ChangeEvent, ChangeKind, Rejection, Revision
from fleetpulse.state.policy import should_accept_event
from fleetpulse.state.snapshot import FleetStore

_logger = logging.getLogger(__name__)

RejectCallback = Callable[[Rejection], None]


def _report(on_reject: RejectCallback | None, event: ChangeEvent, reason: str) -> None:
    _logger.warning("Rejected %s event for id=%s: %s", event.kind.value, event.id, reason)
    if on_reject is None:
        return
    try:
        on_reject(Rejection(event=event, reason=reason))
    except Exception:
        _logger.debug("on_reject callback failed", exc_info=True)


def _shape_problem(event: ChangeEvent) -> str | None:
    if not math.isfinite(event.timestamp):
        return "timestamp is not a finite number"
    if event.timestamp <= 0:
        return "timestamp must be positive epoch seconds"
    if event.kind == ChangeKind.DELETE:
        return None
    if event.payload is None:
        return f"{event.kind.value} requires a payload"
    lat = event.payload.get("latitude")
    lng = event.payload.get("longitude")
    position = event.payload.get("position")
    if isinstance(position, Position):
        lat, lng = position.latitude, position.longitude
    elif isinstance(position, dict):
        lat = position.get("latitude", lat)
        lng = position.get("longitude", lng)
    for value in (lat, lng):
        if value is not None and not isinstance(value, (int, float)):
            return f"position component {value!r} is not numeric"
    if lat is not None and not position_in_range(float(lat), 0.0):
        return f"latitude {lat} out of range"
    if lng is not None and not position_in_range(0.0, float(lng)):
        return f"longitude {lng} out of range"
    return None


def _merge_position(existing: Position | None, payload: dict[str, Any]) -> dict[str, Any] | None:
    position = payload.pop("position", None)
    fields: dict[str, Any] = position.model_dump() if isinstance(position, Position) else dict(position or {})
    for key in ("latitude", "longitude"):
        if key in payload:
            fields[key] = payload.pop(key)
    if existing is not None:
        for key, value in existing.model_dump().items():
            fields.setdefault(key, value)
    return fields or None


def _build_snapshot(existing: VehicleSnapshot | None, event: ChangeEvent) -> VehicleSnapshot:
    # Empty values mean "no change".
    payload = FleetBaseModel._clean_dict(dict(event.payload or {}))
    # The id and timestamp belong to the event, never to the payload.
    payload.pop("id", None)
    payload.pop("updated_at", None)

    position = _merge_position(existing.position if existing is not None else None, payload)
    data: dict[str, Any] = existing.model_dump() if existing is not None else {}
    data.update(payload)
    if position is not None:
        data["position"] = position
    data["id"] = event.id
    data["updated_at"] = event.timestamp
    return VehicleSnapshot.model_validate(data)


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{loc}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def reduce(store: FleetStore, event: ChangeEvent, *, on_reject: RejectCallback | None = None) -> FleetStore:
    """Fold one change event into ``store`` and return the resulting store.

    Only the affected entry changes; every other snapshot is shared with the
    input. When the event is stale (older revision, or same timestamp with a
    lower-priority kind) or changes nothing, ``store`` itself is returned.
    """
    problem = _shape_problem(event)
    if problem is not None:
        _report(on_reject, event, problem)
        return store

    current = store.revision(event.id)
    if not should_accept_event(current=current, incoming_timestamp=event.timestamp, incoming_kind=event.kind):
        _logger.debug(
            "Discarding stale %s for id=%s (ts=%s, stored=%s)",
            event.kind.value,
            event.id,
            event.timestamp,
            current,
        )
        return store

    revision = Revision(timestamp=event.timestamp, kind=event.kind)

    if event.kind == ChangeKind.DELETE:
        if event.id not in store and current == revision:
            return store
        return store.without_vehicle(event.id, revision)

    existing = store.get(event.id)
    try:
        snapshot = _build_snapshot(existing, event)
    except ValidationError as exc:
        _report(on_reject, event, _describe(exc))
        return store

    if existing is not None and existing == snapshot and current == revision:
        return store
    return store.with_vehicle(snapshot, revision)
