"""Realtime channel ingestion helpers.

This module translates change notifications from the live channel, and rows
from the bulk read, into normalized :class:`ChangeEvent`s.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetpulse.exceptions import FleetValidationError
from fleetpulse.ingestion.normalize import normalize_timestamp_seconds, safe_str
from fleetpulse.models.vehicle import row_to_payload
from fleetpulse.state.events import ChangeEvent, ChangeKind

_logger = logging.getLogger(__name__)


class _ChangeEnvelope(BaseModel):
    """Minimal Pydantic envelope for ``{eventType, new, old}`` notifications."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    event_type: ChangeKind = Field(validation_alias=AliasChoices("eventType", "event_type", "type"))
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Any = Field(default=None, validation_alias=AliasChoices("commit_timestamp", "commitTimestamp"))

    @field_validator("event_type", mode="before")
    @classmethod
    def _upper_event_type(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("new", "old", mode="before")
    @classmethod
    def _null_row(cls, value: Any) -> Any:
        return {} if value is None else value


def event_from_message(message: dict[str, Any], *, received_at: float | None = None) -> ChangeEvent:
    """Build a change event from one live-channel notification.

    Timestamps come from the row's server-assigned ``updated_at``.  Deletes
    carry no new row, so they use ``commit_timestamp``, then the old row's
    ``updated_at``.  Receipt time is the last resort.

    Raises
    ------
    FleetValidationError
        When the notification has no usable event type or id.
    """
    try:
        envelope = _ChangeEnvelope.model_validate(message)
    except ValidationError as exc:
        raise FleetValidationError(f"Malformed change notification: {exc.error_count()} error(s)") from exc

    fallback_ts = received_at if received_at is not None else time.time()

    if envelope.event_type == ChangeKind.DELETE:
        vehicle_id = safe_str(envelope.old.get("id")) or safe_str(envelope.new.get("id"))
        if vehicle_id is None:
            raise FleetValidationError("DELETE notification without old.id")
        timestamp = (
            normalize_timestamp_seconds(envelope.commit_timestamp)
            or normalize_timestamp_seconds(envelope.old.get("updated_at"))
            or fallback_ts
        )
        return ChangeEvent.delete(vehicle_id, timestamp)

    vehicle_id = safe_str(envelope.new.get("id"))
    if vehicle_id is None:
        raise FleetValidationError(f"{envelope.event_type.value} notification without new.id")
    timestamp = (
        normalize_timestamp_seconds(envelope.new.get("updated_at"))
        or normalize_timestamp_seconds(envelope.commit_timestamp)
        or fallback_ts
    )
    return ChangeEvent(
        kind=envelope.event_type,
        id=vehicle_id,
        payload=row_to_payload(envelope.new),
        timestamp=timestamp,
    )


def events_from_rows(rows: Iterable[dict[str, Any]], *, received_at: float | None = None) -> list[ChangeEvent]:
    """Turn bulk-read rows into Insert events for seeding the store.

    Rows without an id cannot be addressed at all and are skipped with a
    warning; every other problem is left to the reducer to report.
    """
    fallback_ts = received_at if received_at is not None else time.time()
    events: list[ChangeEvent] = []
    for row in rows:
        if not isinstance(row, dict):
            _logger.warning("Skipping non-object fleet row: %r", row)
            continue
        vehicle_id = safe_str(row.get("id"))
        if vehicle_id is None:
            _logger.warning("Skipping fleet row without id")
            continue
        timestamp = normalize_timestamp_seconds(row.get("updated_at")) or fallback_ts
        events.append(ChangeEvent.insert(vehicle_id, row_to_payload(row), timestamp))
    return events
