"""Normalized change events.

All ingestion paths (bulk read, realtime channel, local broadcast) convert
their inputs into these events. Only the state/store layer is allowed to
fold them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleetpulse.ingestion.normalize import MS_EPOCH_THRESHOLD


class ChangeKind(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A normalized insert/update/delete notification for one vehicle."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    id: str = Field(..., description="Vehicle id")
    payload: dict[str, Any] | None = Field(
        default=None,
        description="Changed fields keyed by model field name; required for INSERT/UPDATE.",
    )
    timestamp: float = Field(..., description="Epoch seconds assigned by the source of the change.")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        vehicle_id = value.strip()
        if not vehicle_id:
            raise ValueError("id must be non-empty")
        return vehicle_id

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: float) -> float:
        # Millisecond epochs are folded to seconds so revisions and updated_at agree.
        if math.isfinite(value) and value > MS_EPOCH_THRESHOLD:
            return value / 1000.0
        return value

    @classmethod
    def insert(cls, vehicle_id: str, payload: dict[str, Any], timestamp: float) -> ChangeEvent:
        return cls(kind=ChangeKind.INSERT, id=vehicle_id, payload=payload, timestamp=timestamp)

    @classmethod
    def update(cls, vehicle_id: str, payload: dict[str, Any], timestamp: float) -> ChangeEvent:
        return cls(kind=ChangeKind.UPDATE, id=vehicle_id, payload=payload, timestamp=timestamp)

    @classmethod
    def delete(cls, vehicle_id: str, timestamp: float) -> ChangeEvent:
        return cls(kind=ChangeKind.DELETE, id=vehicle_id, timestamp=timestamp)


@dataclass(frozen=True, slots=True)
class Revision:
    """Timestamp and kind of the last accepted event for one id.

    A revision whose kind is ``DELETE`` is a tombstone.
    """

    timestamp: float
    kind: ChangeKind

    @property
    def is_tombstone(self) -> bool:
        return self.kind == ChangeKind.DELETE


@dataclass(frozen=True, slots=True)
class Rejection:
    """A change event the reducer refused, and why."""

    event: ChangeEvent
    reason: str
