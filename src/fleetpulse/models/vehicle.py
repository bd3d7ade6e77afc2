"""Vehicle snapshot model."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from fleetpulse.ingestion.normalize import normalize_timestamp_seconds, prune_patch, safe_bool, safe_float, safe_str
from fleetpulse.models._base import FleetBaseModel

LATITUDE_RANGE = (-90.0, 90.0)
LONGITUDE_RANGE = (-180.0, 180.0)


class CrowdLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def _missing_(cls, value: object) -> CrowdLevel | None:
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value.lower() == wanted:
                    return member
        return None


class Position(FleetBaseModel):
    """A latitude/longitude pair in degrees."""

    latitude: float = Field(
        ge=LATITUDE_RANGE[0],
        le=LATITUDE_RANGE[1],
        validation_alias=AliasChoices("latitude", "lat"),
    )
    longitude: float = Field(
        ge=LONGITUDE_RANGE[0],
        le=LONGITUDE_RANGE[1],
        validation_alias=AliasChoices("longitude", "lng", "lon"),
    )


def position_in_range(latitude: float, longitude: float) -> bool:
    return (
        LATITUDE_RANGE[0] <= latitude <= LATITUDE_RANGE[1]
        and LONGITUDE_RANGE[0] <= longitude <= LONGITUDE_RANGE[1]
    )


class VehicleSnapshot(FleetBaseModel):
    """One tracked vehicle as held by the fleet store.

    Fields are mapped from the ``live_fleet`` table columns; ``from_row``
    and ``to_row`` translate between the two spellings.
    """

    id: str = Field(min_length=1)
    """Stable opaque identifier."""
    route_label: str = Field(validation_alias=AliasChoices("route_label", "route_no", "routeLabel"))
    """Route number shown to passengers (e.g. ``"15"``)."""
    position: Position
    crowd_level: CrowdLevel = Field(
        default=CrowdLevel.LOW,
        validation_alias=AliasChoices("crowd_level", "crowdLevel"),
    )
    last_stop_label: str = Field(
        default="",
        validation_alias=AliasChoices("last_stop_label", "last_stop", "lastStop"),
    )
    """Nearest known stop."""
    active: bool = Field(default=True, validation_alias=AliasChoices("active", "is_active", "isActive"))
    updated_at: float = Field(default=0.0, validation_alias=AliasChoices("updated_at", "updatedAt"))
    """Epoch seconds of the change that produced this snapshot."""

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_position(cls, values: Any) -> Any:
        if not isinstance(values, dict) or isinstance(values.get("position"), (dict, Position)):
            return values
        lat = next((values[k] for k in ("latitude", "lat") if values.get(k) is not None), None)
        lng = next((values[k] for k in ("longitude", "lng", "lon") if values.get(k) is not None), None)
        if lat is None and lng is None:
            return values
        merged = dict(values)
        merged["position"] = {"latitude": lat, "longitude": lng}
        return merged

    @field_validator("id", "route_label", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        text = safe_str(value)
        return text if text is not None else value

    @field_validator("crowd_level", mode="before")
    @classmethod
    def _coerce_crowd_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return CrowdLevel(value.strip())
            except ValueError:
                return value
        return value

    @field_validator("updated_at", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> float:
        return normalize_timestamp_seconds(value) or 0.0

    @property
    def latitude(self) -> float:
        return self.position.latitude

    @property
    def longitude(self) -> float:
        return self.position.longitude

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> VehicleSnapshot:
        """Validate a raw ``live_fleet`` row."""
        return cls.model_validate(row)

    def to_row(self) -> dict[str, Any]:
        """Serialize back to ``live_fleet`` column names."""
        return {
            "id": self.id,
            "route_no": self.route_label,
            "lat": self.position.latitude,
            "lng": self.position.longitude,
            "crowd_level": self.crowd_level.value,
            "last_stop": self.last_stop_label,
            "is_active": self.active,
            "updated_at": datetime.fromtimestamp(self.updated_at, tz=UTC).isoformat() if self.updated_at else None,
        }


# Wire column -> change-payload key.
_ROW_TO_PAYLOAD: dict[str, str] = {
    "route_no": "route_label",
    "route_label": "route_label",
    "lat": "latitude",
    "latitude": "latitude",
    "lng": "longitude",
    "lon": "longitude",
    "longitude": "longitude",
    "crowd_level": "crowd_level",
    "last_stop": "last_stop_label",
    "last_stop_label": "last_stop_label",
    "is_active": "active",
    "active": "active",
}


def row_to_payload(row: dict[str, Any]) -> dict[str, Any]:
    """Translate a wire row into a change payload keyed by model field names.

    Unknown columns are dropped; empty values are pruned so that a partial
    row never blanks out known fields.
    """
    payload: dict[str, Any] = {}
    for column, value in row.items():
        key = _ROW_TO_PAYLOAD.get(column)
        if key is None:
            continue
        if key in ("latitude", "longitude"):
            value = safe_float(value)
        elif key == "active":
            value = safe_bool(value)
        elif key in ("route_label", "last_stop_label", "crowd_level"):
            value = safe_str(value)
        payload[key] = value
    return prune_patch(payload)


# Change-payload key -> wire column.
_PAYLOAD_TO_ROW: dict[str, str] = {
    "route_label": "route_no",
    "latitude": "lat",
    "longitude": "lng",
    "crowd_level": "crowd_level",
    "last_stop_label": "last_stop",
    "active": "is_active",
}


def payload_to_row(payload: dict[str, Any]) -> dict[str, Any]:
    """Translate a change payload back into wire columns (for outbound writes)."""
    flat = dict(payload)
    position = flat.pop("position", None)
    if isinstance(position, Position):
        flat.setdefault("latitude", position.latitude)
        flat.setdefault("longitude", position.longitude)
    elif isinstance(position, dict):
        flat.setdefault("latitude", position.get("latitude"))
        flat.setdefault("longitude", position.get("longitude"))
    row: dict[str, Any] = {}
    for key, value in flat.items():
        column = _PAYLOAD_TO_ROW.get(key)
        if column is None or value is None:
            continue
        row[column] = value.value if isinstance(value, CrowdLevel) else value
    return row
