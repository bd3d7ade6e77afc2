"""Local position samples."""

from __future__ import annotations

import math

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from fleetpulse.exceptions import FleetValidationError
from fleetpulse.models.vehicle import Position, position_in_range

EARTH_RADIUS_M = 6_371_008.8


class PositionSample(BaseModel):
    """One reading from the device's location provider.

    Range checks are deferred to :meth:`to_position` so that a bad reading
    surfaces as a :class:`FleetValidationError` in the broadcaster rather
    than crashing the source that produced it.

    Parameters
    ----------
    latitude, longitude : float
        Degrees.
    accuracy : float or None
        Horizontal accuracy radius in metres.
    timestamp : float
        Epoch seconds the reading was taken.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))
    accuracy: float | None = None
    timestamp: float

    def to_position(self) -> Position:
        if not position_in_range(self.latitude, self.longitude):
            raise FleetValidationError(
                f"Position sample out of range: lat={self.latitude} lng={self.longitude}"
            )
        return Position(latitude=self.latitude, longitude=self.longitude)


def distance_m(a: Position, b: Position) -> float:
    """Great-circle (haversine) distance between two positions in metres."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlng = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))
