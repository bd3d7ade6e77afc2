"""Data models for fleet records."""

from fleetpulse.models._base import FleetBaseModel
from fleetpulse.models.position import PositionSample, distance_m
from fleetpulse.models.vehicle import CrowdLevel, Position, VehicleSnapshot, payload_to_row, row_to_payload

__all__ = [
    "CrowdLevel",
    "FleetBaseModel",
    "Position",
    "PositionSample",
    "VehicleSnapshot",
    "distance_m",
    "payload_to_row",
    "row_to_payload",
]
