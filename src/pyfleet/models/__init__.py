"""Data models for fleet state and route history."""

from pyfleet.models._base import FleetBaseModel, OptionalUtcTimestamp, UtcTimestamp
from pyfleet.models.location import LatLng, LocationReport, LocationSample
from pyfleet.models.route import RouteFilter, RouteSegment, SegmentOwner, TrailPoint, new_segment_id
from pyfleet.models.vehicle import FleetSnapshot, VehicleState, VehicleStatus

__all__ = [
    "FleetBaseModel",
    "FleetSnapshot",
    "LatLng",
    "LocationReport",
    "LocationSample",
    "OptionalUtcTimestamp",
    "RouteFilter",
    "RouteSegment",
    "SegmentOwner",
    "TrailPoint",
    "UtcTimestamp",
    "VehicleState",
    "VehicleStatus",
    "new_segment_id",
]
