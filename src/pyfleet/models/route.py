"""Trail point and persisted route segment models."""

from __future__ import annotations

import secrets
from collections.abc import Sequence
from datetime import datetime

from pydantic import Field, field_validator, model_validator

from pyfleet.geo import path_length_km
from pyfleet.models._base import FleetBaseModel, OptionalUtcTimestamp, UtcTimestamp


def new_segment_id() -> str:
    return secrets.token_hex(16)


class TrailPoint(FleetBaseModel):
    """One accepted position in a vehicle's not-yet-persisted trail."""

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    timestamp: UtcTimestamp


class SegmentOwner(FleetBaseModel):
    """Who a route segment belongs to."""

    vehicle_id: str
    driver_name: str = ""
    license_plate: str = ""
    company_id: str = ""


class RouteSegment(FleetBaseModel):
    """A persisted, immutable trip record.

    Only ``name`` and ``notes`` may be amended (see :meth:`with_metadata`);
    the point list never changes after construction.
    """

    id: str = Field(default_factory=new_segment_id)
    vehicle_id: str
    driver_name: str = ""
    license_plate: str = ""
    company_id: str
    start_time: UtcTimestamp
    end_time: UtcTimestamp
    distance_km: float = Field(ge=0.0)
    points: tuple[TrailPoint, ...]
    name: str | None = None
    notes: str | None = None
    auto_saved: bool = False
    created_at: UtcTimestamp

    @field_validator("points")
    @classmethod
    def _at_least_two_points(cls, value: tuple[TrailPoint, ...]) -> tuple[TrailPoint, ...]:
        if len(value) < 2:
            raise ValueError("a route segment needs at least two points")
        return value

    @model_validator(mode="after")
    def _ordered_times(self) -> RouteSegment:
        if self.end_time < self.start_time:
            raise ValueError("end_time precedes start_time")
        return self

    @classmethod
    def from_points(
        cls,
        points: Sequence[TrailPoint],
        *,
        owner: SegmentOwner,
        created_at: datetime,
        auto_saved: bool,
        name: str | None = None,
        notes: str | None = None,
    ) -> RouteSegment:
        """Build a segment whose distance is derived from *points*."""
        ordered = tuple(points)
        return cls(
            vehicle_id=owner.vehicle_id,
            driver_name=owner.driver_name,
            license_plate=owner.license_plate,
            company_id=owner.company_id,
            start_time=ordered[0].timestamp,
            end_time=ordered[-1].timestamp,
            distance_km=path_length_km(ordered),
            points=ordered,
            name=name,
            notes=notes,
            auto_saved=auto_saved,
            created_at=created_at,
        )

    def recompute_distance_km(self) -> float:
        return path_length_km(self.points)

    def with_metadata(self, *, name: str | None = None, notes: str | None = None) -> RouteSegment:
        update: dict[str, str | None] = {}
        if name is not None:
            update["name"] = name
        if notes is not None:
            update["notes"] = notes
        return self.model_copy(update=update)


class RouteFilter(FleetBaseModel):
    """Optional criteria for route history queries."""

    vehicle_id: str | None = None
    start_date: OptionalUtcTimestamp = None
    end_date: OptionalUtcTimestamp = None

    def matches(self, segment: RouteSegment) -> bool:
        if self.vehicle_id is not None and segment.vehicle_id != self.vehicle_id:
            return False
        if self.start_date is not None and segment.start_time < self.start_date:
            return False
        return not (self.end_date is not None and segment.start_time > self.end_date)
