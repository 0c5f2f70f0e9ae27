"""Location sample and producer report models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from pyfleet.ingestion.normalize import safe_float, safe_str
from pyfleet.models._base import FleetBaseModel, OptionalUtcTimestamp, UtcTimestamp


class LatLng(FleetBaseModel):
    """A WGS84 coordinate pair."""

    lat: float = Field(ge=-90.0, le=90.0, validation_alias=AliasChoices("lat", "latitude"))
    lng: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("lng", "lon", "longitude"))


class LocationSample(FleetBaseModel):
    """One raw GPS reading from a reporting device.

    Coordinates and accuracy are ``None`` when absent or unparseable;
    such samples are rejected by the filter rather than at construction.

    Parameters
    ----------
    latitude : float or None
        Latitude in degrees.
    longitude : float or None
        Longitude in degrees.
    accuracy_meters : float or None
        Horizontal accuracy radius reported by the device.
    heading_degrees : float or None
        Course over ground.
    speed : float or None
        Speed as reported by the device.
    captured_at : datetime
        When the device took the fix (UTC).
    """

    latitude: float | None = Field(default=None, validation_alias=AliasChoices("latitude", "lat"))
    longitude: float | None = Field(default=None, validation_alias=AliasChoices("longitude", "lng", "lon"))
    accuracy_meters: float | None = Field(default=None, validation_alias=AliasChoices("accuracyMeters", "accuracy"))
    heading_degrees: float | None = Field(default=None, validation_alias=AliasChoices("headingDegrees", "heading"))
    speed: float | None = None
    captured_at: UtcTimestamp = Field(validation_alias=AliasChoices("capturedAt", "timestamp"))

    @field_validator("latitude", "longitude", "accuracy_meters", "heading_degrees", "speed", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @property
    def lat(self) -> float:
        return float(self.latitude) if self.latitude is not None else float("nan")

    @property
    def lng(self) -> float:
        return float(self.longitude) if self.longitude is not None else float("nan")

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class LocationReport(FleetBaseModel):
    """A message from the upstream producer stream.

    Carries the reporter identity alongside the raw fix.  ``offline`` is the
    explicit "went offline" signal a device sets when it can no longer
    report (app backgrounded, permission revoked).
    """

    vehicle_id: str = Field(validation_alias=AliasChoices("vehicleId", "vehicle_id", "id"))
    driver_name: str = ""
    license_plate: str = ""
    company_id: str = Field(validation_alias=AliasChoices("companyId", "companyID", "company_id"))
    latitude: float | None = Field(default=None, validation_alias=AliasChoices("latitude", "lat"))
    longitude: float | None = Field(default=None, validation_alias=AliasChoices("longitude", "lng", "lon"))
    accuracy_meters: float | None = Field(default=None, validation_alias=AliasChoices("accuracyMeters", "accuracy"))
    heading_degrees: float | None = Field(default=None, validation_alias=AliasChoices("headingDegrees", "heading"))
    speed: float | None = None
    captured_at: OptionalUtcTimestamp = Field(default=None, validation_alias=AliasChoices("capturedAt", "timestamp"))
    offline: bool = Field(default=False, validation_alias=AliasChoices("offline", "isOffline"))
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _flatten_location(cls, values: Any) -> Any:
        """Accept the nested ``{"location": {...}}`` shape some devices send."""
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        nested = values.get("location")
        if isinstance(nested, dict):
            for key, value in nested.items():
                merged.setdefault(key, value)
        merged.setdefault("raw", dict(values))
        return merged

    @field_validator("vehicle_id", "company_id", mode="before")
    @classmethod
    def _require_identity(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("identity fields must be non-empty")
        return text

    @field_validator("driver_name", "license_plate", mode="before")
    @classmethod
    def _strip_labels(cls, value: Any) -> str:
        return safe_str(value) or ""

    @field_validator("latitude", "longitude", "accuracy_meters", "heading_degrees", "speed", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    def to_sample(self, *, default_captured_at: datetime) -> LocationSample:
        """Project the report onto the reporter-agnostic sample model."""
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_meters=self.accuracy_meters,
            heading_degrees=self.heading_degrees,
            speed=self.speed,
            captured_at=self.captured_at or default_captured_at,
        )
