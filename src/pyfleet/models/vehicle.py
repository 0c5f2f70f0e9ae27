"""Live vehicle state model."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from pyfleet.models._base import FleetBaseModel, OptionalUtcTimestamp, UtcTimestamp
from pyfleet.models.location import LatLng


class VehicleStatus(StrEnum):
    ONLINE = "online"
    INACTIVE = "inactive"
    OFFLINE = "offline"


class VehicleState(FleetBaseModel):
    """Latest known state of one vehicle identity.

    Identity is ``(company_id, driver_name)``; ``vehicle_id`` names the
    device row that produced the state and may change on reassignment.
    Instances are replaced wholesale by the store, never mutated.
    """

    vehicle_id: str
    driver_name: str = ""
    license_plate: str = ""
    company_id: str
    position: LatLng
    last_update: UtcTimestamp
    last_online: OptionalUtcTimestamp = None
    explicit_offline: bool = False
    heading_degrees: float | None = None

    @property
    def identity(self) -> tuple[str, str]:
        # Reports without a driver name fall back to the device id so that
        # anonymous devices don't collapse into one entry.
        return (self.company_id, self.driver_name or f"vehicle:{self.vehicle_id}")

    def age_seconds(self, now: datetime) -> float:
        return (now - self.last_update).total_seconds()


class FleetSnapshot(BaseModel):
    """Active/stale partition of a company's fleet at one instant."""

    model_config = ConfigDict(frozen=True)

    active: list[VehicleState] = Field(default_factory=list)
    stale: list[VehicleState] = Field(default_factory=list)
