"""pyfleet - Async fleet GPS ingestion, live fleet state and route history."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleet")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleet.config import FleetConfig, MqttSettings
from pyfleet.exceptions import (
    ConflictDetectedError,
    DataQualityError,
    FleetConfigError,
    FleetError,
    InsufficientDataError,
    RepositoryUnavailableError,
)
from pyfleet.history import (
    DuplicateReport,
    InMemoryRouteRepository,
    RouteHistoryRepository,
    SqliteRouteRepository,
)
from pyfleet.ingestion.events import DropReason, IngestionStats
from pyfleet.models import (
    FleetSnapshot,
    LatLng,
    LocationReport,
    LocationSample,
    RouteFilter,
    RouteSegment,
    TrailPoint,
    VehicleState,
    VehicleStatus,
)
from pyfleet.service import IngestionService, SubmitResult

__all__ = [
    "__version__",
    "ConflictDetectedError",
    "DataQualityError",
    "DropReason",
    "DuplicateReport",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "FleetSnapshot",
    "InMemoryRouteRepository",
    "IngestionService",
    "IngestionStats",
    "InsufficientDataError",
    "LatLng",
    "LocationReport",
    "LocationSample",
    "MqttSettings",
    "RepositoryUnavailableError",
    "RouteFilter",
    "RouteHistoryRepository",
    "RouteSegment",
    "SqliteRouteRepository",
    "SubmitResult",
    "TrailPoint",
    "VehicleState",
    "VehicleStatus",
]
