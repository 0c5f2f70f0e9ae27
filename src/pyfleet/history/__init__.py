"""Route history storage and repair."""

from pyfleet.history.repair import DuplicateReport, find_duplicates, resolve_duplicates, route_natural_key
from pyfleet.history.repository import InMemoryRouteRepository, RouteHistoryRepository, check_segment
from pyfleet.history.sqlite import SqliteRouteRepository

__all__ = [
    "DuplicateReport",
    "InMemoryRouteRepository",
    "RouteHistoryRepository",
    "SqliteRouteRepository",
    "check_segment",
    "find_duplicates",
    "resolve_duplicates",
    "route_natural_key",
]
