"""Custom exception hierarchy for pyfleet."""

from __future__ import annotations

from typing import Any


class FleetError(Exception):
    """Base exception for all pyfleet errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class DataQualityError(FleetError):
    """A sample or record failed validation.

    The ingestion pipeline never raises this for incoming samples; those
    are dropped and counted.  It is raised by explicit validation entry
    points (e.g. persisting a segment whose distance does not match its
    points).
    """


class InsufficientDataError(FleetError):
    """Not enough buffered points to build a route segment."""

    def __init__(self, message: str, *, vehicle_id: str = "", points: int = 0) -> None:
        self.vehicle_id = vehicle_id
        self.points = points
        super().__init__(message)


class RepositoryUnavailableError(FleetError):
    """Route storage failed (timeout, connectivity, I/O).

    Callers may retry with backoff; persisting the same segment again is
    safe.
    """

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class ConflictDetectedError(FleetError):
    """Records share a natural key that is expected to be unique."""

    def __init__(self, message: str, *, conflicts: dict[Any, list[Any]] | None = None) -> None:
        self.conflicts = conflicts or {}
        super().__init__(message)
