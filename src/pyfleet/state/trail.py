"""Per-vehicle trail buffers and the auto-save decision.

A trail is the run of accepted points since the vehicle's last committed
route segment.  :meth:`TrailAccumulator.tick` is evaluated on a schedule and
decides when a buffered run becomes a :class:`~pyfleet.models.RouteSegment`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from pyfleet._constants import (
    AUTO_SAVE_INTERVAL_SECONDS,
    AUTO_SAVE_MIN_POINTS,
    MIN_ROUTE_DISTANCE_KM,
    TRAIL_MIN_SPACING_SECONDS,
)
from pyfleet.exceptions import InsufficientDataError
from pyfleet.geo import path_length_km
from pyfleet.models.route import RouteSegment, SegmentOwner, TrailPoint

_logger = logging.getLogger(__name__)


@dataclass
class _VehicleTrail:
    owner: SegmentOwner
    points: list[TrailPoint] = field(default_factory=list)
    last_auto_save_at: datetime | None = None


class TrailAccumulator:
    """Buffers accepted points per vehicle and materialises route segments.

    Not safe for concurrent use on the same vehicle: callers must serialise
    :meth:`append`, :meth:`tick` and :meth:`manual_flush` per vehicle id.

    Parameters
    ----------
    min_spacing_seconds
        A point is buffered only if it is *more than* this many seconds after
        the last buffered point.
    min_points
        Auto-save needs at least this many buffered points.
    auto_save_interval_seconds
        Minimum time between two auto-saves of the same vehicle.
    min_distance_km
        Auto-save produces a segment only for trails at least this long.
    carry_forward
        When a sub-threshold trail is discarded, keep its last point as the
        seed of the next buffer instead of clearing completely.
    """

    def __init__(
        self,
        *,
        min_spacing_seconds: float = TRAIL_MIN_SPACING_SECONDS,
        min_points: int = AUTO_SAVE_MIN_POINTS,
        auto_save_interval_seconds: float = AUTO_SAVE_INTERVAL_SECONDS,
        min_distance_km: float = MIN_ROUTE_DISTANCE_KM,
        carry_forward: bool = False,
    ) -> None:
        self._min_spacing_seconds = min_spacing_seconds
        self._min_points = min_points
        self._auto_save_interval_seconds = auto_save_interval_seconds
        self._min_distance_km = min_distance_km
        self._carry_forward = carry_forward
        self._trails: dict[str, _VehicleTrail] = {}
        self.discarded = 0

    def _trail(self, vehicle_id: str, owner: SegmentOwner | None) -> _VehicleTrail:
        trail = self._trails.get(vehicle_id)
        if trail is None:
            trail = _VehicleTrail(owner=owner or SegmentOwner(vehicle_id=vehicle_id))
            self._trails[vehicle_id] = trail
        elif owner is not None:
            trail.owner = owner
        return trail

    def vehicle_ids(self) -> list[str]:
        return sorted(self._trails)

    def buffer(self, vehicle_id: str) -> list[TrailPoint]:
        """Copy of the current buffer for *vehicle_id*."""
        trail = self._trails.get(vehicle_id)
        return list(trail.points) if trail is not None else []

    def last_auto_save_at(self, vehicle_id: str) -> datetime | None:
        trail = self._trails.get(vehicle_id)
        return trail.last_auto_save_at if trail is not None else None

    def append(self, vehicle_id: str, point: TrailPoint, *, owner: SegmentOwner | None = None) -> bool:
        """Buffer *point* unless it is too close in time to the previous one."""
        trail = self._trail(vehicle_id, owner)
        if trail.points:
            gap = (point.timestamp - trail.points[-1].timestamp).total_seconds()
            if gap <= self._min_spacing_seconds:
                return False
        trail.points.append(point)
        return True

    def tick(self, vehicle_id: str, now: datetime) -> RouteSegment | None:
        """Evaluate the auto-save rule for one vehicle.

        Returns a segment ready to persist, or None.  A trail that meets the
        point/interval criteria but is shorter than ``min_distance_km`` is
        discarded without producing a segment.
        """
        trail = self._trails.get(vehicle_id)
        if trail is None or len(trail.points) < self._min_points:
            return None
        if (
            trail.last_auto_save_at is not None
            and (now - trail.last_auto_save_at).total_seconds() <= self._auto_save_interval_seconds
        ):
            return None

        distance = path_length_km(trail.points)
        if distance < self._min_distance_km:
            _logger.debug(
                "Discarding short trail vehicle=%s points=%d distance_km=%.4f",
                vehicle_id,
                len(trail.points),
                distance,
            )
            trail.points = [trail.points[-1]] if self._carry_forward else []
            self.discarded += 1
            return None

        segment = RouteSegment.from_points(trail.points, owner=trail.owner, created_at=now, auto_saved=True)
        trail.points = []
        trail.last_auto_save_at = now
        _logger.debug(
            "Auto-saved trail vehicle=%s segment=%s points=%d distance_km=%.3f",
            vehicle_id,
            segment.id,
            len(segment.points),
            segment.distance_km,
        )
        return segment

    def manual_flush(
        self,
        vehicle_id: str,
        name: str | None,
        notes: str | None,
        *,
        now: datetime,
    ) -> RouteSegment:
        """Build a segment from the whole buffer, ignoring auto-save thresholds.

        Raises
        ------
        InsufficientDataError
            Fewer than two points are buffered.
        """
        trail = self._trails.get(vehicle_id)
        count = len(trail.points) if trail is not None else 0
        if trail is None or count < 2:
            raise InsufficientDataError(
                f"vehicle {vehicle_id} has {count} buffered point(s); at least 2 are needed",
                vehicle_id=vehicle_id,
                points=count,
            )
        segment = RouteSegment.from_points(
            trail.points,
            owner=trail.owner,
            created_at=now,
            auto_saved=False,
            name=name,
            notes=notes,
        )
        trail.points = []
        return segment

    def restore(self, vehicle_id: str, points: list[TrailPoint], last_auto_save_at: datetime | None) -> None:
        """Undo a flush: put *points* back at the front of the buffer.

        Used when a flush is abandoned before its segment was committed.
        """
        trail = self._trail(vehicle_id, None)
        trail.points = list(points) + trail.points
        trail.last_auto_save_at = last_auto_save_at

    def is_idle(self, vehicle_id: str, now: datetime) -> bool:
        """True when dropping the vehicle's trail would lose nothing.

        That is an empty buffer and no auto-save recent enough to still
        hold back the next one.
        """
        trail = self._trails.get(vehicle_id)
        if trail is None:
            return True
        if trail.points:
            return False
        return (
            trail.last_auto_save_at is None
            or (now - trail.last_auto_save_at).total_seconds() > self._auto_save_interval_seconds
        )

    def discard(self, vehicle_id: str) -> None:
        self._trails.pop(vehicle_id, None)
