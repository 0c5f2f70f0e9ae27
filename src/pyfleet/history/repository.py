"""Route history storage interface and the in-memory implementation."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Hashable, Iterable
from typing import Protocol

from pyfleet._constants import DEFAULT_HISTORY_LIMIT, DISTANCE_REL_TOLERANCE
from pyfleet.exceptions import ConflictDetectedError, DataQualityError
from pyfleet.history.repair import find_duplicates
from pyfleet.models.route import RouteFilter, RouteSegment

NaturalKey = Callable[[RouteSegment], Hashable | None]


class RouteHistoryRepository(Protocol):
    """Structural interface for durable route storage.

    Segments are append-only: ``persist`` never overwrites and nothing
    mutates a stored point list.  Persisting the same segment again is a
    no-op that returns its id; different points under a stored id is a
    :class:`~pyfleet.exceptions.ConflictDetectedError`.  Implementations raise
    :class:`~pyfleet.exceptions.RepositoryUnavailableError` for storage
    failures and never leave a partially written segment visible.
    """

    async def persist(self, segment: RouteSegment) -> str: ...

    async def get(self, segment_id: str) -> RouteSegment | None: ...

    async def query(
        self,
        company_id: str,
        route_filter: RouteFilter | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[RouteSegment]: ...

    async def find_duplicate_keys(self, company_id: str, *, key: NaturalKey) -> dict[Hashable, list[RouteSegment]]: ...

    async def update_metadata(
        self,
        segment_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
    ) -> RouteSegment | None: ...

    async def delete(self, segment_id: str) -> bool: ...


def check_segment(segment: RouteSegment, *, rel_tol: float = DISTANCE_REL_TOLERANCE) -> None:
    """Verify the stored distance matches the haversine sum over the points."""
    recomputed = segment.recompute_distance_km()
    if not math.isclose(recomputed, segment.distance_km, rel_tol=rel_tol, abs_tol=1e-9):
        raise DataQualityError(
            f"segment {segment.id} distance {segment.distance_km} km does not match its points ({recomputed} km)"
        )


def select_segments(
    segments: Iterable[RouteSegment],
    company_id: str,
    route_filter: RouteFilter | None,
    limit: int,
) -> list[RouteSegment]:
    """Filter, order newest-first by start time, and cap at *limit*."""
    criteria = route_filter or RouteFilter()
    matched = [s for s in segments if s.company_id == company_id and criteria.matches(s)]
    matched.sort(key=lambda s: (s.start_time, s.created_at), reverse=True)
    return matched[: max(limit, 0)]


class InMemoryRouteRepository:
    """Process-local repository, mainly for tests and single-node setups."""

    def __init__(self) -> None:
        self._segments: dict[str, RouteSegment] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._segments)

    async def persist(self, segment: RouteSegment) -> str:
        check_segment(segment)
        async with self._lock:
            existing = self._segments.get(segment.id)
            if existing is not None:
                if existing.points == segment.points:
                    return segment.id
                raise ConflictDetectedError(
                    f"segment id {segment.id} already stored with other points",
                    conflicts={segment.id: [existing, segment]},
                )
            self._segments[segment.id] = segment
        return segment.id

    async def get(self, segment_id: str) -> RouteSegment | None:
        return self._segments.get(segment_id)

    async def query(
        self,
        company_id: str,
        route_filter: RouteFilter | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[RouteSegment]:
        async with self._lock:
            snapshot = list(self._segments.values())
        return select_segments(snapshot, company_id, route_filter, limit)

    async def find_duplicate_keys(self, company_id: str, *, key: NaturalKey) -> dict[Hashable, list[RouteSegment]]:
        async with self._lock:
            owned = [s for s in self._segments.values() if s.company_id == company_id]
        return find_duplicates(owned, key, order_by=lambda s: (s.created_at, s.id))

    async def update_metadata(
        self,
        segment_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
    ) -> RouteSegment | None:
        async with self._lock:
            existing = self._segments.get(segment_id)
            if existing is None:
                return None
            amended = existing.with_metadata(name=name, notes=notes)
            self._segments[segment_id] = amended
            return amended

    async def delete(self, segment_id: str) -> bool:
        async with self._lock:
            return self._segments.pop(segment_id, None) is not None
