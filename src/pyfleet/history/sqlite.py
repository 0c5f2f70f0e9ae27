"""SQLite-backed route history.

Blocking ``sqlite3`` calls run in a worker thread so the event loop is never
held up by disk I/O.  Each write is a single transaction: a segment row and
its points are stored together or not at all.  A caller that times out or is
cancelled while its statement waits for the connection lock abandons it; once
the statement holds the lock it commits regardless, so a later lookup under
the same lock sees the real outcome.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Hashable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar, cast

from pyfleet._constants import DEFAULT_HISTORY_LIMIT
from pyfleet.exceptions import ConflictDetectedError, RepositoryUnavailableError
from pyfleet.history.repair import find_duplicates
from pyfleet.history.repository import check_segment
from pyfleet.models.route import RouteFilter, RouteSegment, TrailPoint

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS route_segments (
  id TEXT PRIMARY KEY,
  company_id TEXT NOT NULL,
  vehicle_id TEXT NOT NULL,
  driver_name TEXT NOT NULL,
  license_plate TEXT NOT NULL,
  start_time TEXT NOT NULL,
  end_time TEXT NOT NULL,
  distance_km REAL NOT NULL,
  points TEXT NOT NULL,
  name TEXT,
  notes TEXT,
  auto_saved INTEGER NOT NULL,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_route_segments_company_start
  ON route_segments (company_id, start_time DESC);
CREATE INDEX IF NOT EXISTS idx_route_segments_vehicle
  ON route_segments (company_id, vehicle_id);
"""

_COLUMNS = (
    "id, company_id, vehicle_id, driver_name, license_plate, start_time, end_time, "
    "distance_km, points, name, notes, auto_saved, created_at"
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _dump_points(points: Sequence[TrailPoint]) -> str:
    return json.dumps([[p.lat, p.lng, _iso(p.timestamp)] for p in points])


def _load_points(text: str) -> tuple[TrailPoint, ...]:
    return tuple(TrailPoint(lat=lat, lng=lng, timestamp=ts) for lat, lng, ts in json.loads(text))


def _segment_from_row(row: Sequence[Any]) -> RouteSegment:
    (
        segment_id,
        company_id,
        vehicle_id,
        driver_name,
        license_plate,
        start_time,
        end_time,
        distance_km,
        points,
        name,
        notes,
        auto_saved,
        created_at,
    ) = row
    return RouteSegment(
        id=segment_id,
        company_id=company_id,
        vehicle_id=vehicle_id,
        driver_name=driver_name,
        license_plate=license_plate,
        start_time=start_time,
        end_time=end_time,
        distance_km=distance_km,
        points=_load_points(points),
        name=name,
        notes=notes,
        auto_saved=bool(auto_saved),
        created_at=created_at,
    )


def _iso(value: datetime) -> str:
    # Fixed width, so text order equals time order.
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class _ThreadCall:
    """Hand-off between a waiting coroutine and the thread running its statement.

    A statement that has started always runs to completion.  A caller that
    gives up before then is guaranteed the statement never runs.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._started = False
        self._abandoned = False

    def begin(self) -> bool:
        with self._guard:
            if self._abandoned:
                return False
            self._started = True
            return True

    def abandon(self) -> bool:
        """Give up on the statement; True if it had already started."""
        with self._guard:
            self._abandoned = True
            return self._started


class SqliteRouteRepository:
    """Route repository over a ``sqlite3`` connection.

    Timestamps are stored as UTC ISO-8601 strings, which sort
    chronologically as text.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        ensure_schema(conn)

    @classmethod
    def open(cls, path: str, *, timeout: float = 5.0) -> SqliteRouteRepository:
        """Open (or create) a database file usable from worker threads."""
        conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, operation: str, fn: Callable[[], T]) -> T:
        call = _ThreadCall()

        def locked() -> T | None:
            with self._lock:
                if not call.begin():
                    return None
                return fn()

        try:
            result = await asyncio.to_thread(locked)
        except asyncio.CancelledError:
            if call.abandon():
                _logger.debug("Route storage %s was already running when its caller gave up", operation)
            raise
        except sqlite3.Error as exc:
            _logger.warning("Route storage %s failed: %s", operation, exc)
            raise RepositoryUnavailableError(f"route storage {operation} failed: {exc}", operation=operation) from exc
        return cast(T, result)

    async def persist(self, segment: RouteSegment) -> str:
        check_segment(segment)
        points = _dump_points(segment.points)

        def write() -> bool:
            with self._conn:
                cursor = self._conn.execute(
                    f"INSERT INTO route_segments ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (id) DO NOTHING",
                    (
                        segment.id,
                        segment.company_id,
                        segment.vehicle_id,
                        segment.driver_name,
                        segment.license_plate,
                        _iso(segment.start_time),
                        _iso(segment.end_time),
                        segment.distance_km,
                        points,
                        segment.name,
                        segment.notes,
                        int(segment.auto_saved),
                        _iso(segment.created_at),
                    ),
                )
                if cursor.rowcount:
                    return True
                row = self._conn.execute("SELECT points FROM route_segments WHERE id = ?", (segment.id,)).fetchone()
            return row is not None and row[0] == points

        if not await self._run("persist", write):
            raise ConflictDetectedError(
                f"segment id {segment.id} already stored with other points",
                conflicts={segment.id: [segment]},
            )
        return segment.id

    async def get(self, segment_id: str) -> RouteSegment | None:
        def read() -> RouteSegment | None:
            row = self._conn.execute(f"SELECT {_COLUMNS} FROM route_segments WHERE id = ?", (segment_id,)).fetchone()
            return _segment_from_row(row) if row is not None else None

        return await self._run("get", read)

    async def query(
        self,
        company_id: str,
        route_filter: RouteFilter | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[RouteSegment]:
        criteria = route_filter or RouteFilter()
        clauses = ["company_id = ?"]
        params: list[Any] = [company_id]
        if criteria.vehicle_id is not None:
            clauses.append("vehicle_id = ?")
            params.append(criteria.vehicle_id)
        if criteria.start_date is not None:
            clauses.append("start_time >= ?")
            params.append(_iso(criteria.start_date))
        if criteria.end_date is not None:
            clauses.append("start_time <= ?")
            params.append(_iso(criteria.end_date))
        params.append(max(limit, 0))
        sql = (
            f"SELECT {_COLUMNS} FROM route_segments WHERE {' AND '.join(clauses)} "
            "ORDER BY start_time DESC, created_at DESC LIMIT ?"
        )

        def read() -> list[RouteSegment]:
            return [_segment_from_row(row) for row in self._conn.execute(sql, params).fetchall()]

        return await self._run("query", read)

    async def find_duplicate_keys(
        self,
        company_id: str,
        *,
        key: Callable[[RouteSegment], Hashable | None],
    ) -> dict[Hashable, list[RouteSegment]]:
        def read() -> list[RouteSegment]:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM route_segments WHERE company_id = ?",
                (company_id,),
            ).fetchall()
            return [_segment_from_row(row) for row in rows]

        segments = await self._run("find_duplicate_keys", read)
        return find_duplicates(segments, key, order_by=lambda s: (s.created_at, s.id))

    async def update_metadata(
        self,
        segment_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
    ) -> RouteSegment | None:
        def write() -> None:
            with self._conn:
                if name is not None:
                    self._conn.execute("UPDATE route_segments SET name = ? WHERE id = ?", (name, segment_id))
                if notes is not None:
                    self._conn.execute("UPDATE route_segments SET notes = ? WHERE id = ?", (notes, segment_id))

        await self._run("update_metadata", write)
        return await self.get(segment_id)

    async def delete(self, segment_id: str) -> bool:
        def write() -> bool:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM route_segments WHERE id = ?", (segment_id,))
            return cursor.rowcount > 0

        return await self._run("delete", write)
