from __future__ import annotations

import asyncio
import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from pyfleet.exceptions import ConflictDetectedError, DataQualityError, RepositoryUnavailableError
from pyfleet.geo import path_length_km
from pyfleet.history.repair import find_duplicates, resolve_duplicates, route_natural_key
from pyfleet.history.repository import InMemoryRouteRepository, RouteHistoryRepository, check_segment
from pyfleet.history.sqlite import SqliteRouteRepository
from pyfleet.models.route import RouteFilter, RouteSegment, SegmentOwner, TrailPoint

_T0 = datetime(2026, 4, 1, 6, 0, tzinfo=UTC)


def _segment(
    start: datetime = _T0,
    *,
    vehicle_id: str = "V1",
    company_id: str = "C1",
    created_at: datetime | None = None,
    points: int = 3,
) -> RouteSegment:
    trail = [
        TrailPoint(lat=45.0 + i * 0.001, lng=9.0 + i * 0.0005, timestamp=start + timedelta(minutes=i))
        for i in range(points)
    ]
    owner = SegmentOwner(vehicle_id=vehicle_id, driver_name="Ana", license_plate="AB123CD", company_id=company_id)
    return RouteSegment.from_points(trail, owner=owner, created_at=created_at or start + timedelta(hours=1), auto_saved=True)


def _repository(kind: str) -> RouteHistoryRepository:
    if kind == "memory":
        return InMemoryRouteRepository()
    return SqliteRouteRepository(sqlite3.connect(":memory:", check_same_thread=False))


BACKENDS = pytest.mark.parametrize("kind", ["memory", "sqlite"])


@BACKENDS
@pytest.mark.asyncio
async def test_persist_and_query_round_trip_preserves_distance(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment(points=6)

    assert await repo.persist(segment) == segment.id
    [stored] = await repo.query("C1")

    assert stored.id == segment.id
    assert stored.points == segment.points
    assert stored.start_time == segment.start_time
    assert stored.distance_km == pytest.approx(path_length_km(stored.points), rel=1e-9)
    check_segment(stored)


@BACKENDS
@pytest.mark.asyncio
async def test_query_orders_newest_first_and_applies_limit(kind: str) -> None:
    repo = _repository(kind)
    for day in range(5):
        await repo.persist(_segment(_T0 + timedelta(days=day)))

    result = await repo.query("C1", limit=3)

    assert [s.start_time for s in result] == [_T0 + timedelta(days=d) for d in (4, 3, 2)]


@BACKENDS
@pytest.mark.asyncio
async def test_query_filters(kind: str) -> None:
    repo = _repository(kind)
    await repo.persist(_segment(_T0, vehicle_id="V1"))
    await repo.persist(_segment(_T0 + timedelta(days=1), vehicle_id="V2"))
    await repo.persist(_segment(_T0 + timedelta(days=2), vehicle_id="V1"))
    await repo.persist(_segment(_T0, company_id="C2"))

    by_vehicle = await repo.query("C1", RouteFilter(vehicle_id="V1"))
    assert {s.vehicle_id for s in by_vehicle} == {"V1"}
    assert len(by_vehicle) == 2

    window = RouteFilter(start_date=_T0 + timedelta(days=1), end_date=_T0 + timedelta(days=1))
    assert [s.vehicle_id for s in await repo.query("C1", window)] == ["V2"]

    assert len(await repo.query("C2")) == 1
    assert await repo.query("C3") == []


@BACKENDS
@pytest.mark.asyncio
async def test_persist_is_idempotent_on_segment_id(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment()
    assert await repo.persist(segment) == segment.id
    assert await repo.persist(segment) == segment.id
    assert len(await repo.query("C1")) == 1


@BACKENDS
@pytest.mark.asyncio
async def test_persist_rejects_other_points_under_a_stored_id(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment()
    await repo.persist(segment)
    other = _segment(points=4).model_copy(update={"id": segment.id})
    with pytest.raises(ConflictDetectedError):
        await repo.persist(other)
    [stored] = await repo.query("C1")
    assert stored.points == segment.points


@BACKENDS
@pytest.mark.asyncio
async def test_persist_rejects_inconsistent_distance(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment().model_copy(update={"distance_km": 99.0})
    with pytest.raises(DataQualityError):
        await repo.persist(segment)
    assert await repo.query("C1") == []


@BACKENDS
@pytest.mark.asyncio
async def test_update_metadata_never_touches_points(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment()
    await repo.persist(segment)

    amended = await repo.update_metadata(segment.id, name="School run")

    assert amended is not None
    assert amended.name == "School run"
    assert amended.notes is None
    assert amended.points == segment.points
    assert await repo.update_metadata("missing", name="x") is None


@BACKENDS
@pytest.mark.asyncio
async def test_duplicates_are_reported_oldest_first_and_auto_fixed(kind: str) -> None:
    repo = _repository(kind)
    original = _segment(created_at=_T0 + timedelta(hours=1))
    copy_one = _segment(created_at=_T0 + timedelta(hours=2))
    copy_two = _segment(created_at=_T0 + timedelta(hours=3))
    other = _segment(_T0 + timedelta(days=1))
    for segment in (copy_two, original, other, copy_one):
        await repo.persist(segment)

    report = await resolve_duplicates(repo, "C1")
    assert report.has_conflicts
    [(key, members)] = report.conflicts.items()
    assert key == route_natural_key(original)
    assert [m.id for m in members] == [original.id, copy_one.id, copy_two.id]
    assert report.removed_ids == []
    assert len(await repo.query("C1")) == 4

    fixed = await resolve_duplicates(repo, "C1", auto_fix=True)
    assert sorted(fixed.removed_ids) == sorted([copy_one.id, copy_two.id])
    assert {s.id for s in await repo.query("C1")} == {original.id, other.id}
    assert not (await resolve_duplicates(repo, "C1")).has_conflicts


@BACKENDS
@pytest.mark.asyncio
async def test_delete(kind: str) -> None:
    repo = _repository(kind)
    segment = _segment()
    await repo.persist(segment)
    assert await repo.delete(segment.id)
    assert not await repo.delete(segment.id)


@pytest.mark.asyncio
async def test_sqlite_errors_map_to_repository_unavailable() -> None:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    repo = SqliteRouteRepository(conn)
    conn.execute("DROP TABLE route_segments")

    with pytest.raises(RepositoryUnavailableError) as excinfo:
        await repo.query("C1")
    assert excinfo.value.operation == "query"


@pytest.mark.asyncio
async def test_sqlite_open_persists_to_file(tmp_path) -> None:
    path = str(tmp_path / "routes.db")
    repo = SqliteRouteRepository.open(path)
    segment = _segment()
    await repo.persist(segment)
    repo.close()

    reopened = SqliteRouteRepository.open(path)
    try:
        [stored] = await reopened.query("C1")
        assert stored.id == segment.id
    finally:
        reopened.close()


@pytest.mark.asyncio
async def test_sqlite_write_abandoned_while_waiting_never_lands() -> None:
    repo = SqliteRouteRepository(sqlite3.connect(":memory:", check_same_thread=False))
    segment = _segment()

    repo._lock.acquire()
    try:
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(repo.persist(segment), timeout=0.05)
    finally:
        repo._lock.release()

    assert await repo.get(segment.id) is None
    assert await repo.query("C1") == []


def test_find_duplicates_generic_over_key() -> None:
    orders = [
        {"id": 1, "number": "A-100"},
        {"id": 2, "number": "A-101"},
        {"id": 3, "number": "A-100"},
        {"id": 4, "number": None},
        {"id": 5, "number": None},
    ]
    groups = find_duplicates(orders, lambda o: o["number"])
    assert list(groups) == ["A-100"]
    assert [o["id"] for o in groups["A-100"]] == [1, 3]


def test_segment_requires_two_points() -> None:
    with pytest.raises(ValueError):
        _segment(points=1)
