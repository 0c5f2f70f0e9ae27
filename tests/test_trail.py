from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pyfleet.exceptions import InsufficientDataError
from pyfleet.geo import path_length_km
from pyfleet.models.route import SegmentOwner, TrailPoint
from pyfleet.state.trail import TrailAccumulator

_DEG_PER_M = 1.0 / 111_194.93
_T0 = datetime(2026, 2, 10, 7, 0, tzinfo=UTC)
_OWNER = SegmentOwner(vehicle_id="V1", driver_name="Ana", license_plate="AB123CD", company_id="C1")


def _point(i: int, *, step_m: float = 20.0, spacing_s: float = 61.0) -> TrailPoint:
    return TrailPoint(
        lat=45.0 + i * step_m * _DEG_PER_M,
        lng=9.0,
        timestamp=_T0 + timedelta(seconds=i * spacing_s),
    )


def _fill(trails: TrailAccumulator, count: int, *, step_m: float = 20.0, start: int = 0) -> None:
    for i in range(start, start + count):
        assert trails.append("V1", _point(i, step_m=step_m), owner=_OWNER)


def test_append_requires_more_than_sixty_seconds_gap() -> None:
    trails = TrailAccumulator()
    assert trails.append("V1", _point(0))
    assert not trails.append("V1", TrailPoint(lat=45.1, lng=9.0, timestamp=_T0 + timedelta(seconds=60)))
    assert trails.append("V1", TrailPoint(lat=45.1, lng=9.0, timestamp=_T0 + timedelta(seconds=60.5)))
    assert len(trails.buffer("V1")) == 2


def test_buffers_are_per_vehicle() -> None:
    trails = TrailAccumulator()
    trails.append("V1", _point(0))
    trails.append("V2", _point(0))
    assert trails.vehicle_ids() == ["V1", "V2"]
    assert len(trails.buffer("V1")) == 1


def test_nine_points_do_not_trigger_auto_save() -> None:
    trails = TrailAccumulator()
    _fill(trails, 9)
    assert trails.tick("V1", _T0 + timedelta(hours=1)) is None
    assert len(trails.buffer("V1")) == 9


def test_ten_points_over_distance_trigger_auto_save() -> None:
    trails = TrailAccumulator()
    _fill(trails, 10)
    now = _T0 + timedelta(hours=1)

    segment = trails.tick("V1", now)

    assert segment is not None
    assert segment.auto_saved
    assert len(segment.points) == 10
    assert segment.start_time == _point(0).timestamp
    assert segment.end_time == _point(9).timestamp
    assert segment.vehicle_id == "V1"
    assert segment.company_id == "C1"
    assert segment.driver_name == "Ana"
    assert segment.created_at == now
    assert segment.distance_km == pytest.approx(path_length_km(segment.points))
    assert segment.distance_km == pytest.approx(0.18, rel=1e-6)
    assert trails.buffer("V1") == []
    assert trails.last_auto_save_at("V1") == now


def test_distance_threshold_boundary() -> None:
    leg_m = 100.1 / 9
    trails = TrailAccumulator()
    _fill(trails, 10, step_m=leg_m)
    assert trails.tick("V1", _T0 + timedelta(hours=1)) is not None

    leg_m = 99.9 / 9
    trails = TrailAccumulator()
    _fill(trails, 10, step_m=leg_m)
    assert trails.tick("V1", _T0 + timedelta(hours=1)) is None


def test_short_trail_is_discarded_and_counted() -> None:
    trails = TrailAccumulator()
    _fill(trails, 10, step_m=1.0)
    assert trails.tick("V1", _T0 + timedelta(hours=1)) is None
    assert trails.buffer("V1") == []
    assert trails.discarded == 1
    assert trails.last_auto_save_at("V1") is None


def test_carry_forward_keeps_last_point_as_seed() -> None:
    trails = TrailAccumulator(carry_forward=True)
    _fill(trails, 10, step_m=1.0)
    assert trails.tick("V1", _T0 + timedelta(hours=1)) is None
    assert trails.buffer("V1") == [_point(9, step_m=1.0)]


def test_auto_save_interval_must_exceed_thirty_minutes() -> None:
    trails = TrailAccumulator()
    _fill(trails, 10)
    first_save = _T0 + timedelta(hours=1)
    assert trails.tick("V1", first_save) is not None

    _fill(trails, 10, start=100)
    assert trails.tick("V1", first_save + timedelta(minutes=30)) is None
    assert len(trails.buffer("V1")) == 10
    assert trails.tick("V1", first_save + timedelta(minutes=30, seconds=1)) is not None


def test_tick_of_unknown_vehicle_is_noop() -> None:
    assert TrailAccumulator().tick("nope", _T0) is None


def test_manual_flush_ignores_thresholds() -> None:
    trails = TrailAccumulator()
    _fill(trails, 2, step_m=1.0)

    segment = trails.manual_flush("V1", "Morning run", "depot to market", now=_T0 + timedelta(minutes=5))

    assert not segment.auto_saved
    assert segment.name == "Morning run"
    assert segment.notes == "depot to market"
    assert len(segment.points) == 2
    assert trails.buffer("V1") == []


def test_manual_flush_needs_two_points() -> None:
    trails = TrailAccumulator()
    _fill(trails, 1)
    with pytest.raises(InsufficientDataError) as excinfo:
        trails.manual_flush("V1", None, None, now=_T0)
    assert excinfo.value.points == 1
    assert len(trails.buffer("V1")) == 1

    with pytest.raises(InsufficientDataError):
        trails.manual_flush("unknown", None, None, now=_T0)


def test_restore_puts_points_back_in_front() -> None:
    trails = TrailAccumulator()
    _fill(trails, 10)
    segment = trails.tick("V1", _T0 + timedelta(hours=1))
    assert segment is not None
    _fill(trails, 1, start=50)

    trails.restore("V1", list(segment.points), None)

    buffer = trails.buffer("V1")
    assert len(buffer) == 11
    assert buffer[0] == _point(0)
    assert buffer[-1] == _point(50)
    assert trails.last_auto_save_at("V1") is None


def test_discard_forgets_vehicle() -> None:
    trails = TrailAccumulator()
    _fill(trails, 3)
    trails.discard("V1")
    assert trails.buffer("V1") == []
    assert trails.vehicle_ids() == []


def test_is_idle_waits_for_empty_buffer_and_expired_auto_save() -> None:
    trails = TrailAccumulator()
    assert trails.is_idle("V1", _T0)

    _fill(trails, 10, step_m=50.0)
    now = _T0 + timedelta(hours=1)
    assert not trails.is_idle("V1", now)

    assert trails.tick("V1", now) is not None
    assert not trails.is_idle("V1", now + timedelta(minutes=30))
    assert trails.is_idle("V1", now + timedelta(minutes=31))
