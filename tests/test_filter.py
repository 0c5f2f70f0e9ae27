from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pyfleet.ingestion import filter as geo_filter
from pyfleet.ingestion.events import DropReason
from pyfleet.ingestion.filter import Debouncer, ReporterFilter, evaluate, is_well_formed, should_accept
from pyfleet.models.location import LocationSample

# Degrees of latitude per metre on a 6371 km sphere.
_DEG_PER_M = 1.0 / 111_194.93

_T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


def _sample(
    north_m: float = 0.0,
    *,
    accuracy: float | None = 10.0,
    at: datetime = _T0,
    lat: float | None = 45.0,
    lng: float | None = 9.0,
) -> LocationSample:
    return LocationSample(
        latitude=None if lat is None else lat + north_m * _DEG_PER_M,
        longitude=lng,
        accuracy_meters=accuracy,
        captured_at=at,
    )


def test_first_good_sample_is_accepted() -> None:
    assert should_accept(_sample(), None, None, _T0)


def test_accuracy_boundary() -> None:
    assert should_accept(_sample(accuracy=100.0), None, None, _T0)
    assert not should_accept(_sample(accuracy=100.01), None, None, _T0)
    assert evaluate(_sample(accuracy=150.0), None, None, _T0) is DropReason.LOW_ACCURACY


def test_missing_accuracy_is_treated_as_low_accuracy() -> None:
    assert evaluate(_sample(accuracy=None), None, None, _T0) is DropReason.LOW_ACCURACY


def test_interval_boundary() -> None:
    last = _sample()
    far = _sample(500.0)
    assert evaluate(far, last, _T0, _T0 + timedelta(seconds=59.9)) is DropReason.TOO_SOON
    assert evaluate(far, last, _T0, _T0 + timedelta(seconds=60)) is None


def test_distance_boundary_exactly_fifty_metres_is_accepted(monkeypatch: pytest.MonkeyPatch) -> None:
    later = _T0 + timedelta(minutes=5)
    monkeypatch.setattr(geo_filter, "distance_m", lambda a, b: 50.0)
    assert should_accept(_sample(), _sample(), _T0, later)

    monkeypatch.setattr(geo_filter, "distance_m", lambda a, b: 49.99)
    assert evaluate(_sample(), _sample(), _T0, later) is DropReason.TOO_CLOSE


def test_real_distance_just_below_threshold_is_rejected() -> None:
    later = _T0 + timedelta(minutes=5)
    assert evaluate(_sample(45.0), _sample(), _T0, later) is DropReason.TOO_CLOSE
    assert evaluate(_sample(55.0), _sample(), _T0, later) is None


def test_ill_formed_samples_are_rejected_without_raising() -> None:
    no_lat = _sample(lat=None)
    no_lng = _sample(lng=None)
    assert not is_well_formed(no_lat)
    assert evaluate(no_lat, None, None, _T0) is DropReason.MISSING_COORDINATES
    assert evaluate(no_lng, None, None, _T0) is DropReason.MISSING_COORDINATES


def test_out_of_range_coordinates_are_ill_formed() -> None:
    assert not is_well_formed(_sample(lat=91.0))
    assert not is_well_formed(_sample(lng=-181.0))


def test_string_and_placeholder_values_are_coerced() -> None:
    sample = LocationSample.model_validate(
        {"lat": "45.1", "lng": "9.2", "accuracy": "--", "timestamp": 1_772_352_000_000}
    )
    assert sample.latitude == pytest.approx(45.1)
    assert sample.accuracy_meters is None
    assert sample.captured_at == datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


def test_three_sample_scenario_accepts_only_the_last() -> None:
    reporter = ReporterFilter()
    # The point the other distances are measured from.
    assert reporter.offer(_sample(0.0, accuracy=10.0, at=_T0), _T0) is None

    outcomes = []
    for i, (north_m, accuracy) in enumerate([(0.0, 150.0), (5.0, 80.0), (60.0, 90.0)], start=1):
        at = _T0 + timedelta(seconds=70 * i)
        outcomes.append(reporter.offer(_sample(north_m, accuracy=accuracy, at=at), at))

    assert outcomes == [DropReason.LOW_ACCURACY, DropReason.TOO_CLOSE, None]
    assert reporter.last_accepted is not None
    assert reporter.last_accepted.accuracy_meters == 90.0
    assert reporter.last_accepted_at == _T0 + timedelta(seconds=210)


def test_reporter_filter_does_not_advance_on_rejection() -> None:
    reporter = ReporterFilter()
    assert reporter.offer(_sample(accuracy=500.0), _T0) is DropReason.LOW_ACCURACY
    assert reporter.last_accepted is None
    assert reporter.last_accepted_at is None


def test_reporter_filter_uses_custom_thresholds() -> None:
    reporter = ReporterFilter(max_accuracy_m=20.0, min_interval_seconds=0.0, min_distance_m=0.0)
    assert reporter.offer(_sample(accuracy=25.0), _T0) is DropReason.LOW_ACCURACY
    assert reporter.offer(_sample(accuracy=15.0), _T0) is None
    assert reporter.offer(_sample(accuracy=15.0), _T0) is None


def test_debouncer_enforces_minimum_gap_per_key() -> None:
    debouncer = Debouncer(10.0)
    assert debouncer.allow("V1", _T0)
    assert not debouncer.allow("V1", _T0 + timedelta(seconds=9.9))
    assert debouncer.allow("V2", _T0 + timedelta(seconds=1))
    assert debouncer.allow("V1", _T0 + timedelta(seconds=10))


def test_debouncer_expire_only_drops_elapsed_keys() -> None:
    debouncer = Debouncer(10.0)
    assert debouncer.allow("V1", _T0)
    assert debouncer.allow("V2", _T0 + timedelta(seconds=5))

    debouncer.expire(_T0 + timedelta(seconds=10))

    assert len(debouncer) == 1
    assert not debouncer.allow("V2", _T0 + timedelta(seconds=10))
