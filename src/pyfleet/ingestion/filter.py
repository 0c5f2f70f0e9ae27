"""Reporting-side sample filter.

Two layers, deliberately kept apart so each can be tested alone:

* :func:`should_accept` is the pure quality/rate decision for one sample
  given the last accepted sample of the same reporter.
* :class:`Debouncer` is a property of the ingestion channel: it enforces a
  minimum gap between filter evaluations per reporter, so bursts from a
  device polling loop never reach the filter at all.
"""

from __future__ import annotations

import math
from datetime import datetime

from pyfleet._constants import (
    DEBOUNCE_SECONDS,
    MAX_ACCURACY_METERS,
    MIN_DISTANCE_METERS,
    MIN_UPDATE_INTERVAL_SECONDS,
)
from pyfleet.geo import distance_m
from pyfleet.ingestion.events import DropReason
from pyfleet.models.location import LocationSample


def is_well_formed(sample: LocationSample) -> bool:
    """Return True if the sample carries usable coordinates."""
    if not sample.has_coordinates:
        return False
    lat, lng = sample.lat, sample.lng
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def evaluate(
    sample: LocationSample,
    last_accepted: LocationSample | None,
    last_accepted_at: datetime | None,
    now: datetime,
    *,
    max_accuracy_m: float = MAX_ACCURACY_METERS,
    min_interval_seconds: float = MIN_UPDATE_INTERVAL_SECONDS,
    min_distance_m: float = MIN_DISTANCE_METERS,
) -> DropReason | None:
    """Return why *sample* should be dropped, or ``None`` to accept it.

    Policy, in order:
    - no usable coordinates → drop
    - accuracy worse than ``max_accuracy_m`` (or unknown) → drop
    - less than ``min_interval_seconds`` since the last accepted sample → drop
    - closer than ``min_distance_m`` to the last accepted sample → drop
    """
    if not is_well_formed(sample):
        return DropReason.MISSING_COORDINATES
    if sample.accuracy_meters is None or sample.accuracy_meters > max_accuracy_m:
        return DropReason.LOW_ACCURACY
    if last_accepted_at is not None and (now - last_accepted_at).total_seconds() < min_interval_seconds:
        return DropReason.TOO_SOON
    if last_accepted is not None and distance_m(last_accepted, sample) < min_distance_m:
        return DropReason.TOO_CLOSE
    return None


def should_accept(
    sample: LocationSample,
    last_accepted: LocationSample | None,
    last_accepted_at: datetime | None,
    now: datetime,
    **thresholds: float,
) -> bool:
    return evaluate(sample, last_accepted, last_accepted_at, now, **thresholds) is None


class ReporterFilter:
    """Filter state for one reporting identity.

    Owns ``last_accepted``/``last_accepted_at`` and advances them only when a
    sample is accepted.
    """

    def __init__(
        self,
        *,
        max_accuracy_m: float = MAX_ACCURACY_METERS,
        min_interval_seconds: float = MIN_UPDATE_INTERVAL_SECONDS,
        min_distance_m: float = MIN_DISTANCE_METERS,
    ) -> None:
        self._thresholds = {
            "max_accuracy_m": max_accuracy_m,
            "min_interval_seconds": min_interval_seconds,
            "min_distance_m": min_distance_m,
        }
        self.last_accepted: LocationSample | None = None
        self.last_accepted_at: datetime | None = None

    def offer(self, sample: LocationSample, now: datetime) -> DropReason | None:
        reason = evaluate(sample, self.last_accepted, self.last_accepted_at, now, **self._thresholds)
        if reason is None:
            self.last_accepted = sample
            self.last_accepted_at = now
        return reason


class Debouncer:
    """Minimum gap between filter evaluations, per reporter key."""

    def __init__(self, min_gap_seconds: float = DEBOUNCE_SECONDS) -> None:
        self._min_gap_seconds = min_gap_seconds
        self._last_evaluated: dict[str, datetime] = {}

    def allow(self, key: str, now: datetime) -> bool:
        last = self._last_evaluated.get(key)
        if last is not None and (now - last).total_seconds() < self._min_gap_seconds:
            return False
        self._last_evaluated[key] = now
        return True

    def expire(self, now: datetime) -> None:
        """Drop keys whose gap has already elapsed; they would be allowed anyway."""
        elapsed = [k for k, last in self._last_evaluated.items() if (now - last).total_seconds() >= self._min_gap_seconds]
        for key in elapsed:
            del self._last_evaluated[key]

    def __len__(self) -> int:
        return len(self._last_evaluated)
