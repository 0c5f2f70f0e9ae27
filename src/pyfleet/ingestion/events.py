"""Drop reasons and ingestion counters.

Bad samples and stale updates are never surfaced as errors; they are
dropped and counted here so operators can watch data quality.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum


class DropReason(StrEnum):
    MALFORMED = "malformed"
    MISSING_COORDINATES = "missing_coordinates"
    LOW_ACCURACY = "low_accuracy"
    DEBOUNCED = "debounced"
    TOO_SOON = "too_soon"
    TOO_CLOSE = "too_close"
    STALE_UPDATE = "stale_update"


@dataclass
class IngestionStats:
    """Counters maintained by the ingestion service."""

    received: int = 0
    accepted: int = 0
    state_updates: int = 0
    trail_points: int = 0
    segments_persisted: int = 0
    segments_discarded: int = 0
    persist_failures: int = 0
    worker_errors: int = 0
    dropped: Counter[DropReason] = field(default_factory=Counter)

    def record_drop(self, reason: DropReason) -> None:
        self.dropped[reason] += 1

    def as_dict(self) -> dict[str, int | dict[str, int]]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "state_updates": self.state_updates,
            "trail_points": self.trail_points,
            "segments_persisted": self.segments_persisted,
            "segments_discarded": self.segments_discarded,
            "persist_failures": self.persist_failures,
            "worker_errors": self.worker_errors,
            "dropped": {str(reason): count for reason, count in sorted(self.dropped.items())},
        }
