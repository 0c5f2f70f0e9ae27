"""Deterministic state policy.

This module contains *no* payload parsing.  The ingestion boundary is
responsible for producing well-formed states and aware timestamps.
"""

from __future__ import annotations

from datetime import datetime

from pyfleet._constants import ONLINE_WINDOW_SECONDS, STALE_AFTER_SECONDS
from pyfleet.models.vehicle import VehicleStatus


def should_accept_update(*, cached_last_update: datetime | None, incoming_last_update: datetime) -> bool:
    """Accept only strictly newer updates; equal timestamps are redeliveries."""
    if cached_last_update is None:
        return True
    return incoming_last_update > cached_last_update


def vehicle_status(
    now: datetime,
    last_update: datetime,
    explicit_offline: bool,
    *,
    online_window_seconds: float = ONLINE_WINDOW_SECONDS,
    stale_after_seconds: float = STALE_AFTER_SECONDS,
) -> VehicleStatus:
    """Three-way status as a pure function of age and the offline flag.

    - online: age < online window and not flagged
    - inactive: online window <= age < stale threshold
    - offline: age >= stale threshold, or explicitly flagged
    """
    if explicit_offline:
        return VehicleStatus.OFFLINE
    age = (now - last_update).total_seconds()
    if age < online_window_seconds:
        return VehicleStatus.ONLINE
    if age < stale_after_seconds:
        return VehicleStatus.INACTIVE
    return VehicleStatus.OFFLINE


def is_active(
    now: datetime,
    last_update: datetime,
    explicit_offline: bool,
    *,
    stale_after_seconds: float = STALE_AFTER_SECONDS,
) -> bool:
    if explicit_offline:
        return False
    return (now - last_update).total_seconds() < stale_after_seconds
