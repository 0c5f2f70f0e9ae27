"""Deterministic in-memory fleet state store.

This is the only component allowed to hold live vehicle state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pyfleet._constants import ONLINE_WINDOW_SECONDS, STALE_AFTER_SECONDS
from pyfleet.models.vehicle import FleetSnapshot, VehicleState, VehicleStatus
from pyfleet.state.policy import is_active, should_accept_update, vehicle_status

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FleetStateStore:
    """Latest state per vehicle identity.

    This store is designed to be deterministic: given the same set of
    updates it converges on the same snapshot regardless of delivery
    order, because only strictly newer updates are applied.

    Identity is ``(company_id, driver_name)``.  When a newer update for the
    same driver arrives from a different ``vehicle_id`` the old device row is
    superseded (device reassignment) without an explicit unregister step.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        online_window_seconds: float = ONLINE_WINDOW_SECONDS,
        stale_after_seconds: float = STALE_AFTER_SECONDS,
    ) -> None:
        self._clock = clock
        self._online_window_seconds = online_window_seconds
        self._stale_after_seconds = stale_after_seconds
        self._states: dict[tuple[str, str], VehicleState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def upsert(self, update: VehicleState) -> bool:
        """Apply *update* if it is newer than the stored state.

        Returns False (and changes nothing) for older or equal timestamps.
        """
        key = update.identity
        existing = self._states.get(key)

        if not should_accept_update(
            cached_last_update=existing.last_update if existing is not None else None,
            incoming_last_update=update.last_update,
        ):
            _logger.debug(
                "Ignoring stale update vehicle=%s incoming=%s stored=%s",
                update.vehicle_id,
                update.last_update.isoformat(),
                existing.last_update.isoformat() if existing is not None else None,
            )
            return False

        if update.last_online is None:
            if update.explicit_offline:
                # An offline signal is not a sign of life; keep the previous one.
                last_online = existing.last_online if existing is not None else None
            else:
                last_online = update.last_update
            update = update.model_copy(update={"last_online": last_online})

        if existing is not None and existing.vehicle_id != update.vehicle_id:
            _logger.info(
                "Driver %r moved from vehicle %s to %s; superseding old entry",
                update.driver_name,
                existing.vehicle_id,
                update.vehicle_id,
            )

        self._states[key] = update
        return True

    def get(self, company_id: str, driver_name: str) -> VehicleState | None:
        return self._states.get((company_id, driver_name))

    def find_by_vehicle(self, vehicle_id: str) -> VehicleState | None:
        """Return the most recent state reported by *vehicle_id*, if any."""
        matches = [s for s in self._states.values() if s.vehicle_id == vehicle_id]
        if not matches:
            return None
        return max(matches, key=lambda s: s.last_update)

    def vehicles(self, company_id: str | None = None) -> list[VehicleState]:
        states = [s for s in self._states.values() if company_id is None or s.company_id == company_id]
        return sorted(states, key=lambda s: (s.company_id, s.driver_name, s.vehicle_id))

    def status_of(self, state: VehicleState, now: datetime | None = None) -> VehicleStatus:
        return vehicle_status(
            now or self._clock(),
            state.last_update,
            state.explicit_offline,
            online_window_seconds=self._online_window_seconds,
            stale_after_seconds=self._stale_after_seconds,
        )

    def is_stale(self, state: VehicleState, now: datetime | None = None) -> bool:
        return not is_active(
            now or self._clock(),
            state.last_update,
            state.explicit_offline,
            stale_after_seconds=self._stale_after_seconds,
        )

    def prune(self, older_than: datetime) -> list[VehicleState]:
        """Forget every vehicle whose last update is before *older_than*."""
        expired = [key for key, state in self._states.items() if state.last_update < older_than]
        removed = [self._states.pop(key) for key in expired]
        if removed:
            _logger.debug("Pruned %d vehicle(s) silent since before %s", len(removed), older_than.isoformat())
        return removed

    def classify(self, now: datetime | None = None, company_id: str | None = None) -> FleetSnapshot:
        """Partition vehicles into active (live fleet) and stale."""
        at = now or self._clock()
        active: list[VehicleState] = []
        stale: list[VehicleState] = []
        for state in self.vehicles(company_id):
            if is_active(at, state.last_update, state.explicit_offline, stale_after_seconds=self._stale_after_seconds):
                active.append(state)
            else:
                stale.append(state)
        return FleetSnapshot(active=active, stale=stale)
