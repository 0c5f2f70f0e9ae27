"""Duplicate natural-key detection and repair.

The same group-by-key pattern serves route segments and any other record
family with an expected-unique natural key (order numbers, for example).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from pyfleet.models.route import RouteSegment

if TYPE_CHECKING:  # pragma: no cover - import for type checkers only
    from pyfleet.history.repository import RouteHistoryRepository

_logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


def find_duplicates(
    items: Iterable[T],
    key: Callable[[T], K | None],
    *,
    order_by: Callable[[T], Any] | None = None,
) -> dict[K, list[T]]:
    """Group *items* by ``key(item)`` and keep only groups with 2+ members.

    Items whose key is ``None`` are ignored.  Members of each group keep
    input order unless *order_by* is given.
    """
    groups: dict[K, list[T]] = {}
    for item in items:
        natural_key = key(item)
        if natural_key is None:
            continue
        groups.setdefault(natural_key, []).append(item)

    duplicates: dict[K, list[T]] = {}
    for natural_key, members in groups.items():
        if len(members) < 2:
            continue
        duplicates[natural_key] = sorted(members, key=order_by) if order_by is not None else members
    return duplicates


def route_natural_key(segment: RouteSegment) -> tuple[str, datetime, datetime]:
    """Two segments of one vehicle covering the same interval are duplicates."""
    return (segment.vehicle_id, segment.start_time, segment.end_time)


class DuplicateReport(BaseModel):
    """Result of a duplicate scan, optionally after auto-fix."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    conflicts: dict[Any, list[RouteSegment]] = Field(default_factory=dict)
    removed_ids: list[str] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


async def resolve_duplicates(
    repository: RouteHistoryRepository,
    company_id: str,
    *,
    key: Callable[[RouteSegment], Hashable | None] = route_natural_key,
    auto_fix: bool = False,
) -> DuplicateReport:
    """Find duplicate routes for a company and optionally remove extras.

    Auto-fix keeps the earliest-created member of each group and deletes the
    rest.  Without it the conflicts are only reported.
    """
    conflicts = await repository.find_duplicate_keys(company_id, key=key)
    if not conflicts:
        return DuplicateReport()

    _logger.info("Found %d duplicate route key(s) for company %s", len(conflicts), company_id)
    if not auto_fix:
        return DuplicateReport(conflicts=conflicts)

    removed: list[str] = []
    for natural_key, members in conflicts.items():
        for extra in members[1:]:
            if await repository.delete(extra.id):
                removed.append(extra.id)
                _logger.info("Removed duplicate route %s (key=%s, kept %s)", extra.id, natural_key, members[0].id)
    return DuplicateReport(conflicts=conflicts, removed_ids=removed)
