"""Great-circle distance helpers."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Protocol

from pyfleet._constants import EARTH_RADIUS_KM


class _HasLatLng(Protocol):
    lat: float
    lng: float


def haversine_km(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    """Distance in km between two WGS84 coordinates (spherical Earth)."""
    phi1 = math.radians(a_lat)
    phi2 = math.radians(b_lat)
    dphi = math.radians(b_lat - a_lat)
    dlmb = math.radians(b_lng - a_lng)

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(s)))


def distance_km(a: _HasLatLng, b: _HasLatLng) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def distance_m(a: _HasLatLng, b: _HasLatLng) -> float:
    return distance_km(a, b) * 1000.0


def path_length_km(points: Sequence[_HasLatLng]) -> float:
    """Sum of consecutive great-circle distances along *points*."""
    total = 0.0
    for i in range(1, len(points)):
        total += distance_km(points[i - 1], points[i])
    return total
