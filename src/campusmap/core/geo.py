from __future__ import annotations
from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

"""
Geospatial helpers.

We keep a tiny geometry layer here so the location index can answer radius queries
without a native geo index or heavier GIS dependencies.
"""

EARTH_RADIUS_M = 6_371_000


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in meters between two points."""
    lat1 = radians(a.lat)
    lng1 = radians(a.lng)
    lat2 = radians(b.lat)
    lng2 = radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    return 2 * EARTH_RADIUS_M * asin(sqrt(min(1.0, h)))
