"""
Region filtering (bounding box / center+radius) over lat/lng items.

There is no spatial index here on purpose: callers hand us a fully scanned
collection (hundreds to low thousands of records) and we filter in memory.
"""

from __future__ import annotations

from dataclasses import dataclass
from math import cos, radians
from typing import Callable, Iterable, TypeVar

from campusmap.core.errors import ValidationError
from campusmap.core.geo import GeoPoint, haversine_m

T = TypeVar("T")

METERS_PER_DEGREE = 111_000


@dataclass(frozen=True)
class BoundingBox:
    """A lat/lng rectangle; all four edges are inclusive.

    Boxes crossing the anti-meridian (`west > east`) are rejected.
    """

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        for name, value, limit in (
            ("north", self.north, 90),
            ("south", self.south, 90),
            ("east", self.east, 180),
            ("west", self.west, 180),
        ):
            if not -limit <= float(value) <= limit:
                raise ValidationError(f"{name} must be within [-{limit}, {limit}], got {value}")
        if self.south > self.north:
            raise ValidationError("south must be <= north")
        if self.west > self.east:
            raise ValidationError("west must be <= east (anti-meridian boxes are not supported)")

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


def bounding_box_around(center: GeoPoint, radius_m: float) -> BoundingBox:
    """Return a box enclosing the circle of `radius_m` around `center`.

    Uses the latitude-corrected degrees-per-meter approximation. The box is only a
    pre-filter; points in its corners lie outside the circle.
    """
    r = float(radius_m)
    if r < 0:
        raise ValidationError("radius_m must be >= 0")

    dlat = r / METERS_PER_DEGREE
    cos_lat = cos(radians(center.lat))
    if cos_lat <= 1e-9:
        # At the poles every meridian is within reach.
        west, east = -180.0, 180.0
    else:
        dlng = r / (METERS_PER_DEGREE * cos_lat)
        west = max(-180.0, center.lng - dlng)
        east = min(180.0, center.lng + dlng)

    return BoundingBox(
        north=min(90.0, center.lat + dlat),
        south=max(-90.0, center.lat - dlat),
        east=east,
        west=west,
    )


def filter_in_box(
    items: Iterable[T], box: BoundingBox, *, get_latlng: Callable[[T], tuple[float, float]]
) -> list[T]:
    """Keep items whose coordinates fall inside `box`, preserving input order."""
    out: list[T] = []
    for it in items:
        lat, lng = get_latlng(it)
        if box.contains(float(lat), float(lng)):
            out.append(it)
    return out


def filter_within_radius(
    items: Iterable[T],
    center: GeoPoint,
    radius_m: float,
    *,
    get_latlng: Callable[[T], tuple[float, float]],
) -> list[tuple[T, float]]:
    """Return `(item, distance_m)` for items within `radius_m`, nearest first.

    A zero radius keeps only points that coincide exactly with `center`.
    """
    r = float(radius_m)
    if r < 0:
        raise ValidationError("radius_m must be >= 0")

    out: list[tuple[T, float]] = []
    for it in items:
        lat, lng = get_latlng(it)
        d = haversine_m(center, GeoPoint(lat=float(lat), lng=float(lng)))
        if d <= r:
            out.append((it, d))
    out.sort(key=lambda pair: pair[1])
    return out
