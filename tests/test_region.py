import pytest

from campusmap.core.errors import ValidationError
from campusmap.core.geo import GeoPoint, haversine_m
from campusmap.core.region import BoundingBox, bounding_box_around, filter_in_box, filter_within_radius

CENTER = GeoPoint(lat=30.3548, lng=76.3635)


def _latlng(p: GeoPoint) -> tuple[float, float]:
    return p.lat, p.lng


def test_haversine_one_degree_of_latitude():
    d = haversine_m(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
    assert d == pytest.approx(111_195, abs=1)
    assert haversine_m(CENTER, CENTER) == 0.0


def test_bounding_box_edges_are_inclusive():
    box = BoundingBox(north=30.36, south=30.35, east=76.37, west=76.36)
    points = [
        GeoPoint(30.36, 76.365),  # on north edge
        GeoPoint(30.35, 76.36),  # south-west corner
        GeoPoint(30.355, 76.37),  # on east edge
        GeoPoint(30.3600001, 76.365),  # just outside
    ]
    inside = filter_in_box(points, box, get_latlng=_latlng)
    assert inside == points[:3]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"north": 10, "south": 20, "east": 5, "west": 0},
        {"north": 10, "south": 0, "east": 0, "west": 5},
        {"north": 91, "south": 0, "east": 5, "west": 0},
    ],
)
def test_bounding_box_rejects_inverted_or_out_of_range(kwargs):
    with pytest.raises(ValidationError):
        BoundingBox(**kwargs)


def test_radius_boundary_is_exact():
    target = GeoPoint(30.3600, 76.3700)
    d = haversine_m(CENTER, target)

    assert [p for p, _ in filter_within_radius([target], CENTER, d, get_latlng=_latlng)] == [target]
    assert filter_within_radius([target], CENTER, d - 1, get_latlng=_latlng) == []


def test_zero_radius_keeps_only_the_center():
    nearby = GeoPoint(30.35481, 76.3635)
    hits = filter_within_radius([nearby, CENTER], CENTER, 0, get_latlng=_latlng)
    assert hits == [(CENTER, 0.0)]


def test_radius_results_are_sorted_by_distance():
    far = GeoPoint(30.3600, 76.3635)
    near = GeoPoint(30.3550, 76.3635)
    hits = filter_within_radius([far, near], CENTER, 5_000, get_latlng=_latlng)
    assert [p for p, _ in hits] == [near, far]
    assert hits[0][1] < hits[1][1]


def test_box_around_center_contains_circle():
    radius = 500.0
    box = bounding_box_around(CENTER, radius)
    # Points due north/east at the radius must survive the pre-filter.
    assert box.contains(CENTER.lat + radius / 111_195, CENTER.lng)
    assert box.south < CENTER.lat < box.north
    assert box.west < CENTER.lng < box.east


def test_box_around_rejects_negative_radius():
    with pytest.raises(ValidationError):
        bounding_box_around(CENTER, -1)


def test_box_around_pole_spans_all_longitudes():
    box = bounding_box_around(GeoPoint(90.0, 10.0), 1_000)
    assert (box.west, box.east) == (-180.0, 180.0)
    assert box.north == 90.0
