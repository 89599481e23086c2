from datetime import timedelta

import pytest

from campusmap.core.errors import (
    Conflict,
    NotFound,
    PermissionDenied,
    ScanLimitExceeded,
    UpstreamUnavailable,
    ValidationError,
)
from campusmap.core.geo import GeoPoint, haversine_m
from campusmap.core.time import utc_now
from campusmap.services.locations import NAMES_COLLECTION, LocationIndexService
from campusmap.storage.base import StoreUnavailable

from conftest import make_student

CENTER = GeoPoint(lat=30.3548, lng=76.3635)


def _add(container, admin_uid, name, lat, lng, **extra):
    payload = {"name": name, "type": extra.pop("type", "poi"), "coordinates": {"lat": lat, "lng": lng}}
    payload.update(extra)
    return container.locations.create_location(payload, admin_uid)


def test_nearby_returns_exact_radius_hits_nearest_first(container, admin_uid, library_id):
    cafe = _add(container, admin_uid, "Cafe Coffee Day", 30.3570, 76.3650, description="Espresso and snacks")
    _add(container, admin_uid, "Cricket Stadium", 30.3750, 76.3635, type="building")

    hits = container.locations.query_nearby(CENTER, 500)
    assert [h.location.name for h in hits] == ["Central Library", "Cafe Coffee Day"]
    assert hits[0].distance_m == 0.0

    d = haversine_m(CENTER, GeoPoint(cafe.coordinates.lat, cafe.coordinates.lng))
    assert cafe.id in {h.location.id for h in container.locations.query_nearby(CENTER, d)}
    assert cafe.id not in {h.location.id for h in container.locations.query_nearby(CENTER, d - 1)}


def test_zero_radius_at_a_location_returns_just_that_location(container, admin_uid, library_id):
    _add(container, admin_uid, "Library Annex", 30.35481, 76.3635)
    hits = container.locations.query_nearby(CENTER, 0)
    assert [h.location.id for h in hits] == [library_id]


def test_bounding_box_includes_edges(container, admin_uid, library_id):
    _add(container, admin_uid, "North Gate", 30.3600, 76.3635)
    _add(container, admin_uid, "Far Hostel", 30.3700, 76.3635)
    _add(container, admin_uid, "Just Outside", 30.3600 + 1e-9, 76.3635)

    names = [r.name for r in container.locations.query_bounding_box(30.3600, 30.3548, 76.3700, 76.3635)]
    assert sorted(names) == ["Central Library", "North Gate"]


def test_bounding_box_rejects_inverted_box(container):
    with pytest.raises(ValidationError):
        container.locations.query_bounding_box(north=10, south=20, east=5, west=0)


def test_search_text_matches_name_description_and_tags(container, admin_uid, library_id):
    _add(container, admin_uid, "Cafe Coffee Day", 30.3570, 76.3650, description="Espresso near the LIBRARY")
    _add(container, admin_uid, "Lecture Hall 1", 30.3560, 76.3640, type="room", tags=["Lectures"])

    assert [r.name for r in container.locations.search_text("library")] == ["Cafe Coffee Day", "Central Library"]
    assert [r.name for r in container.locations.search_text("BOOKS")] == ["Central Library"]
    assert [r.name for r in container.locations.search_text("lect", {"type": "room"})] == ["Lecture Hall 1"]
    assert container.locations.search_text("nothing matches this") == []


def test_empty_search_lists_everything_by_name(container, admin_uid, library_id):
    _add(container, admin_uid, "Admin Block", 30.3551, 76.3631, type="building")
    assert [r.name for r in container.locations.search_text("  ")] == ["Admin Block", "Central Library"]


def test_search_limit_is_capped(container, admin_uid):
    for i in range(4):
        _add(container, admin_uid, f"Room {i}", 30.35 + i / 1000, 76.36, type="room")
    assert len(container.locations.search_text("room", {"limit": 2})) == 2


def test_names_are_unique_case_insensitively(container, admin_uid, library_id):
    with pytest.raises(Conflict):
        _add(container, admin_uid, "  central   LIBRARY ", 30.0, 76.0)


def test_rename_releases_the_old_name(container, admin_uid, library_id):
    container.locations.update_location(library_id, {"name": "Main Library"}, admin_uid)
    again = _add(container, admin_uid, "Central Library", 30.3, 76.3)
    assert again.name == "Central Library"
    with pytest.raises(Conflict):
        _add(container, admin_uid, "main library", 30.3, 76.3)


def test_delete_releases_the_name(container, admin_uid, library_id):
    container.locations.delete_location(library_id, admin_uid)
    with pytest.raises(NotFound):
        container.locations.get_location(library_id)
    assert _add(container, admin_uid, "Central Library", 30.3548, 76.3635).id != library_id


def test_stale_name_reservation_is_reclaimed(container, store, admin_uid):
    old = (utc_now() - timedelta(minutes=5)).isoformat()
    store.create(NAMES_COLLECTION, "ghost hall", {"location_id": "never-written", "name": "Ghost Hall", "reserved_at": old})
    assert _add(container, admin_uid, "Ghost Hall", 30.0, 76.0).name == "Ghost Hall"


def test_fresh_name_reservation_blocks_creation(container, store, admin_uid):
    store.create(
        NAMES_COLLECTION,
        "busy hall",
        {"location_id": "in-flight", "name": "Busy Hall", "reserved_at": utc_now().isoformat()},
    )
    with pytest.raises(Conflict):
        _add(container, admin_uid, "Busy Hall", 30.0, 76.0)


def test_update_merges_fields_and_keeps_id(container, admin_uid, library_id):
    updated = container.locations.update_location(library_id, {"description": "Open 24/7", "floor": 0}, admin_uid)
    assert updated.id == library_id
    assert updated.name == "Central Library"
    assert updated.description == "Open 24/7"
    assert updated.tags == ["books", "study"]

    with pytest.raises(ValidationError):
        container.locations.update_location(library_id, {"name": None}, admin_uid)


def test_room_must_reference_an_existing_building(container, admin_uid, library_id):
    room = _add(container, admin_uid, "Reading Room", 30.3548, 76.3635, type="room", building_id=library_id, floor=1)
    assert room.building_id == library_id
    with pytest.raises(NotFound):
        _add(container, admin_uid, "Lost Room", 30.3548, 76.3635, type="room", building_id="missing")


def test_writes_require_admin(container, admin_uid):
    student = make_student(container, "Asha Rao")
    with pytest.raises(PermissionDenied):
        _add(container, student, "Student Lounge", 30.0, 76.0)
    with pytest.raises(PermissionDenied):
        _add(container, None, "Anonymous Lounge", 30.0, 76.0)


def test_invalid_payload_is_rejected_before_any_write(container, store, admin_uid):
    with pytest.raises(ValidationError):
        _add(container, admin_uid, "Nowhere", 95.0, 76.0)
    assert store.scan("locations") == []
    assert store.scan(NAMES_COLLECTION) == []


def test_scan_cap_fails_loudly(container, admin_uid, settings):
    for i in range(3):
        _add(container, admin_uid, f"Kiosk {i}", 30.35, 76.36 + i / 1000)

    tight = settings.model_copy(update={"storage": settings.storage.model_copy(update={"max_scan_size": 2})})
    service = LocationIndexService(container.store, tight)
    with pytest.raises(ScanLimitExceeded):
        service.query_nearby(CENTER, 1_000)
    with pytest.raises(ScanLimitExceeded):
        service.search_text("kiosk")


def test_store_outage_is_an_error_not_an_empty_result(container, store, monkeypatch):
    def broken_scan(*_args, **_kwargs):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(store, "scan", broken_scan)
    with pytest.raises(UpstreamUnavailable) as excinfo:
        container.locations.query_bounding_box(31, 30, 77, 76)
    assert excinfo.value.side == "document_store"
