import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from campusmap.core.errors import (
    CapacityExceeded,
    Conflict,
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from campusmap.core.time import utc_now
from campusmap.domain.models import EventStatus
from campusmap.storage.base import VersionConflict
from campusmap.wiring import build_container

from conftest import event_payload, make_student


def _register_all(container, event_id, user_ids):
    """Fire one `register` per user concurrently; return (successes, failures)."""

    def attempt(uid):
        try:
            container.events.register(event_id, uid)
            return uid, None
        except Exception as exc:  # collected for assertions
            return uid, exc

    with ThreadPoolExecutor(max_workers=len(user_ids)) as pool:
        results = list(pool.map(attempt, user_ids))
    ok = [uid for uid, exc in results if exc is None]
    failed = [exc for _, exc in results if exc is not None]
    return ok, failed


def test_concurrent_registrations_never_exceed_capacity(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id, capacity=3), organizer_uid)
    users = [f"user-{i}" for i in range(10)]

    ok, failed = _register_all(container, event.id, users)

    assert len(ok) == 3
    assert len(failed) == 7
    assert all(isinstance(exc, CapacityExceeded) for exc in failed)
    stored = container.events.get_event(event.id)
    assert sorted(a.user_id for a in stored.attendees) == sorted(ok)
    assert stored.is_full


def test_two_users_racing_for_the_last_seat(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id, capacity=1), organizer_uid)

    ok, failed = _register_all(container, event.id, ["A", "B"])

    assert len(ok) == 1
    assert len(failed) == 1 and isinstance(failed[0], CapacityExceeded)
    assert len(container.events.get_event(event.id).attendees) == 1


def test_large_capacity_under_contention_only_fails_when_full(settings, provider, store, monkeypatch):
    # Slow reads widen the read-to-write window so most attempts lose a race.
    real_get = store.get

    def slow_get(collection, doc_id):
        time.sleep(0.001)
        return real_get(collection, doc_id)

    tight = settings.registration.retry.model_copy(update={"max_attempts": 2})
    settings = settings.model_copy(
        update={"registration": settings.registration.model_copy(update={"retry": tight})}
    )
    container = build_container(settings, store=store, identity=provider)
    admin = container.profiles.bootstrap_admin({"name": "Root", "email": "root@campus.test", "password": "root-pass"})
    hall = container.locations.create_location(
        {"name": "Main Hall", "type": "building", "coordinates": {"lat": 30.35, "lng": 76.36}}, admin.uid
    )
    event = container.events.create_event(event_payload(hall.id, capacity=40), admin.uid)
    monkeypatch.setattr(store, "get", slow_get)

    ok, failed = _register_all(container, event.id, [f"user-{i}" for i in range(120)])

    assert len(ok) == 40
    assert len(failed) == 80
    assert all(isinstance(exc, CapacityExceeded) for exc in failed)
    assert len(container.events.get_event(event.id).attendees) == 40


def test_losing_the_last_seat_reports_capacity(container, organizer_uid, library_id, store, monkeypatch):
    event = container.events.create_event(event_payload(library_id, capacity=1), organizer_uid)
    real_put = store.put_if_version

    def seat_taken_first(collection, doc_id, data, *, expected_version):
        # Another registration lands between the read and the write.
        current = store.get(collection, doc_id)
        kim = {"user_id": "kim", "registered_at": utc_now().isoformat()}
        real_put(collection, doc_id, {**current.data, "attendees": [kim]}, expected_version=current.version)
        raise VersionConflict("seat taken")

    monkeypatch.setattr(store, "put_if_version", seat_taken_first)
    with pytest.raises(CapacityExceeded):
        container.events.register(event.id, "lee")


def test_exhausted_retries_revalidate_the_latest_event(container, organizer_uid, library_id, store, monkeypatch):
    event = container.events.create_event(event_payload(library_id, capacity=1), organizer_uid)
    real_get = store.get
    reads = []

    def fills_up_on_last_read(collection, doc_id):
        doc = real_get(collection, doc_id)
        if collection == "events":
            reads.append(1)
            if len(reads) > container.settings.registration.retry.max_attempts:
                kim = {"user_id": "kim", "registered_at": utc_now().isoformat()}
                return replace(doc, data={**doc.data, "attendees": [kim]})
        return doc

    def always_conflict(*_args, **_kwargs):
        raise VersionConflict("someone else wrote first")

    monkeypatch.setattr(store, "get", fills_up_on_last_read)
    monkeypatch.setattr(store, "put_if_version", always_conflict)
    with pytest.raises(CapacityExceeded):
        container.events.register(event.id, "lee")


def test_duplicate_registration_is_a_conflict(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    container.events.register(event.id, "alice")
    with pytest.raises(Conflict) as excinfo:
        container.events.register(event.id, "alice")
    assert not isinstance(excinfo.value, CapacityExceeded)
    assert [a.user_id for a in container.events.get_event(event.id).attendees] == ["alice"]


def test_concurrent_duplicate_registration_keeps_one_entry(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)

    ok, failed = _register_all(container, event.id, ["bob", "bob"])

    assert ok == ["bob"]
    assert len(failed) == 1 and isinstance(failed[0], Conflict)
    assert [a.user_id for a in container.events.get_event(event.id).attendees] == ["bob"]


def test_unregister_is_idempotent(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    container.events.register(event.id, "carol")

    first = container.events.unregister(event.id, "carol")
    second = container.events.unregister(event.id, "carol")
    never = container.events.unregister(event.id, "dave")

    assert first.attendees == second.attendees == never.attendees == []


def test_unregister_frees_a_seat(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id, capacity=1), organizer_uid)
    container.events.register(event.id, "erin")
    with pytest.raises(CapacityExceeded):
        container.events.register(event.id, "frank")
    container.events.unregister(event.id, "erin")
    assert [a.user_id for a in container.events.register(event.id, "frank").attendees] == ["frank"]


def test_cancelled_event_rejects_registration_changes(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    container.events.register(event.id, "gina")

    cancelled = container.events.cancel(event.id, organizer_uid)
    assert cancelled.status is EventStatus.CANCELLED
    assert [a.user_id for a in cancelled.attendees] == ["gina"]

    with pytest.raises(InvalidState):
        container.events.register(event.id, "hank")
    with pytest.raises(InvalidState):
        container.events.unregister(event.id, "gina")
    with pytest.raises(InvalidState):
        container.events.update_event(event.id, {"status": "published"}, organizer_uid)
    # Cancelling twice is a no-op.
    assert container.events.cancel(event.id, organizer_uid).status is EventStatus.CANCELLED


def test_only_cancelled_events_block_registration(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id, status="draft"), organizer_uid)
    assert container.events.register(event.id, "ivan").has_attendee("ivan")

    published = container.events.publish(event.id, organizer_uid)
    assert published.status is EventStatus.PUBLISHED
    assert published.has_attendee("ivan")


def test_register_unknown_event(container):
    with pytest.raises(NotFound):
        container.events.register("missing", "someone")


def test_lost_write_races_surface_as_conflict(container, organizer_uid, library_id, store, monkeypatch):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    calls = []

    def always_conflict(*_args, **_kwargs):
        calls.append(1)
        raise VersionConflict("someone else wrote first")

    monkeypatch.setattr(store, "put_if_version", always_conflict)
    with pytest.raises(Conflict):
        container.events.register(event.id, "jane")
    assert len(calls) == container.settings.registration.retry.max_attempts


def test_create_event_validates_before_writing(container, organizer_uid, library_id, store):
    past = utc_now() - timedelta(days=1)
    with pytest.raises(ValidationError):
        container.events.create_event(
            event_payload(library_id, start_time=past.isoformat(), end_time=(past + timedelta(hours=1)).isoformat()),
            organizer_uid,
        )
    with pytest.raises(ValidationError):
        container.events.create_event(event_payload(library_id, capacity=0), organizer_uid)
    start = utc_now() + timedelta(days=1)
    with pytest.raises(ValidationError):
        container.events.create_event(
            event_payload(library_id, start_time=start.isoformat(), end_time=start.isoformat()), organizer_uid
        )
    with pytest.raises(NotFound):
        container.events.create_event(event_payload("no-such-location"), organizer_uid)
    assert store.scan("events") == []


def test_naive_times_use_the_campus_timezone(container, organizer_uid, library_id):
    start = datetime(2099, 1, 5, 10, 0)
    event = container.events.create_event(
        event_payload(library_id, start_time=start.isoformat(), end_time=(start + timedelta(hours=1)).isoformat()),
        organizer_uid,
    )
    # Asia/Kolkata is UTC+05:30.
    assert event.start_time.utcoffset() == timedelta(0)
    assert (event.start_time.hour, event.start_time.minute) == (4, 30)


def test_mixed_naive_and_aware_times_are_ordered_in_utc(container, organizer_uid, library_id):
    naive_start = "2099-01-05T10:00:00"  # 04:30 UTC in the campus timezone
    with pytest.raises(ValidationError):
        container.events.create_event(
            event_payload(library_id, start_time=naive_start, end_time="2099-01-05T04:00:00+00:00"),
            organizer_uid,
        )

    event = container.events.create_event(
        event_payload(library_id, start_time=naive_start, end_time="2099-01-05T05:30:00+00:00"),
        organizer_uid,
    )
    assert event.end_time - event.start_time == timedelta(hours=1)


def test_only_organizers_and_admins_create_events(container, admin_uid, library_id):
    student = make_student(container, "Kiran Patel")
    with pytest.raises(PermissionDenied):
        container.events.create_event(event_payload(library_id), student)
    assert container.events.create_event(event_payload(library_id), admin_uid).created_by == admin_uid


def test_only_owner_or_admin_manage_an_event(container, admin_uid, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    other = container.profiles.create_profile(
        {"name": "Other Lead", "email": "other@campus.test", "password": "other-pass", "role": "organizer"},
        admin_uid,
    ).uid

    with pytest.raises(PermissionDenied):
        container.events.update_event(event.id, {"title": "Hijacked"}, other)
    with pytest.raises(PermissionDenied):
        container.events.registrations(event.id, other)

    updated = container.events.update_event(event.id, {"title": "Robotics 101"}, admin_uid)
    assert updated.title == "Robotics 101"
    assert updated.created_by == organizer_uid


def test_capacity_cannot_drop_below_attendee_count(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id, capacity=3), organizer_uid)
    container.events.register(event.id, "u1")
    container.events.register(event.id, "u2")

    with pytest.raises(InvalidState):
        container.events.update_event(event.id, {"capacity": 1}, organizer_uid)
    assert container.events.update_event(event.id, {"capacity": 2}, organizer_uid).is_full


def test_update_keeps_attendees(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    container.events.register(event.id, "lena")
    updated = container.events.update_event(event.id, {"description": "Bring a laptop"}, organizer_uid)
    assert [a.user_id for a in updated.attendees] == ["lena"]


def test_list_and_recommend_events(container, organizer_uid, library_id):
    soon = utc_now() + timedelta(days=1)
    later = utc_now() + timedelta(days=5)
    a = container.events.create_event(
        event_payload(library_id, title="Late Talk", start_time=later.isoformat(),
                      end_time=(later + timedelta(hours=1)).isoformat(), tags=["ai"], category="seminar"),
        organizer_uid,
    )
    b = container.events.create_event(
        event_payload(library_id, title="Early Jam", start_time=soon.isoformat(),
                      end_time=(soon + timedelta(hours=1)).isoformat(), tags=["music"], category="cultural"),
        organizer_uid,
    )
    container.events.create_event(event_payload(library_id, title="Hidden Draft", status="draft", tags=["ai"]), organizer_uid)

    upcoming = container.events.list_events({"upcoming_only": True, "status": "published"})
    assert [e.id for e in upcoming] == [b.id, a.id]
    assert [e.id for e in container.events.list_events({"category": "seminar"})] == [a.id]
    assert [e.id for e in container.events.recommended_events(["AI"])] == [a.id]

    container.events.register(b.id, "mia")
    assert [e.id for e in container.events.events_for_attendee("mia")] == [b.id]


def test_delete_event(container, organizer_uid, library_id):
    event = container.events.create_event(event_payload(library_id), organizer_uid)
    container.events.delete_event(event.id, organizer_uid)
    with pytest.raises(NotFound):
        container.events.get_event(event.id)
