"""
Event management and capacity-safe registration.

Attendee lists are the one hot, contended field in the system. A plain
read-then-write lets two concurrent registrations both see a free seat and both
append. Every attendee/status mutation here therefore goes through
`_mutate_event`:

1. read the event document and its version,
2. validate the predicate (status, duplicate, capacity) against that snapshot,
3. write back with `put_if_version(expected_version=...)`,
4. on `VersionConflict`, start over from 1 with bounded exponential backoff.

A write only lands if nothing changed since the read, so the capacity check
always ran against the state being replaced and `len(attendees) <= capacity`
holds under any interleaving. Losing a race to another registration does not
spend the retry budget, so under pure registration contention every call ends
in success or `CapacityExceeded`, whatever the capacity.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from campusmap.config.settings import Settings
from campusmap.core.errors import (
    CapacityExceeded,
    Conflict,
    InvalidState,
    NotFound,
    PermissionDenied,
    ScanLimitExceeded,
    ValidationError,
)
from campusmap.core.retry import backoff_delay
from campusmap.core.time import to_utc, utc_now
from campusmap.domain.models import (
    Attendee,
    EventFields,
    EventFilters,
    EventPatch,
    EventRecord,
    EventStatus,
    UserProfile,
    UserRole,
    to_document,
)
from campusmap.services._common import validate_input
from campusmap.services.authz import require_caller, require_role
from campusmap.services.gateways import GuardedStore
from campusmap.services.locations import LOCATIONS_COLLECTION
from campusmap.storage.base import Document, VersionConflict

logger = logging.getLogger(__name__)

EVENTS_COLLECTION = "events"

# status -> statuses it may move to (cancelled is terminal)
_TRANSITIONS: dict[EventStatus, set[EventStatus]] = {
    EventStatus.DRAFT: {EventStatus.PUBLISHED, EventStatus.CANCELLED},
    EventStatus.PUBLISHED: {EventStatus.CANCELLED},
    EventStatus.CANCELLED: set(),
}

# Mutator contract: return the new document data, or None for "no write needed".
Mutator = Callable[[EventRecord, Document], "dict | None"]


class EventRegistrationService:
    def __init__(self, store: GuardedStore, settings: Settings):
        self._store = store
        self._settings = settings

    # -- helpers -----------------------------------------------------------------

    def _to_event(self, doc: Document) -> EventRecord:
        return EventRecord.model_validate({**doc.data, "id": doc.id})

    def _load(self, event_id: str) -> tuple[Document, EventRecord]:
        doc = self._store.get(EVENTS_COLLECTION, event_id)
        if doc is None:
            raise NotFound(f"Event {event_id} not found")
        return doc, self._to_event(doc)

    def _normalize_time(self, dt: datetime) -> datetime:
        return to_utc(dt, self._settings.app.timezone)

    def _check_location(self, location_id: str) -> None:
        if self._store.get(LOCATIONS_COLLECTION, location_id) is None:
            raise NotFound(f"Location {location_id} not found")

    def _require_manager(self, caller_uid: str | None, event: EventRecord) -> UserProfile:
        """Admins manage every event; organizers manage the events they created."""
        profile = require_caller(self._store, caller_uid)
        if profile.role is UserRole.ADMIN:
            return profile
        if profile.role is UserRole.ORGANIZER and profile.uid == event.created_by:
            return profile
        raise PermissionDenied("Only the event's organizer or an admin may do this")

    def _mutate_event(self, event_id: str, mutate: Mutator, *, what: str) -> EventRecord:
        """Conditional read-validate-write loop shared by every event mutation.

        A lost race counts against `registration.retry.max_attempts` only when
        the attendee list did not grow in the meantime; losing to another
        registration is progress, not a stall. The total number of attempts is
        still capped at `max_attempts + capacity`.
        """
        policy = self._settings.registration.retry
        stalls = 0
        attempts = 0
        seen: int | None = None
        while True:
            attempts += 1
            doc, event = self._load(event_id)
            if seen is not None and len(event.attendees) > seen:
                stalls = 0
            seen = len(event.attendees)

            new_data = mutate(event, doc)
            if new_data is None:
                return event
            new_data["updated_at"] = utc_now().isoformat()
            try:
                written = self._store.put_if_version(
                    EVENTS_COLLECTION, event_id, new_data, expected_version=doc.version
                )
                return self._to_event(written)
            except VersionConflict as exc:
                stalls += 1
                if stalls >= policy.max_attempts or attempts >= policy.max_attempts + event.capacity:
                    return self._give_up(event_id, mutate, what=what, attempts=attempts, exc=exc)
                delay = backoff_delay(policy, stalls - 1)
                logger.debug("%s %s lost a write race; retrying in %.3fs (attempt %s)", what, event_id, delay, attempts)
                time.sleep(delay)

    def _give_up(
        self, event_id: str, mutate: Mutator, *, what: str, attempts: int, exc: VersionConflict
    ) -> EventRecord:
        # The latest snapshot may already explain the failure (full, cancelled, duplicate)
        # or show that no write is needed any more.
        doc, event = self._load(event_id)
        if mutate(event, doc) is None:
            return event
        logger.warning("%s %s lost %s write races; giving up", what, event_id, attempts)
        raise Conflict(
            f"Event {event_id} is changing too fast ({what} lost {attempts} write races); retry later"
        ) from exc

    def _scan_events(self) -> list[EventRecord]:
        cap = int(self._settings.storage.max_scan_size)
        docs = self._store.scan(EVENTS_COLLECTION, limit=cap + 1)
        if len(docs) > cap:
            raise ScanLimitExceeded(f"events collection exceeds max_scan_size={cap}")
        return [self._to_event(d) for d in docs]

    # -- registration ------------------------------------------------------------

    def register(self, event_id: str, user_id: str) -> EventRecord:
        """Add `user_id` to the attendee list.

        Raises:
            NotFound: The event does not exist.
            InvalidState: The event is cancelled.
            Conflict: `user_id` is already registered, or the write race was lost
                `max_attempts` times.
            CapacityExceeded: Every seat is taken.
        """
        if not user_id:
            raise ValidationError("user_id is required")

        def add_attendee(event: EventRecord, doc: Document) -> dict:
            if event.status is EventStatus.CANCELLED:
                raise InvalidState(f"Event {event_id} is cancelled")
            if event.has_attendee(user_id):
                raise Conflict(f"User {user_id} is already registered for event {event_id}")
            if event.is_full:
                raise CapacityExceeded(f"Event {event_id} is full ({event.capacity} attendees)")
            attendee = Attendee(user_id=user_id, registered_at=utc_now())
            return {**doc.data, "attendees": [*doc.data.get("attendees", []), to_document(attendee)]}

        event = self._mutate_event(event_id, add_attendee, what="register")
        logger.info("User %s registered for event %s (%s/%s)", user_id, event_id, len(event.attendees), event.capacity)
        return event

    def unregister(self, event_id: str, user_id: str) -> EventRecord:
        """Remove `user_id` from the attendee list; a non-member is a no-op success."""

        def remove_attendee(event: EventRecord, doc: Document) -> dict | None:
            if event.status is EventStatus.CANCELLED:
                raise InvalidState(f"Event {event_id} is cancelled")
            if not event.has_attendee(user_id):
                return None
            remaining = [a for a in doc.data.get("attendees", []) if a.get("user_id") != user_id]
            return {**doc.data, "attendees": remaining}

        event = self._mutate_event(event_id, remove_attendee, what="unregister")
        logger.info("User %s unregistered from event %s", user_id, event_id)
        return event

    def cancel(self, event_id: str, caller_uid: str | None) -> EventRecord:
        """Move the event to `cancelled` (irreversible); attendees are kept as-is."""
        _, current = self._load(event_id)
        self._require_manager(caller_uid, current)

        def mark_cancelled(event: EventRecord, doc: Document) -> dict | None:
            if event.status is EventStatus.CANCELLED:
                return None
            return {**doc.data, "status": EventStatus.CANCELLED.value}

        event = self._mutate_event(event_id, mark_cancelled, what="cancel")
        logger.info("Event %s cancelled by %s", event_id, caller_uid)
        return event

    # -- event management ----------------------------------------------------------

    def create_event(self, data: EventFields | dict, caller_uid: str | None) -> EventRecord:
        fields = validate_input(EventFields, data)
        creator = require_role(self._store, caller_uid, UserRole.ORGANIZER, UserRole.ADMIN)
        if "capacity" not in fields.model_fields_set:
            fields = fields.model_copy(update={"capacity": int(self._settings.registration.default_capacity)})

        start = self._normalize_time(fields.start_time)
        end = self._normalize_time(fields.end_time)
        if end <= start:
            raise ValidationError("end_time must be after start_time")
        if start <= utc_now():
            raise ValidationError("start_time must be in the future")
        if fields.status is EventStatus.CANCELLED:
            raise ValidationError("An event cannot be created cancelled")
        self._check_location(fields.location_id)

        now = utc_now().isoformat()
        doc = {
            **to_document(fields.model_copy(update={"start_time": start, "end_time": end})),
            "created_by": creator.uid,
            "attendees": [],
            "created_at": now,
            "updated_at": now,
        }
        created = self._store.add(EVENTS_COLLECTION, doc)
        logger.info("Event created id=%s by=%s capacity=%s", created.id, creator.uid, fields.capacity)
        return self._to_event(created)

    def update_event(self, event_id: str, patch: EventPatch | dict, caller_uid: str | None) -> EventRecord:
        patch = validate_input(EventPatch, patch)
        changes = patch.model_dump(exclude_unset=True)
        for key, value in changes.items():
            if value is None:
                raise ValidationError(f"{key} cannot be cleared")

        _, current = self._load(event_id)
        self._require_manager(caller_uid, current)
        if "location_id" in changes and changes["location_id"] != current.location_id:
            self._check_location(changes["location_id"])
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = self._normalize_time(changes[key])
        if "start_time" in changes and changes["start_time"] <= utc_now():
            raise ValidationError("start_time must be in the future")

        def apply_patch(event: EventRecord, doc: Document) -> dict | None:
            if event.status is EventStatus.CANCELLED:
                raise InvalidState(f"Event {event_id} is cancelled")
            new_status = changes.get("status", event.status)
            if new_status is not event.status and new_status not in _TRANSITIONS[event.status]:
                raise InvalidState(f"Cannot move event from {event.status.value} to {new_status.value}")
            if changes.get("capacity", event.capacity) < len(event.attendees):
                raise InvalidState(
                    f"capacity cannot drop below the {len(event.attendees)} registered attendees"
                )
            merged = event.model_copy(update=changes)
            if merged.end_time <= merged.start_time:
                raise ValidationError("end_time must be after start_time")
            return {**doc.data, **to_document(merged, exclude={"id"})}

        event = self._mutate_event(event_id, apply_patch, what="update")
        logger.info("Event updated id=%s fields=%s", event_id, sorted(changes))
        return event

    def publish(self, event_id: str, caller_uid: str | None) -> EventRecord:
        return self.update_event(event_id, {"status": EventStatus.PUBLISHED}, caller_uid)

    def delete_event(self, event_id: str, caller_uid: str | None) -> None:
        _, current = self._load(event_id)
        self._require_manager(caller_uid, current)
        self._store.delete(EVENTS_COLLECTION, event_id)
        logger.info("Event deleted id=%s by=%s", event_id, caller_uid)

    def get_event(self, event_id: str) -> EventRecord:
        return self._load(event_id)[1]

    def registrations(self, event_id: str, caller_uid: str | None) -> list[Attendee]:
        _, event = self._load(event_id)
        self._require_manager(caller_uid, event)
        return list(event.attendees)

    def list_events(self, filters: EventFilters | dict | None = None) -> list[EventRecord]:
        """Filtered listing; upcoming-only lists soonest first, otherwise latest first."""
        filters = validate_input(EventFilters, filters or {})
        now = utc_now()

        out: list[EventRecord] = []
        for event in self._scan_events():
            if filters.category is not None and event.category is not filters.category:
                continue
            if filters.location_id is not None and event.location_id != filters.location_id:
                continue
            if filters.created_by is not None and event.created_by != filters.created_by:
                continue
            if filters.status is not None and event.status is not filters.status:
                continue
            if filters.upcoming_only and event.start_time < now:
                continue
            out.append(event)

        out.sort(key=lambda e: e.start_time, reverse=not filters.upcoming_only)
        if filters.limit is not None:
            out = out[: filters.limit]
        return out

    def recommended_events(self, interests: list[str], limit: int | None = None) -> list[EventRecord]:
        """Upcoming published events sharing a tag with `interests`, soonest first."""
        wanted = {i.strip().lower() for i in interests if i and i.strip()}
        limit = limit or int(self._settings.registration.recommended_limit)
        upcoming = self.list_events({"upcoming_only": True, "status": EventStatus.PUBLISHED})
        if wanted:
            upcoming = [e for e in upcoming if wanted & set(e.tags)]
        return upcoming[:limit]

    def events_for_attendee(self, user_id: str) -> list[EventRecord]:
        events = [e for e in self._scan_events() if e.has_attendee(user_id)]
        events.sort(key=lambda e: e.start_time)
        return events
