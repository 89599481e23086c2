"""
API routes.

Endpoints:
- `/api/locations`: bounding-box, nearby and text queries; admin-only writes.
- `/api/events`: event management and registration for the calling user.
- `/api/users`: profile sign-up, reads and updates (profile + claims saga).
- `/api/health`: store reachability.

Callers authenticate with `Authorization: Bearer <token>`. Routes only resolve the
token to a subject id; role checks happen in the services against the profile
document.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from campusmap.core.geo import GeoPoint
from campusmap.domain.models import (
    Attendee,
    EventCategory,
    EventFields,
    EventPatch,
    EventRecord,
    EventStatus,
    LocationFields,
    LocationPatch,
    LocationRecord,
    LocationType,
    NearbyLocation,
    ProfileFields,
    ProfilePatch,
    UserProfile,
    UserRole,
)
from campusmap.services.authz import require_owner_or_admin
from campusmap.wiring import Container, get_container

router = APIRouter()

_bearer = HTTPBearer(auto_error=False)


def _container() -> Container:
    return get_container()


def _token(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    return credentials.credentials if credentials else None


def _caller_uid(credentials: HTTPAuthorizationCredentials | None) -> str:
    """Subject id of a valid bearer token (401 otherwise)."""
    return _container().profiles.resolve_token(_token(credentials)).subject_id


# -- health ------------------------------------------------------------------------


@router.get("/api/health")
def get_health() -> dict:
    _container().store.ping()
    return {"status": "ok"}


# -- locations -----------------------------------------------------------------------


@router.get("/api/locations", response_model=list[LocationRecord])
def search_locations(
    q: str | None = None,
    type: LocationType | None = None,
    building_id: str | None = None,
    floor: int | None = None,
    tags: list[str] | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
) -> list[LocationRecord]:
    filters = {"type": type, "building_id": building_id, "floor": floor, "tags": tags or [], "limit": limit}
    return _container().locations.search_text(q, filters)


@router.get("/api/locations/bbox", response_model=list[LocationRecord])
def get_locations_in_box(north: float, south: float, east: float, west: float) -> list[LocationRecord]:
    return _container().locations.query_bounding_box(north, south, east, west)


@router.get("/api/locations/nearby", response_model=list[NearbyLocation])
def get_nearby_locations(lat: float, lng: float, radius_m: float | None = None) -> list[NearbyLocation]:
    container = _container()
    radius = radius_m if radius_m is not None else container.settings.locations.default_nearby_radius_m
    return container.locations.query_nearby(GeoPoint(lat=lat, lng=lng), radius)


@router.get("/api/locations/{location_id}", response_model=LocationRecord)
def get_location(location_id: str) -> LocationRecord:
    return _container().locations.get_location(location_id)


@router.post("/api/locations", response_model=LocationRecord, status_code=201)
def post_location(
    payload: LocationFields, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> LocationRecord:
    return _container().locations.create_location(payload, _caller_uid(credentials))


@router.patch("/api/locations/{location_id}", response_model=LocationRecord)
def patch_location(
    location_id: str, patch: LocationPatch, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> LocationRecord:
    return _container().locations.update_location(location_id, patch, _caller_uid(credentials))


@router.delete("/api/locations/{location_id}", status_code=204)
def delete_location(location_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
    _container().locations.delete_location(location_id, _caller_uid(credentials))


# -- events --------------------------------------------------------------------------


@router.get("/api/events", response_model=list[EventRecord])
def list_events(
    category: EventCategory | None = None,
    location_id: str | None = None,
    created_by: str | None = None,
    status: EventStatus | None = None,
    upcoming_only: bool = False,
    limit: int | None = Query(default=None, ge=1),
) -> list[EventRecord]:
    filters = {
        "category": category,
        "location_id": location_id,
        "created_by": created_by,
        "status": status,
        "upcoming_only": upcoming_only,
        "limit": limit,
    }
    return _container().events.list_events(filters)


@router.get("/api/events/recommended", response_model=list[EventRecord])
def get_recommended_events(
    limit: int | None = Query(default=None, ge=1), credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> list[EventRecord]:
    container = _container()
    profile = container.profiles.authorize(_token(credentials))
    return container.events.recommended_events(profile.interests, limit)


@router.get("/api/events/mine", response_model=list[EventRecord])
def get_my_events(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> list[EventRecord]:
    """Events the caller organizes."""
    container = _container()
    profile = container.profiles.authorize(_token(credentials), UserRole.ORGANIZER, UserRole.ADMIN)
    return container.events.list_events({"created_by": profile.uid})


@router.get("/api/events/{event_id}", response_model=EventRecord)
def get_event(event_id: str) -> EventRecord:
    return _container().events.get_event(event_id)


@router.post("/api/events", response_model=EventRecord, status_code=201)
def post_event(payload: EventFields, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> EventRecord:
    return _container().events.create_event(payload, _caller_uid(credentials))


@router.patch("/api/events/{event_id}", response_model=EventRecord)
def patch_event(
    event_id: str, patch: EventPatch, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> EventRecord:
    return _container().events.update_event(event_id, patch, _caller_uid(credentials))


@router.post("/api/events/{event_id}/publish", response_model=EventRecord)
def publish_event(event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> EventRecord:
    return _container().events.publish(event_id, _caller_uid(credentials))


@router.post("/api/events/{event_id}/cancel", response_model=EventRecord)
def cancel_event(event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> EventRecord:
    return _container().events.cancel(event_id, _caller_uid(credentials))


@router.delete("/api/events/{event_id}", status_code=204)
def delete_event(event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
    _container().events.delete_event(event_id, _caller_uid(credentials))


@router.get("/api/events/{event_id}/registrations", response_model=list[Attendee])
def get_registrations(
    event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> list[Attendee]:
    return _container().events.registrations(event_id, _caller_uid(credentials))


@router.post("/api/events/{event_id}/registrations", response_model=EventRecord, status_code=201)
def register_for_event(
    event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> EventRecord:
    container = _container()
    profile = container.profiles.authorize(_token(credentials))
    return container.events.register(event_id, profile.uid)


@router.delete("/api/events/{event_id}/registrations", response_model=EventRecord)
def unregister_from_event(
    event_id: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> EventRecord:
    container = _container()
    profile = container.profiles.authorize(_token(credentials))
    return container.events.unregister(event_id, profile.uid)


# -- users ---------------------------------------------------------------------------


@router.post("/api/users", response_model=UserProfile, status_code=201)
def post_user(payload: ProfileFields, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> UserProfile:
    """Sign up (email/password, no token) or create a profile for a token's subject.

    With a token and no `uid`, the profile is created for the token subject. Admins
    may create profiles for other uids and with privileged roles.
    """
    container = _container()
    caller_uid = _caller_uid(credentials) if credentials else None
    if caller_uid and not payload.uid and not payload.password:
        payload = payload.model_copy(update={"uid": caller_uid})
    return container.profiles.create_profile(payload, caller_uid)


@router.get("/api/users", response_model=list[UserProfile])
def list_users(
    role: UserRole | None = None,
    limit: int | None = Query(default=None, ge=1),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> list[UserProfile]:
    return _container().profiles.list_profiles(role=role, limit=limit, caller_uid=_caller_uid(credentials))


@router.get("/api/users/me", response_model=UserProfile)
def get_me(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> UserProfile:
    """The caller's profile document (authoritative)."""
    return _container().profiles.authorize(_token(credentials))


@router.get("/api/users/me/claims")
def get_my_claims(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> dict[str, Any]:
    """Claims as embedded in the presented token; may lag the profile document."""
    verified = _container().profiles.whoami(_token(credentials))
    return {
        "uid": verified.subject_id,
        "claims": verified.claims,
        "issued_at": verified.issued_at.isoformat() if verified.issued_at else None,
        "expires_at": verified.expires_at.isoformat() if verified.expires_at else None,
    }


@router.get("/api/users/{uid}", response_model=UserProfile)
def get_user(uid: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> UserProfile:
    container = _container()
    require_owner_or_admin(container.store, _caller_uid(credentials), uid)
    return container.profiles.get_profile(uid)


@router.patch("/api/users/{uid}", response_model=UserProfile)
def patch_user(
    uid: str, patch: ProfilePatch, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)
) -> UserProfile:
    return _container().profiles.update_profile(uid, patch, _caller_uid(credentials))


@router.delete("/api/users/{uid}", status_code=204)
def delete_user(uid: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> None:
    _container().profiles.delete_profile(uid, _caller_uid(credentials))


@router.get("/api/users/{uid}/events", response_model=list[EventRecord])
def get_user_events(uid: str, credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> list[EventRecord]:
    """Events `uid` is registered for."""
    container = _container()
    require_owner_or_admin(container.store, _caller_uid(credentials), uid)
    return container.events.events_for_attendee(uid)
