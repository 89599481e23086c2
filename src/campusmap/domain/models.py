"""
Domain models (Pydantic).

These types represent the stable "contract" between layers:
- location records and the query shapes over them,
- event records with their attendee list and status,
- user profiles and the claims payload embedded in bearer tokens.

Documents are stored as plain JSON-able dicts produced by `to_document()`; the
document id lives next to the data, not inside it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _normalize_tags(tags: list[str]) -> list[str]:
    return sorted({t.strip().lower() for t in tags if t and t.strip()})


class Coordinates(BaseModel):
    """A geographic point in decimal degrees."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationType(str, Enum):
    BUILDING = "building"
    ROOM = "room"
    POI = "poi"


class LocationFields(BaseModel):
    """Caller-supplied fields of a location (create payload)."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    type: LocationType
    coordinates: Coordinates
    tags: list[str] = Field(default_factory=list)
    building_id: str | None = None
    floor: int | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("name must not be blank")
        return name

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _tags(cls, tags: list[str]) -> list[str]:
        return _normalize_tags(tags)


class LocationPatch(BaseModel):
    """Partial update; unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    type: LocationType | None = None
    coordinates: Coordinates | None = None
    tags: list[str] | None = None
    building_id: str | None = None
    floor: int | None = None
    meta: dict[str, Any] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _tags(cls, tags: list[str] | None) -> list[str] | None:
        return None if tags is None else _normalize_tags(tags)


class LocationRecord(LocationFields):
    """A stored location. `id` is assigned by the store and never changes."""

    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: datetime
    updated_at: datetime


class NearbyLocation(BaseModel):
    location: LocationRecord
    distance_m: float


class LocationFilters(BaseModel):
    type: LocationType | None = None
    building_id: str | None = None
    floor: int | None = None
    tags: list[str] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)

    @field_validator("tags")
    @classmethod
    def _tags(cls, tags: list[str]) -> list[str]:
        return _normalize_tags(tags)


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"


class EventCategory(str, Enum):
    ACADEMIC = "academic"
    CULTURAL = "cultural"
    SPORTS = "sports"
    WORKSHOP = "workshop"
    SEMINAR = "seminar"
    CONFERENCE = "conference"
    SOCIAL = "social"
    OTHER = "other"


class Attendee(BaseModel):
    user_id: str
    registered_at: datetime


class EventFields(BaseModel):
    """Caller-supplied fields of an event (create payload)."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=1000)
    category: EventCategory
    location_id: str
    start_time: datetime
    end_time: datetime
    capacity: int = Field(50, ge=1)
    organizer: str = Field(..., min_length=1, max_length=100)
    tags: list[str] = Field(default_factory=list)
    status: EventStatus = EventStatus.PUBLISHED

    @field_validator("category", mode="before")
    @classmethod
    def _lower_category(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _tags(cls, tags: list[str]) -> list[str]:
        return _normalize_tags(tags)

    @model_validator(mode="after")
    def _validate_order(self) -> "EventFields":
        # Mixed naive/aware pairs are ordered by the service once both are in UTC.
        if (self.start_time.tzinfo is None) != (self.end_time.tzinfo is None):
            return self
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class EventPatch(BaseModel):
    """Partial event update; attendees and ownership are not patchable."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    category: EventCategory | None = None
    location_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    capacity: int | None = Field(default=None, ge=1)
    organizer: str | None = Field(default=None, min_length=1, max_length=100)
    tags: list[str] | None = None
    status: EventStatus | None = None

    @field_validator("category", mode="before")
    @classmethod
    def _lower_category(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def _tags(cls, tags: list[str] | None) -> list[str] | None:
        return None if tags is None else _normalize_tags(tags)


class EventRecord(EventFields):
    """A stored event. `len(attendees) <= capacity` always holds."""

    model_config = ConfigDict(extra="ignore")

    id: str
    created_by: str
    attendees: list[Attendee] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def available_spots(self) -> int:
        return max(0, self.capacity - len(self.attendees))

    @property
    def is_full(self) -> bool:
        return len(self.attendees) >= self.capacity

    def has_attendee(self, user_id: str) -> bool:
        return any(a.user_id == user_id for a in self.attendees)


class EventFilters(BaseModel):
    category: EventCategory | None = None
    location_id: str | None = None
    created_by: str | None = None
    status: EventStatus | None = None
    upcoming_only: bool = False
    limit: int | None = Field(default=None, ge=1)


class UserRole(str, Enum):
    """Roles, least to most privileged."""

    STUDENT = "student"
    ORGANIZER = "organizer"
    ADMIN = "admin"

    @property
    def is_privileged(self) -> bool:
        return self is not UserRole.STUDENT


class ProfileFields(BaseModel):
    """Create payload. `uid` is omitted for email/password sign-ups."""

    model_config = ConfigDict(extra="forbid")

    uid: str | None = None
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    password: str | None = Field(default=None, min_length=6)
    role: UserRole = UserRole.STUDENT
    interests: list[str] = Field(default_factory=list)
    photo_url: str | None = None

    @field_validator("email")
    @classmethod
    def _email(cls, email: str) -> str:
        email = email.strip().lower()
        if "@" not in email:
            raise ValueError("email must contain '@'")
        return email

    @field_validator("interests")
    @classmethod
    def _interests(cls, interests: list[str]) -> list[str]:
        return _normalize_tags(interests)


class ProfilePatch(BaseModel):
    # uid/email are accepted here only so the service can reject them explicitly.
    model_config = ConfigDict(extra="forbid")

    uid: str | None = None
    email: str | None = None
    name: str | None = Field(default=None, min_length=1, max_length=100)
    role: UserRole | None = None
    interests: list[str] | None = None
    photo_url: str | None = None

    @field_validator("interests")
    @classmethod
    def _interests(cls, interests: list[str] | None) -> list[str] | None:
        return None if interests is None else _normalize_tags(interests)


class IdentityClaims(BaseModel):
    """Token-embedded copy of the profile; a read cache, never the source of truth."""

    role: UserRole
    name: str
    email: str
    interests: list[str] = Field(default_factory=list)
    photo_url: str | None = None


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uid: str
    name: str
    email: str
    role: UserRole = UserRole.STUDENT
    interests: list[str] = Field(default_factory=list)
    photo_url: str | None = None
    created_at: datetime
    updated_at: datetime
    claims_pending: bool = False

    def to_claims(self) -> IdentityClaims:
        return IdentityClaims(
            role=self.role,
            name=self.name,
            email=self.email,
            interests=list(self.interests),
            photo_url=self.photo_url,
        )


def to_document(model: BaseModel, *, exclude: set[str] | None = None) -> dict[str, Any]:
    """Dump a model to the JSON-able dict shape stored in the document store."""
    return model.model_dump(mode="json", exclude=exclude or set())
