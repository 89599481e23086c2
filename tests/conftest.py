from __future__ import annotations

from datetime import timedelta

import pytest

from campusmap.config.settings import Settings, get_settings
from campusmap.core.retry import RetryPolicy
from campusmap.core.time import utc_now
from campusmap.identity.local import LocalIdentityProvider
from campusmap.storage.memory import InMemoryDocumentStore
from campusmap.wiring import Container, build_container


@pytest.fixture
def settings() -> Settings:
    # Keep retries instant and deterministic; everything else comes from defaults.yaml.
    base = get_settings()
    fast = RetryPolicy(max_attempts=5, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=False)
    return base.model_copy(
        update={
            "storage": base.storage.model_copy(update={"backend": "memory"}),
            "registration": base.registration.model_copy(update={"retry": fast}),
            "identity": base.identity.model_copy(
                update={
                    "backend": "local",
                    "claims_retry": fast.model_copy(update={"max_attempts": 3}),
                    "profile_write_retry": fast,
                }
            ),
        }
    )


@pytest.fixture
def provider(settings: Settings) -> LocalIdentityProvider:
    cfg = settings.identity
    return LocalIdentityProvider(
        secret="test-secret-with-enough-bytes-for-hs256",
        issuer=cfg.token_issuer,
        audience=cfg.token_audience,
        token_ttl_seconds=cfg.token_ttl_seconds,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def container(settings: Settings, store: InMemoryDocumentStore, provider: LocalIdentityProvider) -> Container:
    return build_container(settings, store=store, identity=provider)


@pytest.fixture
def admin_uid(container: Container) -> str:
    profile = container.profiles.bootstrap_admin(
        {"name": "Campus Admin", "email": "admin@campus.test", "password": "admin-pass"}
    )
    return profile.uid


@pytest.fixture
def organizer_uid(container: Container, admin_uid: str) -> str:
    profile = container.profiles.create_profile(
        {"name": "Club Lead", "email": "lead@campus.test", "password": "lead-pass", "role": "organizer"},
        admin_uid,
    )
    return profile.uid


@pytest.fixture
def library_id(container: Container, admin_uid: str) -> str:
    record = container.locations.create_location(
        {
            "name": "Central Library",
            "type": "building",
            "coordinates": {"lat": 30.3548, "lng": 76.3635},
            "tags": ["Study", "books"],
        },
        admin_uid,
    )
    return record.id


def event_payload(location_id: str, **overrides) -> dict:
    start = utc_now() + timedelta(days=3)
    payload = {
        "title": "Robotics Workshop",
        "category": "workshop",
        "location_id": location_id,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(hours=2)).isoformat(),
        "capacity": 10,
        "organizer": "Robotics Club",
        "tags": ["robotics"],
    }
    payload.update(overrides)
    return payload


def make_student(container: Container, name: str) -> str:
    slug = name.lower().replace(" ", ".")
    profile = container.profiles.create_profile(
        {"name": name, "email": f"{slug}@campus.test", "password": "student-pass"}
    )
    return profile.uid
