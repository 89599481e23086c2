"""
Object graph construction.

The API and CLI both get their services from `get_container()`, which builds the
configured store and identity provider once per process. Tests build their own
`Container` from `build_container()` with an in-memory store and a local provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from campusmap.config.settings import Settings, get_settings
from campusmap.core.env import resolve_project_path
from campusmap.identity.base import IdentityProvider
from campusmap.identity.local import LocalIdentityProvider
from campusmap.identity.toolkit import ToolkitIdentityProvider
from campusmap.services.gateways import GuardedIdentityProvider, GuardedStore
from campusmap.services.locations import LocationIndexService
from campusmap.services.profiles import IdentityClaimsSynchronizer
from campusmap.services.registration import EventRegistrationService
from campusmap.storage.base import DocumentStore
from campusmap.storage.file import JsonFileDocumentStore
from campusmap.storage.memory import InMemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: GuardedStore
    identity: GuardedIdentityProvider
    identity_provider: IdentityProvider
    locations: LocationIndexService
    events: EventRegistrationService
    profiles: IdentityClaimsSynchronizer


def build_store(settings: Settings) -> DocumentStore:
    if settings.storage.backend == "file":
        path = resolve_project_path(settings.storage.path)
        logger.info("Using JSON file store at %s", path)
        return JsonFileDocumentStore(path)
    return InMemoryDocumentStore()


def identity_path(settings: Settings) -> Path | None:
    """Where the local provider keeps identities, or None for memory only."""
    if settings.identity.local_path:
        return resolve_project_path(settings.identity.local_path)
    if settings.storage.backend == "file":
        return resolve_project_path(settings.storage.path).with_name("identities.json")
    return None


def build_identity_provider(settings: Settings) -> IdentityProvider:
    cfg = settings.identity
    if cfg.backend == "toolkit":
        return ToolkitIdentityProvider(cfg)
    path = identity_path(settings)
    if path is not None:
        logger.info("Using local identities at %s", path)
    return LocalIdentityProvider(
        secret=cfg.token_secret,
        issuer=cfg.token_issuer,
        audience=cfg.token_audience,
        token_ttl_seconds=cfg.token_ttl_seconds,
        path=path,
    )


def build_container(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    identity: IdentityProvider | None = None,
) -> Container:
    guarded_store = GuardedStore(
        store if store is not None else build_store(settings),
        timeout_seconds=settings.storage.call_timeout_seconds,
    )
    provider = identity if identity is not None else build_identity_provider(settings)
    guarded_identity = GuardedIdentityProvider(
        provider,
        timeout_seconds=settings.identity.call_timeout_seconds,
    )
    return Container(
        settings=settings,
        store=guarded_store,
        identity=guarded_identity,
        identity_provider=provider,
        locations=LocationIndexService(guarded_store, settings),
        events=EventRegistrationService(guarded_store, settings),
        profiles=IdentityClaimsSynchronizer(guarded_store, guarded_identity, settings),
    )


@lru_cache
def get_container() -> Container:
    """Process-wide container built from `get_settings()` (cached)."""
    return build_container(get_settings())
