"""
Role checks for security-critical operations.

Token claims can be up to one token lifetime stale, so every privilege decision
re-reads the caller's profile document instead of trusting the claims.
"""

from __future__ import annotations

from campusmap.core.errors import PermissionDenied
from campusmap.domain.models import UserProfile, UserRole
from campusmap.services.gateways import GuardedStore

USERS_COLLECTION = "users"


def load_profile(store: GuardedStore, uid: str) -> UserProfile | None:
    doc = store.get(USERS_COLLECTION, uid)
    if doc is None:
        return None
    return UserProfile.model_validate({**doc.data, "uid": doc.id})


def require_caller(store: GuardedStore, caller_uid: str | None) -> UserProfile:
    """Return the caller's current profile or refuse."""
    if not caller_uid:
        raise PermissionDenied("Authentication required")
    profile = load_profile(store, caller_uid)
    if profile is None:
        raise PermissionDenied("Caller has no profile")
    return profile


def require_role(store: GuardedStore, caller_uid: str | None, *roles: UserRole) -> UserProfile:
    profile = require_caller(store, caller_uid)
    if profile.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise PermissionDenied(f"Requires one of: {allowed}")
    return profile


def require_owner_or_admin(store: GuardedStore, caller_uid: str | None, owner_uid: str) -> UserProfile:
    profile = require_caller(store, caller_uid)
    if profile.role is UserRole.ADMIN or profile.uid == owner_uid:
        return profile
    raise PermissionDenied("Only the owner or an admin may do this")
