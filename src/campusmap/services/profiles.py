"""
Identity claims synchronizer.

A user's profile lives in two independent systems: the `users/<uid>` document
(source of truth) and the identity provider's claims payload (a copy embedded in
bearer tokens). There is no transaction spanning both, so every profile write is
a small saga with a fixed order:

1. write the document with `claims_pending=True`,
2. push the claims derived from the *current* document (retried),
3. clear `claims_pending` with a conditional write.

If step 2 never succeeds the document keeps `claims_pending=True` and
`resume_pending()` (CLI: `campusmap resume-sync`) finishes the job later.

Deletion is the mirror image: a `pending_identity_deletions/<uid>` marker is
written first, then the document is deleted, then the provider identity; the
marker goes away only when both are gone.

Staleness: tokens minted before a claims write keep their old claims until they
expire. `authorize()` therefore decides on the profile document, never on token
claims; `whoami()` returns claims for display only.
"""

from __future__ import annotations

import logging
from typing import Any

from campusmap.config.settings import Settings
from campusmap.core.errors import (
    AuthenticationRequired,
    ClaimsSyncFailed,
    Conflict,
    IdentityDeletionFailed,
    NotFound,
    PermissionDenied,
    UpstreamUnavailable,
    ValidationError,
)
from campusmap.core.retry import retry_call
from campusmap.core.time import utc_now
from campusmap.domain.models import (
    ProfileFields,
    ProfilePatch,
    UserProfile,
    UserRole,
    to_document,
)
from campusmap.identity.base import IdentityError, IdentityExists, IdentityNotFound, InvalidToken, VerifiedToken
from campusmap.services._common import validate_input
from campusmap.services.authz import USERS_COLLECTION, load_profile, require_caller, require_role
from campusmap.services.gateways import IDENTITY_SIDE, STORE_SIDE, GuardedIdentityProvider, GuardedStore
from campusmap.storage.base import Document, DocumentExists, VersionConflict

logger = logging.getLogger(__name__)

PENDING_DELETIONS_COLLECTION = "pending_identity_deletions"
SYSTEM_COLLECTION = "system"
BOOTSTRAP_DOC_ID = "bootstrap_admin"


class _ClaimsOutdated(Exception):
    """The document changed while its claims were being pushed."""


def _to_profile(doc: Document) -> UserProfile:
    return UserProfile.model_validate({**doc.data, "uid": doc.id})


def _claims_of(doc: Document) -> dict[str, Any]:
    return to_document(_to_profile(doc).to_claims())


class IdentityClaimsSynchronizer:
    def __init__(self, store: GuardedStore, identity: GuardedIdentityProvider, settings: Settings):
        self._store = store
        self._identity = identity
        self._settings = settings

    # -- reads -------------------------------------------------------------------

    def get_profile(self, uid: str) -> UserProfile:
        profile = load_profile(self._store, uid)
        if profile is None:
            raise NotFound(f"Profile {uid} not found")
        return profile

    def list_profiles(
        self, *, role: UserRole | str | None = None, limit: int | None = None, caller_uid: str | None = None
    ) -> list[UserProfile]:
        require_role(self._store, caller_uid, UserRole.ADMIN)
        wanted = UserRole(role) if role is not None else None
        cap = int(self._settings.storage.max_scan_size)
        profiles = [_to_profile(d) for d in self._store.scan(USERS_COLLECTION, limit=cap)]
        if wanted is not None:
            profiles = [p for p in profiles if p.role is wanted]
        profiles.sort(key=lambda p: p.created_at)
        return profiles[:limit] if limit else profiles

    # -- tokens --------------------------------------------------------------------

    def resolve_token(self, token: str | None) -> VerifiedToken:
        if not token:
            raise AuthenticationRequired("Bearer token required")
        try:
            return self._identity.verify_token(token)
        except InvalidToken as exc:
            raise AuthenticationRequired(str(exc)) from exc
        except IdentityError as exc:
            raise UpstreamUnavailable(f"Token check failed: {exc}", side=IDENTITY_SIDE) from exc

    def authorize(self, token: str | None, *roles: UserRole) -> UserProfile:
        """Verify `token` and check `roles` against the caller's profile document.

        Token claims may be up to one token lifetime old, so they are ignored here.
        """
        verified = self.resolve_token(token)
        profile = load_profile(self._store, verified.subject_id)
        if profile is None:
            raise PermissionDenied("Caller has no profile")
        if roles and profile.role not in roles:
            allowed = ", ".join(r.value for r in roles)
            raise PermissionDenied(f"Requires one of: {allowed}")
        return profile

    def whoami(self, token: str | None) -> VerifiedToken:
        """Token subject and claims as minted; may lag the profile document."""
        return self.resolve_token(token)

    # -- saga steps ----------------------------------------------------------------

    def sync_claims(self, uid: str) -> UserProfile:
        """Push claims derived from the current document, then clear `claims_pending`.

        After the push the document is re-read; if its claim fields moved in the
        meantime the push is repeated, so the last push always reflects the
        latest document.

        Raises:
            NotFound: The profile document does not exist.
            ClaimsSyncFailed: The provider kept failing, refused the claims, or lost
                the identity.
        """

        def attempt() -> UserProfile:
            doc = self._store.get(USERS_COLLECTION, uid)
            if doc is None:
                raise NotFound(f"Profile {uid} not found")
            claims = _claims_of(doc)
            self._identity.set_claims(uid, claims)

            current = self._store.get(USERS_COLLECTION, uid)
            if current is None:
                raise NotFound(f"Profile {uid} was deleted during claims sync")
            if _claims_of(current) != claims:
                raise _ClaimsOutdated(uid)
            if not current.data.get("claims_pending"):
                return _to_profile(current)
            written = self._store.put_if_version(
                USERS_COLLECTION,
                uid,
                {**current.data, "claims_pending": False},
                expected_version=current.version,
            )
            return _to_profile(written)

        policy = self._settings.identity.claims_retry
        try:
            profile = retry_call(
                attempt,
                policy=policy,
                retry_on=(UpstreamUnavailable, VersionConflict, _ClaimsOutdated),
                what=f"claims sync {uid}",
            )
        except IdentityNotFound as exc:
            raise ClaimsSyncFailed(uid, f"Identity {uid} does not exist at the provider") from exc
        except IdentityError as exc:
            raise ClaimsSyncFailed(uid, f"Provider rejected the claims for {uid}: {exc}") from exc
        except UpstreamUnavailable as exc:
            if exc.side == STORE_SIDE:
                raise
            raise ClaimsSyncFailed(
                uid, f"Claims write for {uid} failed after {policy.max_attempts} attempts: {exc}"
            ) from exc
        except (VersionConflict, _ClaimsOutdated) as exc:
            raise Conflict(f"Profile {uid} kept changing during claims sync; it stays pending") from exc

        logger.info("Claims synced uid=%s role=%s", uid, profile.role.value)
        return profile

    def _delete_identity(self, uid: str) -> None:
        def attempt() -> None:
            try:
                self._identity.delete_identity(uid)
            except IdentityNotFound:
                logger.info("Identity %s already gone", uid)

        policy = self._settings.identity.claims_retry
        try:
            retry_call(attempt, policy=policy, retry_on=(UpstreamUnavailable,), what=f"identity delete {uid}")
        except UpstreamUnavailable as exc:
            raise IdentityDeletionFailed(
                uid, f"Identity {uid} could not be deleted after {policy.max_attempts} attempts: {exc}"
            ) from exc
        except IdentityError as exc:
            raise IdentityDeletionFailed(uid, f"Provider refused to delete identity {uid}: {exc}") from exc

    def _finish_deletion(self, uid: str) -> None:
        self._store.delete(USERS_COLLECTION, uid)
        self._delete_identity(uid)
        self._store.delete(PENDING_DELETIONS_COLLECTION, uid)
        logger.info("Profile and identity deleted uid=%s", uid)

    # -- writes --------------------------------------------------------------------

    def create_profile(self, data: ProfileFields | dict, caller_uid: str | None = None) -> UserProfile:
        """Create the document and push its claims.

        A privileged role needs an admin caller, and so does a profile for any uid
        other than the caller's own. Without a `uid` an email/password identity is
        created at the provider first.
        """
        fields = validate_input(ProfileFields, data)
        if fields.role.is_privileged or (fields.uid and caller_uid != fields.uid):
            require_role(self._store, caller_uid, UserRole.ADMIN)
        return self._create(fields)

    def _create(self, fields: ProfileFields) -> UserProfile:
        created_identity = False
        uid = fields.uid
        if uid:
            try:
                exists = self._identity.has_identity(uid)
            except IdentityError as exc:
                raise UpstreamUnavailable(f"Identity lookup for {uid} failed: {exc}", side=IDENTITY_SIDE) from exc
            if not exists:
                raise NotFound(f"Identity {uid} does not exist at the provider")
        else:
            if not fields.password:
                raise ValidationError("password is required when no uid is given")
            try:
                uid = self._identity.create_identity(
                    email=fields.email, display_name=fields.name, password=fields.password
                )
            except IdentityExists as exc:
                raise Conflict(f"An account for {fields.email} already exists") from exc
            except IdentityError as exc:
                raise UpstreamUnavailable(
                    f"Identity for {fields.email} was not created: {exc}", side=IDENTITY_SIDE
                ) from exc
            created_identity = True

        now = utc_now().isoformat()
        doc = {
            **to_document(fields, exclude={"uid", "password"}),
            "created_at": now,
            "updated_at": now,
            "claims_pending": True,
        }
        try:
            self._store.create(USERS_COLLECTION, uid, doc)
        except DocumentExists as exc:
            raise Conflict(f"Profile {uid} already exists") from exc
        except Exception:
            if created_identity:
                # Undo the identity so a retry with the same email can succeed.
                self._identity.delete_identity(uid)
            raise

        logger.info("Profile created uid=%s role=%s", uid, fields.role.value)
        return self.sync_claims(uid)

    def update_profile(self, uid: str, patch: ProfilePatch | dict, caller_uid: str | None) -> UserProfile:
        patch = validate_input(ProfilePatch, patch)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        caller = require_caller(self._store, caller_uid)
        if caller.role is not UserRole.ADMIN and caller.uid != uid:
            raise PermissionDenied("Only the profile owner or an admin may do this")

        new_uid = changes.pop("uid", uid)
        if new_uid != uid:
            raise ValidationError("uid cannot be changed")
        for key in ("name", "role"):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be cleared")
        if "interests" in changes and changes["interests"] is None:
            changes["interests"] = []
        new_email = changes.pop("email", None)

        def attempt() -> Document:
            doc = self._store.get(USERS_COLLECTION, uid)
            if doc is None:
                raise NotFound(f"Profile {uid} not found")
            if new_email is not None and new_email.strip().lower() != doc.data.get("email"):
                raise ValidationError("email cannot be changed here; change it at the identity provider")
            if "role" in changes and changes["role"] != doc.data.get("role") and caller.role is not UserRole.ADMIN:
                raise PermissionDenied("Only an admin may change roles")
            data = {**doc.data, **changes, "updated_at": utc_now().isoformat(), "claims_pending": True}
            return self._store.put_if_version(USERS_COLLECTION, uid, data, expected_version=doc.version)

        policy = self._settings.identity.profile_write_retry
        try:
            retry_call(attempt, policy=policy, retry_on=(VersionConflict,), what=f"profile update {uid}")
        except VersionConflict as exc:
            raise Conflict(f"Profile {uid} is changing too fast; retry later") from exc

        logger.info("Profile updated uid=%s fields=%s by=%s", uid, sorted(changes), caller.uid)
        return self.sync_claims(uid)

    def delete_profile(self, uid: str, caller_uid: str | None) -> None:
        """Delete the document, then the identity; resumable at every step.

        A user may always finish deleting themselves, even once the document is
        already gone; anyone else must be an admin.
        """
        if caller_uid != uid:
            require_role(self._store, caller_uid, UserRole.ADMIN)

        doc = self._store.get(USERS_COLLECTION, uid)
        marker = self._store.get(PENDING_DELETIONS_COLLECTION, uid)
        if doc is None and marker is None:
            raise NotFound(f"Profile {uid} not found")
        if marker is None:
            self._store.put(
                PENDING_DELETIONS_COLLECTION,
                uid,
                {"uid": uid, "requested_by": caller_uid, "requested_at": utc_now().isoformat()},
            )
        self._finish_deletion(uid)

    def resume_pending(self) -> dict[str, Any]:
        """Finish interrupted claims syncs and identity deletions.

        Returns a summary with counts of what completed and the uids still stuck.
        """
        cap = int(self._settings.storage.max_scan_size)
        summary: dict[str, Any] = {
            "claims_synced": 0,
            "claims_failed": [],
            "deletions_completed": 0,
            "deletions_failed": [],
        }

        for marker in self._store.scan(PENDING_DELETIONS_COLLECTION, limit=cap):
            try:
                self._finish_deletion(marker.id)
                summary["deletions_completed"] += 1
            except UpstreamUnavailable as exc:
                logger.warning("Deletion of %s still incomplete: %s", marker.id, exc)
                summary["deletions_failed"].append(marker.id)

        for doc in self._store.scan(USERS_COLLECTION, limit=cap):
            if not doc.data.get("claims_pending"):
                continue
            try:
                self.sync_claims(doc.id)
                summary["claims_synced"] += 1
            except NotFound:
                continue
            except (UpstreamUnavailable, Conflict) as exc:
                logger.warning("Claims for %s still pending: %s", doc.id, exc)
                summary["claims_failed"].append(doc.id)

        logger.info(
            "Resume finished: %s claims synced, %s deletions completed, %s still pending",
            summary["claims_synced"],
            summary["deletions_completed"],
            len(summary["claims_failed"]) + len(summary["deletions_failed"]),
        )
        return summary

    def bootstrap_admin(self, data: ProfileFields | dict) -> UserProfile:
        """Create the first admin. Refused once any admin exists."""
        fields = validate_input(ProfileFields, data).model_copy(update={"role": UserRole.ADMIN})
        cap = int(self._settings.storage.max_scan_size)
        if any(d.data.get("role") == UserRole.ADMIN.value for d in self._store.scan(USERS_COLLECTION, limit=cap)):
            raise Conflict("An admin already exists")
        try:
            self._store.create(
                SYSTEM_COLLECTION, BOOTSTRAP_DOC_ID, {"email": fields.email, "at": utc_now().isoformat()}
            )
        except DocumentExists as exc:
            raise Conflict("Admin bootstrap has already run") from exc
        logger.info("Bootstrapping first admin %s", fields.email)
        try:
            return self._create(fields)
        except (Conflict, NotFound, UpstreamUnavailable, ValidationError):
            self._store.delete(SYSTEM_COLLECTION, BOOTSTRAP_DOC_ID)
            raise

