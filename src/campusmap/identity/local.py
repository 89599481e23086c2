"""
In-process identity provider.

Keeps identities and their claims in memory and mints HS256 bearer tokens with
PyJWT. Each token carries a snapshot of the claims at mint time, which is exactly
the staleness the profile synchronizer has to live with in production.

With a `path`, identities are also written to a JSON file after every change
(temp file + atomic replace) and loaded back on start, so the CLI and the API can
share them. Like the JSON document store this is meant for single-process demos.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from campusmap.core.time import utc_now
from campusmap.identity.base import (
    IdentityExists,
    IdentityNotFound,
    IdentityProviderUnavailable,
    InvalidToken,
    VerifiedToken,
)

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"


class LocalIdentityProvider:
    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        audience: str,
        token_ttl_seconds: int = 3600,
        path: Path | None = None,
    ):
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._ttl = int(token_ttl_seconds)
        self._path = path
        self._lock = threading.Lock()
        # Credentials are checked outside this layer; only profile-facing data lives here.
        self._identities: dict[str, dict[str, Any]] = {}
        if path is not None:
            self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise IdentityProviderUnavailable(f"Cannot read identity file {self._path}: {exc}") from exc
        self._identities = {uid: dict(entry) for uid, entry in (raw.get("identities") or {}).items()}
        logger.info("Loaded %s local identities from %s", len(self._identities), self._path)

    def _persist(self) -> None:
        # Caller holds self._lock.
        if self._path is None:
            return
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps({"identities": self._identities}, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            raise IdentityProviderUnavailable(f"Cannot persist identity file {self._path}: {exc}") from exc

    def create_identity(
        self, *, email: str, display_name: str, password: str | None = None, uid: str | None = None
    ) -> str:
        with self._lock:
            uid = uid or uuid.uuid4().hex[:28]
            if uid in self._identities:
                raise IdentityExists(f"Identity {uid} already exists")
            if any(i["email"] == email for i in self._identities.values()):
                raise IdentityExists(f"Identity with email {email} already exists")
            self._identities[uid] = {"email": email, "display_name": display_name, "claims": {}}
            self._persist()
        logger.info("Identity created uid=%s", uid)
        return uid

    def ensure_identity(self, uid: str, *, email: str, display_name: str) -> None:
        """Register an identity created elsewhere (e.g. federated sign-in) if unknown."""
        with self._lock:
            if uid in self._identities:
                return
            self._identities[uid] = {"email": email, "display_name": display_name, "claims": {}}
            self._persist()

    def has_identity(self, uid: str) -> bool:
        with self._lock:
            return uid in self._identities

    def delete_identity(self, uid: str) -> None:
        with self._lock:
            if self._identities.pop(uid, None) is None:
                raise IdentityNotFound(f"Identity {uid} not found")
            self._persist()
        logger.info("Identity deleted uid=%s", uid)

    def set_claims(self, uid: str, claims: dict[str, Any]) -> None:
        with self._lock:
            identity = self._identities.get(uid)
            if identity is None:
                raise IdentityNotFound(f"Identity {uid} not found")
            identity["claims"] = dict(claims)
            self._persist()
        logger.info("Claims set uid=%s role=%s", uid, claims.get("role"))

    def get_claims(self, uid: str) -> dict[str, Any]:
        with self._lock:
            identity = self._identities.get(uid)
            if identity is None:
                raise IdentityNotFound(f"Identity {uid} not found")
            return dict(identity["claims"])

    def issue_token(self, uid: str) -> str:
        """Mint (or refresh) a bearer token embedding the identity's current claims."""
        claims = self.get_claims(uid)
        now = utc_now()
        payload = {
            "sub": uid,
            "iat": now,
            "exp": now + timedelta(seconds=self._ttl),
            "iss": self._issuer,
            "aud": self._audience,
            "claims": claims,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_token(self, token: str) -> VerifiedToken:
        if not token or not isinstance(token, str):
            raise InvalidToken("Token must be a non-empty string")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.PyJWTError as exc:
            logger.debug("Token verification failed: %s", exc)
            raise InvalidToken("Invalid token") from exc

        uid = str(payload["sub"])
        if not self.has_identity(uid):
            raise InvalidToken("Token subject no longer exists")

        return VerifiedToken(
            subject_id=uid,
            claims=dict(payload.get("claims") or {}),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
