"""
REST identity-provider adapter (Identity Toolkit admin API).

This module is responsible only for:
- creating / deleting accounts,
- writing the custom-attributes payload that ends up in newly issued ID tokens,
- verifying an ID token by looking the account up with it.

Authentication uses a pre-provisioned OAuth access token from settings. HTTP
failures are mapped onto the `identity.base` signals so the services never see
httpx types.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from campusmap.config.settings import IdentitySettings
from campusmap.core.http import post_json
from campusmap.identity.base import (
    IdentityError,
    IdentityExists,
    IdentityNotFound,
    IdentityProviderUnavailable,
    InvalidToken,
    VerifiedToken,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _error_code(exc: httpx.HTTPStatusError) -> str:
    try:
        body = exc.response.json()
    except ValueError:
        return ""
    return str(((body or {}).get("error") or {}).get("message") or "")


class ToolkitIdentityProvider:
    """Identity Toolkit admin client (one HTTP call per operation, no caching)."""

    def __init__(self, settings: IdentitySettings):
        cfg = settings.toolkit
        if not cfg.project_id:
            raise ValueError("identity.toolkit.project_id is required for the toolkit backend")
        self._base = f"{cfg.base_url.rstrip('/')}/projects/{cfg.project_id}"
        self._access_token = cfg.access_token
        self._timeout = float(settings.call_timeout_seconds) or 10.0

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        headers = {"Authorization": f"Bearer {self._access_token}"} if self._access_token else None
        try:
            return post_json(
                f"{self._base}/{path}",
                payload=payload,
                headers=headers,
                timeout_seconds=self._timeout,
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            code = _error_code(exc)
            if status in _RETRYABLE_STATUS:
                raise IdentityProviderUnavailable(f"{path}: HTTP {status}") from exc
            if code.startswith("USER_NOT_FOUND"):
                raise IdentityNotFound(code) from exc
            if code.startswith(("EMAIL_EXISTS", "DUPLICATE_LOCAL_ID")):
                raise IdentityExists(code) from exc
            if code.startswith(("INVALID_ID_TOKEN", "TOKEN_EXPIRED", "USER_DISABLED")):
                raise InvalidToken(code) from exc
            raise IdentityError(f"{path}: HTTP {status} {code}".strip()) from exc
        except httpx.TransportError as exc:
            raise IdentityProviderUnavailable(f"{path}: {exc}") from exc

    def create_identity(
        self, *, email: str, display_name: str, password: str | None = None, uid: str | None = None
    ) -> str:
        payload: dict[str, Any] = {"email": email, "displayName": display_name, "emailVerified": False}
        if password:
            payload["password"] = password
        if uid:
            payload["localId"] = uid
        data = self._post("accounts", payload)
        local_id = str((data or {}).get("localId") or uid or "")
        if not local_id:
            raise IdentityError("Provider response is missing localId")
        logger.info("Identity created uid=%s", local_id)
        return local_id

    def has_identity(self, uid: str) -> bool:
        try:
            data = self._post("accounts:lookup", {"localId": [uid]})
        except IdentityNotFound:
            return False
        return bool((data or {}).get("users"))

    def delete_identity(self, uid: str) -> None:
        self._post("accounts:delete", {"localId": uid})
        logger.info("Identity deleted uid=%s", uid)

    def set_claims(self, uid: str, claims: dict[str, Any]) -> None:
        self._post("accounts:update", {"localId": uid, "customAttributes": json.dumps(claims)})
        logger.info("Claims set uid=%s role=%s", uid, claims.get("role"))

    def verify_token(self, token: str) -> VerifiedToken:
        if not token:
            raise InvalidToken("Token must be a non-empty string")
        data = self._post("accounts:lookup", {"idToken": token})
        users = (data or {}).get("users") or []
        if not users:
            raise InvalidToken("Token does not resolve to an account")
        user = users[0]
        raw_attrs = user.get("customAttributes") or "{}"
        try:
            claims = json.loads(raw_attrs)
        except ValueError:
            claims = {}
        return VerifiedToken(subject_id=str(user["localId"]), claims=claims if isinstance(claims, dict) else {})
