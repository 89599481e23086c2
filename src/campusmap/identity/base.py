"""
Identity provider contract.

The provider owns credentials and bearer tokens. This layer only creates/deletes
identities, writes the claims payload embedded in newly issued tokens, and
verifies tokens. Claims reach new tokens immediately; tokens already issued keep
the claims they were minted with until they expire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


class IdentityError(Exception):
    """Base class for identity-provider signals."""


class IdentityNotFound(IdentityError):
    pass


class IdentityExists(IdentityError):
    pass


class InvalidToken(IdentityError):
    """Missing, malformed, expired, or revoked bearer token."""


class IdentityProviderUnavailable(IdentityError):
    """Transport failure, timeout, or 5xx/429 from the provider."""


@dataclass(frozen=True)
class VerifiedToken:
    subject_id: str
    claims: dict[str, Any] = field(default_factory=dict)
    issued_at: datetime | None = None
    expires_at: datetime | None = None


class IdentityProvider(Protocol):
    def create_identity(
        self, *, email: str, display_name: str, password: str | None = None, uid: str | None = None
    ) -> str: ...

    def has_identity(self, uid: str) -> bool: ...

    def delete_identity(self, uid: str) -> None: ...

    def set_claims(self, uid: str, claims: dict[str, Any]) -> None: ...

    def verify_token(self, token: str) -> VerifiedToken: ...
