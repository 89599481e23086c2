"""
Error taxonomy shared by every service.

Services raise these (never bare `Exception`) so the API and CLI layers can map
them to status codes / exit codes without inspecting messages.
"""

from __future__ import annotations


class DirectoryError(Exception):
    """Base class for all campus directory errors."""


class NotFound(DirectoryError):
    """A referenced record does not exist."""


class Conflict(DirectoryError):
    """Duplicate write, or an optimistic-write race that exhausted its retries."""


class CapacityExceeded(Conflict):
    """The event already holds `capacity` attendees."""


class InvalidState(DirectoryError):
    """The operation is not legal for the record's current status."""


class ValidationError(DirectoryError):
    """Malformed input; raised before any write is attempted."""


class PermissionDenied(DirectoryError):
    """The caller's role (as stored in its profile document) does not allow this."""


class AuthenticationRequired(PermissionDenied):
    """No bearer token, or one the identity provider refused."""


class ScanLimitExceeded(DirectoryError):
    """A bounded collection scan found more documents than the configured cap."""


class UpstreamUnavailable(DirectoryError):
    """The document store or identity provider timed out or is down."""

    def __init__(self, message: str, *, side: str | None = None):
        super().__init__(message)
        self.side = side


class ClaimsSyncFailed(UpstreamUnavailable):
    """The profile document was written but the provider claims write kept failing."""

    def __init__(self, uid: str, message: str):
        super().__init__(message, side="identity_provider")
        self.uid = uid


class IdentityDeletionFailed(UpstreamUnavailable):
    """The profile document is gone but the provider identity could not be removed."""

    def __init__(self, uid: str, message: str):
        super().__init__(message, side="identity_provider")
        self.uid = uid
