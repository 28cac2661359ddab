"""
ScanMaster - Error Taxonomy

Every failure surfaced by the identity core is an AuthError subclass.
Each class carries a stable `kind` (used in the response envelope) and the
HTTP status the transport maps it to.

Cancellation is not part of this hierarchy: asyncio.CancelledError
propagates unchanged and the transport treats it as a client disconnect.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for identity, session and authorization failures."""

    kind = "Internal"
    status_code = 500
    default_message = "internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationFailure(AuthError):
    kind = "ValidationFailure"
    status_code = 400
    default_message = "validation failed"


class WeakPassword(ValidationFailure):
    """New password does not meet the strength floor."""
    default_message = "password does not meet strength requirements"


class InvalidCredentials(AuthError):
    """Unknown principal or wrong password (never distinguished to clients)."""
    kind = "InvalidCredentials"
    status_code = 401
    default_message = "invalid username or password"


class InvalidCredential(AuthError):
    """Bearer credential is missing, malformed, of the wrong type or badly signed."""
    kind = "InvalidCredential"
    status_code = 401
    default_message = "invalid credential"


class AccountDisabled(AuthError):
    kind = "AccountDisabled"
    status_code = 401
    default_message = "account is disabled"


class Expired(AuthError):
    kind = "Expired"
    status_code = 401
    default_message = "credential has expired"


class Revoked(AuthError):
    kind = "Revoked"
    status_code = 401
    default_message = "credential has been revoked"


class Stale(AuthError):
    """Credential was issued under an older password version."""
    kind = "Stale"
    status_code = 401
    default_message = "credential is stale"


class SessionExpired(AuthError):
    kind = "SessionExpired"
    status_code = 401
    default_message = "session has expired"


class PermissionDenied(AuthError):
    kind = "PermissionDenied"
    status_code = 403
    default_message = "permission denied"


class ProtectedEntity(AuthError):
    """Mutation targets the bootstrap principal, role or permission."""
    kind = "ProtectedEntity"
    status_code = 403
    default_message = "entity is protected"


class NotFound(AuthError):
    kind = "NotFound"
    status_code = 404
    default_message = "not found"


class RoleNotFound(NotFound):
    default_message = "role not found"


class AlreadyExists(AuthError):
    kind = "AlreadyExists"
    status_code = 409
    default_message = "already exists"


class HashingFailure(AuthError):
    kind = "HashingFailure"
    status_code = 500
    default_message = "password hashing failed"


class Timeout(AuthError):
    kind = "Timeout"
    status_code = 500
    default_message = "store operation timed out"


class Unavailable(AuthError):
    kind = "Unavailable"
    status_code = 500
    default_message = "store unavailable"


class Internal(AuthError):
    kind = "Internal"
    status_code = 500
    default_message = "internal error"

