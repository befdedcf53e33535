"""
Shared Enumerations for Identity Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so code like ``if role == 'ADMIN_ROLE'`` continues to work.
"""

from __future__ import annotations
from enum import StrEnum


class RoleName(StrEnum):
    """Closed set of roles an identity can hold.

    Exactly one role is assigned per identity.  ``USER_ROLE`` is the
    default applied at registration and the fallback used at login when
    no assignment exists.
    """

    ADMIN_ROLE = "ADMIN_ROLE"
    USER_ROLE = "USER_ROLE"


class TokenKind(StrEnum):
    """Kinds of single-use tokens embedded in the identity record."""

    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"


class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of identity error categories.

    Carried by every :class:`~opinions_identity.errors.IdentityError` so
    the transport layer can map failures without inspecting classes.
    """

    VALIDATION_ERROR = "validation_error"
    DUPLICATE_IDENTITY = "duplicate_identity"
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_DISABLED = "account_disabled"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    NOT_FOUND = "not_found"
    INTERNAL_FAILURE = "internal_failure"


class SyncOutcome(StrEnum):
    """Per-record result of a projection reconciliation step."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ERROR = "error"


class NotificationKind(StrEnum):
    """Detached email notifications emitted by the identity lifecycle."""

    VERIFICATION = "verification"
    WELCOME = "welcome"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
