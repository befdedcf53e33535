"""
Identity Error Taxonomy.

Every business-rule or store failure raised by the service layer is an
:class:`IdentityError` carrying a machine-readable :class:`AuthErrorCode`
and, where one exists, the underlying exception.  The transport layer maps
``code`` to a response; it never inspects raw ``sqlite3`` or Supabase
errors.
"""

from __future__ import annotations

from typing import Optional

from opinions_identity.models.enums import AuthErrorCode, TokenKind

__all__ = [
    "IdentityError",
    "ValidationError",
    "DuplicateIdentity",
    "InvalidCredentials",
    "EmailNotVerified",
    "AccountDisabled",
    "InvalidOrExpiredToken",
    "TokenNotFound",
    "TokenExpired",
    "NotFound",
    "InternalFailure",
]


class IdentityError(Exception):
    """Base exception for identity lifecycle failures."""

    code: AuthErrorCode = AuthErrorCode.INTERNAL_FAILURE
    default_message: str = "Identity operation failed."

    def __init__(
        self,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.message: str = message or self.default_message
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


class ValidationError(IdentityError):
    """Malformed input that the service cannot act on."""

    code = AuthErrorCode.VALIDATION_ERROR
    default_message = "Invalid input."


class DuplicateIdentity(IdentityError):
    """Email or username already belongs to another identity."""

    code = AuthErrorCode.DUPLICATE_IDENTITY
    default_message = "An account with this email or username already exists."


class InvalidCredentials(IdentityError):
    """Unknown identifier or wrong password (indistinguishable)."""

    code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "Invalid credentials."


class EmailNotVerified(IdentityError):
    code = AuthErrorCode.EMAIL_NOT_VERIFIED
    default_message = "Email address has not been verified."


class AccountDisabled(IdentityError):
    code = AuthErrorCode.ACCOUNT_DISABLED
    default_message = "This account has been deactivated."


class InvalidOrExpiredToken(IdentityError):
    """Token lookup failed.

    The public message is identical for unknown and expired tokens.  The
    subclasses below only exist so internal code and logs can tell the
    two apart.
    """

    code = AuthErrorCode.INVALID_OR_EXPIRED_TOKEN
    default_message = "Invalid or expired token."

    def __init__(
        self,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None,
        kind: Optional[TokenKind] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.kind: Optional[TokenKind] = kind


class TokenNotFound(InvalidOrExpiredToken):
    """No identity holds the presented token."""


class TokenExpired(InvalidOrExpiredToken):
    """The token exists but ``now >= expiry``."""


class NotFound(IdentityError):
    """Identity or role missing in an administrative flow."""

    code = AuthErrorCode.NOT_FOUND
    default_message = "Resource not found."


class InternalFailure(IdentityError):
    """Store or connectivity failure."""

    code = AuthErrorCode.INTERNAL_FAILURE
    default_message = "Internal failure."
