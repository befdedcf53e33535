"""
Identity Lifecycle Models.

Pydantic models for the request/response contracts between the identity
services and the transport layer.

Every operation returns a structured, inspectable result rather than raw
dicts; failures are raised as :mod:`opinions_identity.errors` exceptions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from opinions_identity.models.enums import NotificationKind, RoleName, SyncOutcome, TokenKind
from opinions_identity.models.identity import IdentitySummary

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class RegistrationInput(BaseModel):
    """Candidate identity submitted for registration."""

    name: str
    surname: str
    username: str
    email: str
    password: str
    phone: Optional[str] = None
    profile_picture: Optional[str] = None


class RegistrationResult(BaseModel):
    """Created identity (minus secrets) plus the verification flag."""

    identity: IdentitySummary
    verification_required: bool = True


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

class UserDetails(BaseModel):
    """Minimised identity view returned with a session."""

    id: str
    username: str
    profile_picture: Optional[str] = None
    role: RoleName


class LoginResult(BaseModel):
    """Signed session artifact, its absolute expiry and the user view.

    Attributes
    ----------
    session:
        Encoded JWT carrying ``sub`` (identity id) and ``role``.
    expires_at:
        Absolute UTC expiry of the session artifact.
    user:
        Minimised identity view; never includes hash or tokens.
    """

    session: str
    expires_at: datetime
    user: UserDetails


# ---------------------------------------------------------------------------
# Token flows
# ---------------------------------------------------------------------------

class VerifyEmailResult(BaseModel):
    email: str
    verified: bool = True


class ResendVerificationResult(BaseModel):
    """Generic response, identical whether or not the email exists."""

    sent: bool = True


class PasswordResetRequestResult(BaseModel):
    """Generic response, identical whether or not the email exists."""

    initiated: bool = True


class ResetPasswordResult(BaseModel):
    email: str
    reset: bool = True


# ---------------------------------------------------------------------------
# Projection synchronizer
# ---------------------------------------------------------------------------

class SyncReport(BaseModel):
    """Aggregate counts of one full-scan reconciliation pass."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    total: int = 0

    def record(self, outcome: SyncOutcome) -> None:
        """Count one visited identity under *outcome*."""
        self.total += 1
        if outcome == SyncOutcome.CREATED:
            self.created += 1
        elif outcome == SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome == SyncOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.errors += 1


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationJob(BaseModel):
    """A detached notification handed to the dispatcher."""

    kind: NotificationKind
    recipient: str
    display_name: str
    token: Optional[str] = None


# ---------------------------------------------------------------------------
# Service envelope
# ---------------------------------------------------------------------------

class ServiceResult(BaseModel, Generic[T]):
    """
    Standard return envelope for best-effort side channels (email).

    Generic over ``T`` so callers can annotate return types precisely.
    Using bare ``ServiceResult(...)`` is equivalent to
    ``ServiceResult[Any]``.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200


# ---------------------------------------------------------------------------
# Tokens and sessions
# ---------------------------------------------------------------------------

class IssuedToken(BaseModel):
    """A freshly stored single-use token."""

    kind: TokenKind
    token: str
    expires_at: datetime


class SessionClaims(BaseModel):
    """Decoded claims of a session artifact."""

    sub: str
    role: RoleName
    iat: datetime
    exp: datetime
    iss: str
