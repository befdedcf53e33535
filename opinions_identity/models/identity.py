"""
Identity Models.

Pydantic models for the authoritative identity record and the views
derived from it.  Rows read from the ``identities`` SQLite table are
passed straight to :class:`Identity`; pydantic coerces the ``0``/``1``
integer flags and the ISO-8601 timestamp strings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from opinions_identity.models.enums import RoleName, TokenKind


class EmailVerificationState(BaseModel):
    """Verification token embedded in the identity record."""

    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    verified: bool = False


class PasswordResetState(BaseModel):
    """Password-reset token embedded in the identity record."""

    token: Optional[str] = None
    expires_at: Optional[datetime] = None


class Identity(BaseModel):
    """Authoritative account entity.

    Never hard-deleted.  ``is_active`` is the only removal mechanism and
    ``password_hash`` never leaves the service layer; use
    :meth:`to_summary` for anything returned to a caller.
    """

    id: str
    name: str
    surname: str
    username: str
    email: str
    password_hash: str
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def verification(self) -> EmailVerificationState:
        return EmailVerificationState(
            token=self.email_verification_token,
            expires_at=self.email_verification_expires_at,
            verified=self.email_verified,
        )

    @property
    def password_reset(self) -> PasswordResetState:
        return PasswordResetState(
            token=self.password_reset_token,
            expires_at=self.password_reset_expires_at,
        )

    @property
    def display_name(self) -> str:
        return f"{self.name} {self.surname}".strip()

    def token_for(self, kind: TokenKind) -> tuple[Optional[str], Optional[datetime]]:
        """Return ``(token, expires_at)`` for the given token kind."""
        if kind == TokenKind.VERIFICATION:
            return self.email_verification_token, self.email_verification_expires_at
        return self.password_reset_token, self.password_reset_expires_at

    def to_summary(self, role: Optional[RoleName] = None) -> "IdentitySummary":
        return IdentitySummary(
            id=self.id,
            name=self.name,
            surname=self.surname,
            username=self.username,
            email=self.email,
            phone=self.phone,
            profile_picture=self.profile_picture,
            is_active=self.is_active,
            email_verified=self.email_verified,
            role=role,
            created_at=self.created_at,
        )


class IdentitySummary(BaseModel):
    """Identity view safe to hand back to callers (no hash, no tokens)."""

    id: str
    name: str
    surname: str
    username: str
    email: str
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    is_active: bool
    email_verified: bool
    role: Optional[RoleName] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
