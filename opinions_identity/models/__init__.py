"""
Data Models Package.

Re-exports all Pydantic models and enumerations:
    from opinions_identity.models import Identity, IdentityProjection, RoleName
    from opinions_identity.models import LoginResult, SyncReport
"""

from __future__ import annotations

from opinions_identity.models.enums import (
    AuthErrorCode,
    NotificationKind,
    RoleName,
    SyncOutcome,
    TokenKind,
)
from opinions_identity.models.identity import (
    EmailVerificationState,
    Identity,
    IdentitySummary,
    PasswordResetState,
)
from opinions_identity.models.projection import IdentityProjection
from opinions_identity.models.role import Role, RoleAssignment
from opinions_identity.models.auth_models import (
    IssuedToken,
    LoginResult,
    NotificationJob,
    PasswordResetRequestResult,
    RegistrationInput,
    RegistrationResult,
    ResendVerificationResult,
    ResetPasswordResult,
    ServiceResult,
    SessionClaims,
    SyncReport,
    UserDetails,
    ValidationResult,
    VerifyEmailResult,
)

__all__ = [
    "AuthErrorCode",
    "NotificationKind",
    "RoleName",
    "SyncOutcome",
    "TokenKind",
    "EmailVerificationState",
    "Identity",
    "IdentitySummary",
    "PasswordResetState",
    "IdentityProjection",
    "Role",
    "RoleAssignment",
    "IssuedToken",
    "LoginResult",
    "NotificationJob",
    "PasswordResetRequestResult",
    "RegistrationInput",
    "RegistrationResult",
    "ResendVerificationResult",
    "ResetPasswordResult",
    "ServiceResult",
    "SessionClaims",
    "SyncReport",
    "UserDetails",
    "ValidationResult",
    "VerifyEmailResult",
]
