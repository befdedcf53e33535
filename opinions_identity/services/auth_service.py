"""
Authentication Service.

Single orchestrator for the identity lifecycle: registration, email
verification, login, verification resend, and password reset.

Sits between the transport layer and the repositories so that request
handlers stay thin.  Every method returns a typed result model or raises
an :class:`~opinions_identity.errors.IdentityError` subclass; callers
never see raw ``sqlite3`` exceptions.

Anti-enumeration: :meth:`resend_verification` and
:meth:`request_password_reset` always return the same generic result.
Only the logs distinguish an unknown email from a real send.
"""

from __future__ import annotations

import re
import sqlite3
import uuid
from typing import Optional, Union

from opinions_identity.database import DatabaseManager
from opinions_identity.errors import (
    AccountDisabled,
    DuplicateIdentity,
    EmailNotVerified,
    IdentityError,
    InvalidCredentials,
    ValidationError,
)
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import (
    LoginResult,
    NotificationJob,
    PasswordResetRequestResult,
    RegistrationInput,
    RegistrationResult,
    ResendVerificationResult,
    ResetPasswordResult,
    UserDetails,
    ValidationResult,
    VerifyEmailResult,
)
from opinions_identity.models.enums import NotificationKind, TokenKind
from opinions_identity.models.identity import Identity
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.services.notification_dispatcher import NotificationDispatcher
from opinions_identity.services.passwords import PasswordHasher
from opinions_identity.services.role_service import RoleService
from opinions_identity.services.session_issuer import SessionIssuer
from opinions_identity.services.token_service import TokenService
from opinions_identity.utils.audit import log_audit_event
from opinions_identity.utils.clock import Clock, utc_now


# ---------------------------------------------------------------------------
# Input rules
# ---------------------------------------------------------------------------

# Simplified RFC 5322 local part, dot-separated DNS labels.
_EMAIL_RE = re.compile(
    r"^[\w.!#$%&'*+/=?^`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$",
    re.ASCII,
)
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,30}$")
# C0 controls, DEL and C1 controls.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")

MIN_PASSWORD_LENGTH = 8

# (pattern that must match, description used in the error message)
_PASSWORD_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9\s]"), "a special character"),
)


def _invalid(message: str) -> ValidationResult:
    return ValidationResult(is_valid=False, error_message=message)


_VALID = ValidationResult(is_valid=True)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthService(BaseService):
    """Centralised identity lifecycle service.

    Receives all infrastructure dependencies via ``__init__`` and
    exposes request → result methods for every flow.

    Parameters
    ----------
    identity_repo:
        Authoritative identity storage.
    token_service:
        Single-use token issuance, validation and consumption.
    role_service:
        Default-role assignment and role resolution at login.
    session_issuer:
        Mints the signed session artifact.
    password_hasher:
        PBKDF2 hashing and constant-time verification.
    dispatcher:
        Detached notification dispatcher; ``dispatch`` never blocks.
    db:
        Database manager, used for single-transaction writes and audit
        persistence.
    logger:
        Structured JSON logger for audit-grade logging.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        identity_repo: IdentityRepository,
        token_service: TokenService,
        role_service: RoleService,
        session_issuer: SessionIssuer,
        password_hasher: PasswordHasher,
        dispatcher: NotificationDispatcher,
        db: DatabaseManager,
        logger: StructuredLogger,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger)
        self._identities = identity_repo
        self._tokens = token_service
        self._roles = role_service
        self._sessions = session_issuer
        self._hasher = password_hasher
        self._dispatcher = dispatcher
        self._db = db
        self._clock: Clock = clock

    # ==================================================================
    # Input validation
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        candidate = (email or "").strip()
        if not candidate:
            return _invalid("Email address is required.")
        if not _EMAIL_RE.match(candidate):
            return _invalid(f"'{candidate}' is not a valid email address.")
        return _VALID

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Check the password policy.

        At least :data:`MIN_PASSWORD_LENGTH` characters, with an uppercase
        letter, a lowercase letter, a digit and a non-alphanumeric symbol.
        Passwords that cannot be encoded as UTF-8 are rejected.
        Only the first unmet rule is reported.
        """
        if len(password) < MIN_PASSWORD_LENGTH:
            return _invalid(f"Password needs at least {MIN_PASSWORD_LENGTH} characters.")
        try:
            password.encode("utf-8")
        except UnicodeEncodeError:
            return _invalid("Password contains characters that cannot be encoded.")
        for pattern, requirement in _PASSWORD_RULES:
            if pattern.search(password) is None:
                return _invalid(f"Password needs {requirement}.")
        return _VALID

    @staticmethod
    def validate_name(name: str, field_label: str) -> ValidationResult:
        stripped = (name or "").strip()
        if not stripped:
            return _invalid(f"{field_label} is required.")
        if _CONTROL_CHARS_RE.search(stripped):
            return _invalid(f"{field_label} may only contain printable characters.")
        return _VALID

    @staticmethod
    def validate_username(username: str) -> ValidationResult:
        if not _USERNAME_RE.match((username or "").strip()):
            return _invalid(
                "Username must be 3-30 characters of letters, digits, '_', '.' or '-'."
            )
        return _VALID

    @staticmethod
    def normalize_email(email: str) -> str:
        """Case-fold and trim; every lookup and uniqueness check uses this form."""
        return email.strip().lower()

    # ==================================================================
    # Registration
    # ==================================================================

    def register(
        self, data: Union[RegistrationInput, dict[str, object]],
    ) -> RegistrationResult:
        """Create an identity awaiting email verification.

        The identity row, its verification token, its default role and
        the projection outbox entry commit in one transaction.  The
        verification email is dispatched afterwards, detached.

        Raises:
            ValidationError: Malformed input.
            DuplicateIdentity: Email or username already taken.
            InternalFailure: Credential store failure.
        """
        candidate = (
            data if isinstance(data, RegistrationInput)
            else RegistrationInput.model_validate(data)
        )
        self._check_registration(candidate)

        email = self.normalize_email(candidate.email)
        username = candidate.username.strip()

        with self._store_guard("register (pre-check)"):
            conflict: Optional[str] = self._identities.find_conflict(email, username)
        if conflict is not None:
            self._logger.info(
                "Registration rejected: %s already in use", conflict,
                extra={"event": "DUPLICATE_IDENTITY"},
            )
            raise DuplicateIdentity(f"An account with this {conflict} already exists.")

        now = self._clock()
        identity = Identity(
            id=str(uuid.uuid4()),
            name=candidate.name.strip(),
            surname=candidate.surname.strip(),
            username=username,
            email=email,
            password_hash=self._hasher.hash(candidate.password),
            phone=candidate.phone,
            profile_picture=candidate.profile_picture,
            is_active=True,
            email_verified=False,
            created_at=now,
            updated_at=now,
        )

        with self._store_guard("register"):
            with self._db.batch_write():
                try:
                    self._identities.insert(identity)
                except sqlite3.IntegrityError as exc:
                    # Lost the race against a concurrent registration.
                    raise DuplicateIdentity(original_error=exc) from exc
                issued = self._tokens.issue_verification_token(identity.id)
                self._roles.ensure_role(identity.id, self._roles.default_role)
                self._identities.enqueue_projection(identity)

        log_audit_event(
            logger=self._logger,
            action="REGISTER",
            entity_type="Identity",
            entity_id=identity.id,
            user_id=identity.id,
            details={"email": email, "username": username},
            db=self._db,
        )

        self._notify(NotificationKind.VERIFICATION, identity, issued.token)

        return RegistrationResult(
            identity=identity.to_summary(role=self._roles.default_role),
            verification_required=True,
        )

    # ==================================================================
    # Login
    # ==================================================================

    def login(self, identifier: str, password: str) -> LoginResult:
        """Authenticate by email or username and mint a session.

        Gates, in order: identity exists, password matches, email
        verified, account active.

        Raises:
            InvalidCredentials: Unknown identifier or wrong password.
            EmailNotVerified: Verification still pending.
            AccountDisabled: Account deactivated.
        """
        with self._store_guard("login"):
            identity = self._identities.get_by_identifier(identifier or "")

        if identity is None:
            self._hasher.verify_dummy(password)
            self._logger.info(
                "Login failed: unknown identifier",
                extra={"event": "LOGIN_UNKNOWN_IDENTIFIER"},
            )
            raise InvalidCredentials()

        if not self._hasher.verify(password, identity.password_hash):
            self._logger.info(
                "Login failed: wrong password for %s", identity.id,
                extra={"event": "LOGIN_BAD_PASSWORD"},
            )
            raise InvalidCredentials()

        if not identity.email_verified:
            raise EmailNotVerified()

        if not identity.is_active:
            raise AccountDisabled()

        role = self._roles.resolve_role(identity.id)
        session, expires_at = self._sessions.issue(identity.id, role)

        self._logger.info(
            "Login succeeded for %s", identity.id, extra={"event": "LOGIN"},
        )

        return LoginResult(
            session=session,
            expires_at=expires_at,
            user=UserDetails(
                id=identity.id,
                username=identity.username,
                profile_picture=identity.profile_picture,
                role=role,
            ),
        )

    # ==================================================================
    # Email verification
    # ==================================================================

    def verify_email(self, token: str) -> VerifyEmailResult:
        """Consume a verification token and mark the email verified.

        Raises:
            InvalidOrExpiredToken: Malformed, unknown, expired or already
                consumed token, or an identity that is already verified.
        """
        with self._store_guard("verify_email"):
            identity = self._tokens.validate(token, TokenKind.VERIFICATION)
            self._tokens.consume_verification(identity, token)

        log_audit_event(
            logger=self._logger,
            action="EMAIL_VERIFIED",
            entity_type="Identity",
            entity_id=identity.id,
            user_id=identity.id,
            details={"email": identity.email},
            db=self._db,
        )
        self._notify(NotificationKind.WELCOME, identity)

        return VerifyEmailResult(email=identity.email, verified=True)

    def resend_verification(self, email: str) -> ResendVerificationResult:
        """Issue a fresh verification token if the email is pending.

        Always returns the same generic result.
        """
        normalized = self.normalize_email(email or "")
        try:
            with self._store_guard("resend_verification"):
                identity = self._identities.get_by_email(normalized)
                if identity is None:
                    self._logger.info(
                        "Verification resend requested for unknown email",
                        extra={"event": "RESEND_UNKNOWN_EMAIL"},
                    )
                    return ResendVerificationResult()
                if identity.email_verified:
                    self._logger.info(
                        "Verification resend requested for verified identity %s",
                        identity.id,
                        extra={"event": "RESEND_ALREADY_VERIFIED"},
                    )
                    return ResendVerificationResult()
                issued = self._tokens.issue_verification_token(identity.id)
        except IdentityError as exc:
            self._logger.error(
                "Verification resend failed internally: %s", exc,
                exc_info=True,
                extra={"event": "RESEND_FAILED"},
            )
            return ResendVerificationResult()

        self._logger.info(
            "Verification token reissued for %s", identity.id,
            extra={"event": "RESEND_SENT"},
        )
        self._notify(NotificationKind.VERIFICATION, identity, issued.token)
        return ResendVerificationResult()

    # ==================================================================
    # Password reset
    # ==================================================================

    def request_password_reset(self, email: str) -> PasswordResetRequestResult:
        """Issue a 1-hour reset token and email it, if the account exists.

        Always returns the same generic result.
        """
        normalized = self.normalize_email(email or "")
        try:
            with self._store_guard("request_password_reset"):
                identity = self._identities.get_by_email(normalized)
                if identity is None:
                    self._logger.info(
                        "Password reset requested for unknown email",
                        extra={"event": "RESET_UNKNOWN_EMAIL"},
                    )
                    return PasswordResetRequestResult()
                issued = self._tokens.issue_password_reset_token(identity.id)
        except IdentityError as exc:
            self._logger.error(
                "Password reset request failed internally: %s", exc,
                exc_info=True,
                extra={"event": "RESET_REQUEST_FAILED"},
            )
            return PasswordResetRequestResult()

        self._logger.info(
            "Password reset token issued for %s", identity.id,
            extra={"event": "RESET_REQUESTED"},
        )
        self._notify(NotificationKind.PASSWORD_RESET, identity, issued.token)
        return PasswordResetRequestResult()

    def reset_password(self, token: str, new_password: str) -> ResetPasswordResult:
        """Consume a reset token and replace the password hash.

        Raises:
            ValidationError: New password violates the policy.
            InvalidOrExpiredToken: Malformed, unknown, expired or already
                consumed token.
        """
        check = self.validate_password(new_password or "")
        if not check.is_valid:
            raise ValidationError(check.error_message)

        with self._store_guard("reset_password"):
            identity = self._tokens.validate(token, TokenKind.PASSWORD_RESET)
            self._tokens.consume_password_reset(
                identity, token, self._hasher.hash(new_password),
            )

        log_audit_event(
            logger=self._logger,
            action="PASSWORD_RESET",
            entity_type="Identity",
            entity_id=identity.id,
            user_id=identity.id,
            db=self._db,
        )
        self._notify(NotificationKind.PASSWORD_CHANGED, identity)

        return ResetPasswordResult(email=identity.email, reset=True)

    # ==================================================================
    # Private helpers
    # ==================================================================

    def _check_registration(self, candidate: RegistrationInput) -> None:
        checks: list[ValidationResult] = [
            self.validate_name(candidate.name, "Name"),
            self.validate_name(candidate.surname, "Surname"),
            self.validate_username(candidate.username),
            self.validate_email(candidate.email),
            self.validate_password(candidate.password),
        ]
        for check in checks:
            if not check.is_valid:
                raise ValidationError(check.error_message)

    def _notify(
        self,
        kind: NotificationKind,
        identity: Identity,
        token: Optional[str] = None,
    ) -> None:
        """Hand a notification to the detached dispatcher.  Never raises."""
        job = NotificationJob(
            kind=kind,
            recipient=identity.email,
            display_name=identity.display_name,
            token=token,
        )
        try:
            self._dispatcher.dispatch(job)
        except Exception:
            self._logger.error(
                "Could not hand %s notification to the dispatcher", kind,
                exc_info=True,
                extra={"event": "NOTIFICATION_FAILED"},
            )
