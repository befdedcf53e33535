"""
Token Lifecycle Service.

Issues and validates the single-use tokens embedded in identity records:

- **verification**: 24 hours from issuance by default.
- **password reset**: 1 hour from issuance by default.

Tokens are ``secrets.token_hex`` strings (64 characters with the default
32 bytes).  A token is usable only while present on the identity row and
``now < expires_at``; consuming it clears the column in the same
conditional ``UPDATE``, so it validates at most once.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from opinions_identity.config import AppConfig
from opinions_identity.errors import TokenExpired, TokenNotFound
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import IssuedToken
from opinions_identity.models.enums import TokenKind
from opinions_identity.models.identity import Identity
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.utils.clock import Clock, utc_now

__all__ = ["MIN_TOKEN_LENGTH", "TokenService"]

MIN_TOKEN_LENGTH: int = 40


class TokenService(BaseService):
    """Generates, stores, validates and consumes single-use tokens.

    Parameters
    ----------
    repo:
        Identity repository owning the token columns.
    config:
        Supplies TTLs and ``TOKEN_BYTES``.
    logger:
        Structured JSON logger.
    clock:
        Returns the current UTC time; injected for expiry tests.
    """

    def __init__(
        self,
        repo: IdentityRepository,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger)
        if config.TOKEN_BYTES * 2 < MIN_TOKEN_LENGTH:
            raise ValueError(
                f"TOKEN_BYTES={config.TOKEN_BYTES} yields tokens shorter than "
                f"{MIN_TOKEN_LENGTH} characters"
            )
        self._repo = repo
        self._clock: Clock = clock
        self._token_bytes: int = config.TOKEN_BYTES
        self._ttls: dict[TokenKind, timedelta] = {
            TokenKind.VERIFICATION: timedelta(hours=config.VERIFICATION_TOKEN_TTL_HOURS),
            TokenKind.PASSWORD_RESET: timedelta(hours=config.PASSWORD_RESET_TOKEN_TTL_HOURS),
        }

    def now(self) -> datetime:
        return self._clock()

    def generate(self) -> str:
        """Return a fresh random opaque token."""
        return secrets.token_hex(self._token_bytes)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_verification_token(self, identity_id: str) -> IssuedToken:
        return self._issue(identity_id, TokenKind.VERIFICATION)

    def issue_password_reset_token(self, identity_id: str) -> IssuedToken:
        return self._issue(identity_id, TokenKind.PASSWORD_RESET)

    def _issue(self, identity_id: str, kind: TokenKind) -> IssuedToken:
        now = self.now()
        issued = IssuedToken(
            kind=kind,
            token=self.generate(),
            expires_at=now + self._ttls[kind],
        )
        if not self._repo.set_token(identity_id, kind, issued.token, issued.expires_at, now):
            raise TokenNotFound(
                f"No identity {identity_id} to attach a {kind} token to.",
                kind=kind,
            )
        self._logger.debug("Issued %s token for identity %s", kind, identity_id)
        return issued

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, token: str, kind: TokenKind) -> Identity:
        """Return the identity owning a usable *token* of *kind*.

        Raises:
            TokenNotFound: Malformed (shorter than 40 characters) or
                unknown token, or a verification token on an already
                verified identity.
            TokenExpired: ``now >= expires_at``.
        """
        if not token or len(token) < MIN_TOKEN_LENGTH:
            self._logger.info(
                "Rejected malformed %s token", kind, extra={"event": "TOKEN_MALFORMED"},
            )
            raise TokenNotFound(kind=kind)

        identity = self._repo.get_by_token(kind, token)
        if identity is None:
            self._logger.info(
                "Unknown %s token presented", kind, extra={"event": "TOKEN_NOT_FOUND"},
            )
            raise TokenNotFound(kind=kind)

        if kind == TokenKind.VERIFICATION and identity.email_verified:
            self._logger.info(
                "Verification token presented for already verified identity %s",
                identity.id,
                extra={"event": "ALREADY_VERIFIED"},
            )
            raise TokenNotFound(kind=kind)

        _, expires_at = identity.token_for(kind)
        if self.is_expired(expires_at):
            self._logger.info(
                "Expired %s token presented for identity %s",
                kind,
                identity.id,
                extra={"event": "TOKEN_EXPIRED"},
            )
            raise TokenExpired(kind=kind)

        return identity

    def is_expired(self, expires_at: Optional[datetime]) -> bool:
        """``True`` when *expires_at* is missing or ``now >= expires_at``."""
        if expires_at is None:
            return True
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self.now() >= expires_at

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consume_verification(self, identity: Identity, token: str) -> None:
        """Mark *identity* verified and clear the token.

        Raises:
            TokenNotFound: Another request consumed the token first.
        """
        if not self._repo.consume_verification_token(identity.id, token, self.now()):
            raise TokenNotFound(kind=TokenKind.VERIFICATION)

    def consume_password_reset(
        self, identity: Identity, token: str, password_hash: str,
    ) -> None:
        """Store the new password hash and clear the reset token.

        Raises:
            TokenNotFound: Another request consumed the token first.
        """
        if not self._repo.consume_password_reset_token(
            identity.id, token, password_hash, self.now(),
        ):
            raise TokenNotFound(kind=TokenKind.PASSWORD_RESET)
