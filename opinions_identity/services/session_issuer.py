"""
Session Artifact Issuer.

Mints and decodes the signed JWT handed back by a successful login.  The
artifact carries the identity id (``sub``), the role claim, ``iat``,
``exp`` and ``iss``.  Its lifetime comes from ``JWT_EXPIRES_IN`` parsed by
:func:`~opinions_identity.utils.durations.parse_duration`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import jwt

from opinions_identity.config import AppConfig
from opinions_identity.errors import InternalFailure, InvalidCredentials
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import SessionClaims
from opinions_identity.models.enums import RoleName
from opinions_identity.services.base_service import BaseService
from opinions_identity.utils.clock import Clock, utc_now
from opinions_identity.utils.durations import parse_duration


class SessionIssuer(BaseService):
    """Signs session artifacts with the configured HMAC secret.

    Parameters
    ----------
    config:
        Supplies ``JWT_SECRET``, ``JWT_ALGORITHM``, ``JWT_EXPIRES_IN`` and
        ``JWT_ISSUER``.  An empty secret refuses every login.
    logger:
        Structured JSON logger.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger)
        self._secret: str = config.JWT_SECRET.get_secret_value()
        self._algorithm: str = config.JWT_ALGORITHM
        self._issuer: str = config.JWT_ISSUER
        self._ttl: timedelta = parse_duration(config.JWT_EXPIRES_IN)
        self._clock: Clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(
        self,
        subject: str,
        role: RoleName,
        extra_claims: Optional[dict[str, object]] = None,
    ) -> tuple[str, datetime]:
        """Return ``(encoded_token, absolute_expiry)`` for *subject*.

        Raises:
            InternalFailure: ``JWT_SECRET`` is not configured.
        """
        if not self._secret:
            raise InternalFailure("Session signing is not configured.")
        now = self._clock()
        expires_at = now + self._ttl
        payload: dict[str, object] = {
            **(extra_claims or {}),
            "sub": subject,
            "role": str(role),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self._issuer,
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return token, expires_at

    def decode(self, token: str) -> SessionClaims:
        """Verify signature, issuer and expiry, returning the claims.

        Raises:
            InvalidCredentials: Expired, forged or malformed artifact.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidCredentials("Session expired.", original_error=exc) from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidCredentials("Invalid session.", original_error=exc) from exc
        return SessionClaims(**payload)
