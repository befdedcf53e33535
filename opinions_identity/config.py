"""
Application Configuration.

Pydantic Settings model for the Opinions identity service.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Credential store (SQLite, authoritative) ---
    DATABASE_PATH: str = "identity_local.db"

    # --- Projection store (Supabase, optional) ---
    SUPABASE_URL: str = ""
    SUPABASE_KEY: SecretStr = SecretStr("")
    PROJECTION_TABLE: str = "identity_projections"

    # --- Session artifacts (JWT) ---
    JWT_SECRET: SecretStr = SecretStr("")
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_IN: str = "30m"
    JWT_ISSUER: str = "opinions-identity"

    # --- Single-use tokens ---
    VERIFICATION_TOKEN_TTL_HOURS: int = 24
    PASSWORD_RESET_TOKEN_TTL_HOURS: int = 1
    TOKEN_BYTES: int = 32

    # --- Passwords ---
    PASSWORD_HASH_ITERATIONS: int = 600_000

    # --- Roles ---
    ADMIN_EMAIL: str = ""
    DEFAULT_ROLE: str = "USER_ROLE"

    # --- Email / SMTP ---
    MAIL_SERVER: str = "smtp.gmail.com"
    MAIL_PORT: int = 587
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: SecretStr = SecretStr("")
    MAIL_FROM: str = ""
    FRONTEND_URL: str = "http://localhost:3000"

    # --- Background workers ---
    NOTIFICATION_QUEUE_SIZE: int = 1000
    SYNC_WORKER_INTERVAL_S: float = 30.0
    PROJECTION_RECONCILE_INTERVAL_S: float = 0.0  # 0 = startup pass only

    # --- Logging ---
    LOG_FILE: str = "identity.log"
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a log line instead of a silent placeholder.
        """
        _log = logging.getLogger("opinions_identity.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty; the identity projection will be "
                "kept in the local SQLite store only."
            )

        if not self.JWT_SECRET.get_secret_value():
            _log.warning("JWT_SECRET is empty; logins will be refused.")

        if not self.MAIL_USERNAME:
            _log.warning(
                "MAIL_USERNAME is empty; email notifications are disabled."
            )

        return self

    @property
    def log_level(self) -> int:
        """Numeric logging level for ``LOG_LEVEL`` (defaults to INFO)."""
        level = logging.getLevelName(self.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO

    # --- Validation helpers ---
    def validate_email_config(self) -> None:
        """Validate that email configuration is complete.

        Raises:
            ValueError: If required email settings are missing.
        """
        if not self.MAIL_USERNAME or not self.MAIL_PASSWORD.get_secret_value():
            raise ValueError("MAIL_USERNAME and MAIL_PASSWORD must be set")
        if not self.MAIL_SERVER:
            raise ValueError("MAIL_SERVER must be set")

    def validate_jwt_config(self) -> None:
        """Validate that session signing is configured.

        Raises:
            ValueError: If ``JWT_SECRET`` is empty.
        """
        if not self.JWT_SECRET.get_secret_value():
            raise ValueError("JWT_SECRET must be set")


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so the fast path skips the lock once initialised.

    Prefer direct constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
