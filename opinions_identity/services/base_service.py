"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services.
Services extend this and add their own repository dependencies via __init__.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Generator

from opinions_identity.errors import InternalFailure
from opinions_identity.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    @contextmanager
    def _store_guard(self, operation: str) -> Generator[None, None, None]:
        """Translate credential-store errors into :class:`InternalFailure`.

        ``IdentityError`` subclasses raised inside the block pass through
        untouched.
        """
        try:
            yield
        except sqlite3.Error as exc:
            self._logger.error(
                "Credential store failure during %s: %s",
                operation,
                exc,
                exc_info=True,
            )
            raise InternalFailure(
                f"Credential store failure during {operation}.",
                original_error=exc,
            ) from exc
