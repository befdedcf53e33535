"""
Repository base class.

Repositories own all SQL and Supabase queries.  The base class carries the
store handles, the batch-aware commit and the outbox writer shared by the
identity and projection repositories.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Callable, Optional, TypeVar

from supabase import Client as SupabaseClient

from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger

T = TypeVar("T")


class BaseRepository:
    """Shared plumbing; subclasses set :attr:`TABLE` to their SQLite table."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._db.sqlite

    def _commit(self) -> None:
        """Commit unless a :meth:`DatabaseManager.batch_write` block owns the transaction."""
        if not self._db.in_batch:
            self.sqlite.commit()

    def _read_through(
        self,
        remote: Callable[[], T],
        local: Callable[[], T],
        *,
        label: str,
        warm: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Read from the projection store, falling back to the local mirror.

        Only for reads.  A remote result is passed to *warm* (used to
        refresh the local mirror) before it is returned; a failing *warm*
        is logged and does not hide the result.  Local errors propagate.
        """
        if self._db.is_online:
            try:
                result = remote()
            except Exception as exc:
                self._logger.warning("Projection store unavailable for %s: %s", label, exc)
            else:
                if warm is not None:
                    try:
                        warm(result)
                    except sqlite3.Error as exc:
                        self._logger.warning("Local mirror refresh failed for %s: %s", label, exc)
                return result
        return local()

    def _enqueue_outbox(
        self,
        entity_id: str,
        payload: dict[str, object],
        table_name: str,
        operation: str = "upsert",
    ) -> None:
        """Append a projection change to ``sync_queue``.

        Inside a batch the row shares the caller's transaction, so it
        commits or rolls back with the authoritative change.
        """
        with self._db.write_lock:
            self.sqlite.execute(
                "INSERT INTO sync_queue (table_name, operation, entity_id, payload) "
                "VALUES (?, ?, ?, ?)",
                (table_name, operation, entity_id, json.dumps(payload, default=str)),
            )
            self._commit()
        self._logger.debug("Outbox: %s %s/%s", operation, table_name, entity_id)
