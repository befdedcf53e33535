"""
Store Connections.

The identity core runs on two stores:

- the **credential store**, a local SQLite database that is authoritative
  for identities, secrets, tokens, roles and role assignments, and also
  holds the ``sync_queue`` outbox and the ``audit_log``;
- the **projection store**, a Supabase table read by the content features
  (posts, comments, likes).  It is derived data, written only by the
  synchronizer, the outbox worker and the lazy create-on-miss path.

:class:`DatabaseManager` owns both connections and the write lock that
serialises SQLite writes across request handling and background threads.
Queries live in the repositories.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from supabase import create_client, Client as SupabaseClient

from opinions_identity.errors import IdentityError, InternalFailure
from opinions_identity.logger import StructuredLogger


def open_credential_store(path: Union[Path, str]) -> sqlite3.Connection:
    """Open the SQLite credential store with row access by column name.

    The connection is shared between threads; callers serialise writes
    through :attr:`DatabaseManager.write_lock`.
    """
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


class DatabaseManager:
    """Owns the credential store connection and the projection store client.

    The credential store is opened before the projection store, which the
    startup sequence relies on.

    Parameters
    ----------
    sqlite_path:
        Credential store file, or ``":memory:"``.
    supabase_url, supabase_key:
        Projection store credentials.  When either is empty and no client
        is injected, the projection is kept in the local
        ``identity_projections`` table.
    logger:
        Structured logger.
    supabase_client:
        Pre-built client used instead of ``create_client``.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        supabase_url: str,
        supabase_key: str,
        logger: StructuredLogger,
        supabase_client: Optional[SupabaseClient] = None,
    ) -> None:
        self._logger = logger
        self._write_lock = threading.RLock()
        self._in_batch = False
        self._closed = False

        try:
            self._sqlite_conn = open_credential_store(sqlite_path)
        except sqlite3.OperationalError as exc:
            logger.error("Cannot open credential store at %s: %s", sqlite_path, exc)
            raise
        logger.info("Credential store opened at %s", sqlite_path)

        self._supabase: Optional[SupabaseClient] = (
            supabase_client
            if supabase_client is not None
            else self._connect_projection_store(supabase_url, supabase_key)
        )

    def _connect_projection_store(self, url: str, key: str) -> Optional[SupabaseClient]:
        if not (url and key):
            self._logger.warning(
                "Supabase credentials not configured; projection store is local."
            )
            return None
        try:
            client = create_client(url, key)
        except Exception as exc:
            # Startup continues with the local projection; the outbox replays later.
            self._logger.error(
                "Supabase client could not be created (%s); projection store is local.",
                exc,
                exc_info=True,
            )
            return None
        self._logger.info("Supabase projection store connected.")
        return client

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def supabase(self) -> SupabaseClient:
        """The projection store client.

        Raises:
            RuntimeError: No client in local-only mode.  Repository
                fallback paths rely on this.
        """
        if self._supabase is None:
            raise RuntimeError("Projection store is running in local-only mode.")
        return self._supabase

    @property
    def is_online(self) -> bool:
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Lock held around every SQLite write and its commit."""
        return self._write_lock

    @property
    def in_batch(self) -> bool:
        """``True`` inside :meth:`batch_write`; repositories skip their commit."""
        return self._in_batch

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def batch_write(self) -> Iterator[None]:
        """Group repository writes into one transaction.

        Commits once on normal exit and rolls back (re-raising) on any
        exception.  Nested blocks join the outermost transaction.  A
        rollback caused by an expected :class:`IdentityError`, such as a
        lost registration race, is logged at INFO; anything else at ERROR.

        Reads are not isolated from an open batch.  Every thread shares
        one connection, so a read on another thread can see rows that a
        later rollback removes.
        """
        if self._in_batch:
            yield
            return

        with self._write_lock:
            self._in_batch = True
            try:
                yield
            except Exception as exc:
                self._sqlite_conn.rollback()
                if isinstance(exc, IdentityError) and not isinstance(exc, InternalFailure):
                    self._logger.info("Batch write rolled back: %s", type(exc).__name__)
                else:
                    self._logger.error("Batch write rolled back.", exc_info=True)
                raise
            else:
                self._sqlite_conn.commit()
            finally:
                self._in_batch = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_pending_sync_count(self) -> int:
        """Number of ``pending`` outbox rows; ``0`` before the schema exists."""
        with self._write_lock:
            try:
                row = self._sqlite_conn.execute(
                    "SELECT COUNT(*) FROM sync_queue WHERE status = 'pending'"
                ).fetchone()
            except sqlite3.OperationalError:
                self._logger.debug("Outbox not created yet.", exc_info=True)
                return 0
        return int(row[0])

    def close(self) -> None:
        """Close the credential store.  Later calls do nothing."""
        with self._write_lock:
            if self._closed:
                return
            self._sqlite_conn.close()
            self._closed = True
        self._logger.info("Credential store closed.")
