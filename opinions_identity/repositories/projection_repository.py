"""
Identity Projection Repository.

Handles the secondary identity projection: the remote Supabase table
(primary when configured) and its local SQLite mirror
``identity_projections`` (the projection store itself in local-only
mode).  Every lookup and every upsert keys on ``source_id``.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.projection import IdentityProjection
from opinions_identity.repositories.base_repository import BaseRepository


class ProjectionRepository(BaseRepository):
    """Data access layer for :class:`IdentityProjection` records.

    Parameters
    ----------
    db:
        Database manager; ``db.is_online`` selects the remote path.
    logger:
        Structured JSON logger.
    remote_table:
        Name of the projection table in Supabase.
    """

    TABLE = "identity_projections"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        remote_table: str = "identity_projections",
    ) -> None:
        super().__init__(db, logger)
        self.remote_table: str = remote_table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_source_id(
        self, source_id: str, *, strict: bool = False,
    ) -> Optional[IdentityProjection]:
        """Fetch the projection for *source_id*.

        When online the remote answer is authoritative, including a miss,
        and a hit refreshes the local mirror.  If the remote call fails the
        local mirror answers instead, unless *strict* is set, in which case
        the remote error propagates.
        """
        if self._db.is_online:
            try:
                response = (
                    self.supabase.table(self.remote_table)
                    .select("*")
                    .eq("source_id", source_id)
                    .maybe_single()
                    .execute()
                )
                data = response.data if response is not None else None
                projection = IdentityProjection(**data) if data else None
                if projection is not None:
                    self._cache_to_sqlite(projection)
                return projection
            except Exception as exc:
                self._logger.warning(
                    "Supabase unavailable for get_by_source_id (%s): %s",
                    self.remote_table,
                    exc,
                )
                if strict:
                    raise

        return self._get_local(source_id)

    def list_all(self) -> list[IdentityProjection]:
        """Fetch every projection. Supabase first, local mirror fallback."""
        def _supabase() -> list[IdentityProjection]:
            response = self.supabase.table(self.remote_table).select("*").execute()
            return [IdentityProjection(**row) for row in response.data]

        def _sqlite() -> list[IdentityProjection]:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} ORDER BY created_at ASC"
            ).fetchall()
            return [IdentityProjection(**dict(row)) for row in rows]

        return self._read_through(
            _supabase,
            _sqlite,
            label=f"list_all ({self.remote_table})",
            warm=self._cache_all,
        )

    def list_source_ids(self) -> set[str]:
        return {projection.source_id for projection in self.list_all()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        projection: IdentityProjection,
        now: Optional[datetime] = None,
        *,
        strict: bool = False,
    ) -> IdentityProjection:
        """Insert or update the projection keyed on ``source_id``.

        Online, the remote write is attempted first; on failure the row is
        cached locally and an outbox entry is queued for replay.  With
        *strict* the remote error is then re-raised instead of being
        absorbed.  In local-only mode the SQLite table is written directly
        and errors propagate.
        """
        if now is not None:
            projection = projection.model_copy(update={"updated_at": now})

        if not self._db.is_online:
            return self._write_local(projection)

        try:
            stored = self.push_remote(projection.sync_payload())
        except Exception as exc:
            self._logger.error(
                "Failed to upsert projection %s to Supabase: %s",
                projection.source_id,
                exc,
            )
            stored = self._write_local(projection)
            self._enqueue_outbox(
                projection.source_id,
                projection.sync_payload(),
                table_name=self.remote_table,
            )
            if strict:
                raise
            return stored

        self._cache_to_sqlite(stored)
        return stored

    def apply_payload(self, payload: dict[str, object]) -> IdentityProjection:
        """Replay an outbox payload.

        Online, the remote write must succeed (errors propagate so the
        outbox row is retried) and the result is mirrored locally.
        Offline, the local projection store is written.
        """
        projection = IdentityProjection(**payload)
        if not self._db.is_online:
            return self._write_local(projection)
        stored = self.push_remote(projection.sync_payload())
        self._cache_to_sqlite(stored)
        return stored

    def push_remote(self, payload: dict[str, object]) -> IdentityProjection:
        """Upsert *payload* into the remote table on ``source_id``."""
        response = (
            self.supabase.table(self.remote_table)
            .upsert(payload, on_conflict="source_id")
            .execute()
        )
        if not response.data:
            raise RuntimeError(
                f"Supabase upsert returned no rows for {payload.get('source_id')}"
            )
        return IdentityProjection(**response.data[0])

    # ------------------------------------------------------------------
    # Local mirror
    # ------------------------------------------------------------------

    def _get_local(self, source_id: str) -> Optional[IdentityProjection]:
        row = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} WHERE source_id = ?", (source_id,)
        ).fetchone()
        return IdentityProjection(**dict(row)) if row else None

    def _write_local(self, projection: IdentityProjection) -> IdentityProjection:
        """Upsert into ``identity_projections`` and return the stored row.

        Raises:
            sqlite3.Error: If the local write fails.
        """
        updated_at: Optional[str] = (
            projection.updated_at.isoformat() if projection.updated_at else None
        )
        # A remote row's surrogate id is mirrored; a local-only row keeps its own.
        with self._db.write_lock:
            self.sqlite.execute(
                f"""
                INSERT INTO {self.TABLE}
                    (id, source_id, name, surname, username, email, is_active,
                     updated_at)
                VALUES (COALESCE(?, lower(hex(randomblob(16)))),
                        ?, ?, ?, ?, ?, ?, COALESCE(?, CURRENT_TIMESTAMP))
                ON CONFLICT(source_id) DO UPDATE SET
                    id         = COALESCE(?, {self.TABLE}.id),
                    name       = excluded.name,
                    surname    = excluded.surname,
                    username   = excluded.username,
                    email      = excluded.email,
                    is_active  = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    projection.id,
                    projection.source_id,
                    projection.name,
                    projection.surname,
                    projection.username,
                    projection.email,
                    int(projection.is_active),
                    updated_at,
                    projection.id,
                ),
            )
            self._commit()
            stored = self._get_local(projection.source_id)
        if stored is None:
            raise sqlite3.DatabaseError(
                f"Projection {projection.source_id} missing after local upsert"
            )
        return stored

    def _cache_to_sqlite(self, projection: IdentityProjection) -> None:
        """Mirror a remote projection locally.

        Exceptions are logged but not raised so that a local cache
        failure never masks a successful Supabase operation.
        """
        try:
            self._write_local(projection)
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to cache projection %s to SQLite (non-fatal): %s",
                projection.source_id,
                exc,
            )

    def _cache_all(self, projections: list[IdentityProjection]) -> None:
        for projection in projections:
            self._cache_to_sqlite(projection)
