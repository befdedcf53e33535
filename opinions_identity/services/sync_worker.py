"""
Projection Outbox Worker.

Every authoritative change to a projected identity field writes a row to
``sync_queue`` inside the same SQLite transaction as the change.  This
worker drains that outbox on a daemon thread and applies each change to
the projection store (Supabase when configured, otherwise the local
``identity_projections`` table).

Batches are coalesced per identity: only the newest pending row of an
identity is replayed, and the older ones are marked ``superseded`` so a
stale payload can never overwrite a newer one.

Row lifecycle::

    pending --applied--> synced
    pending --newer row applied--> superseded
    pending --failure x5 / malformed--> permanently_failed

When ``PROJECTION_RECONCILE_INTERVAL_S`` is positive the same thread also
re-runs the full-scan reconciliation on that period.
"""

from __future__ import annotations

import json
import threading
import time
from typing import NamedTuple, Optional

from opinions_identity.config import AppConfig
from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger
from opinions_identity.repositories.projection_repository import ProjectionRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.services.projection_sync import ProjectionSyncService


class OutboxRow(NamedTuple):
    id: int
    table_name: str
    operation: str
    entity_id: str
    payload: str


class SyncWorkerService(BaseService):
    """Drains the ``sync_queue`` outbox into the projection store.

    Parameters
    ----------
    db:
        Credential store; supplies ``.sqlite`` and ``.write_lock``.
    projection_repo:
        Applies replayed payloads to the projection store.
    config:
        Supplies ``SYNC_WORKER_INTERVAL_S`` and
        ``PROJECTION_RECONCILE_INTERVAL_S``.
    logger:
        Structured JSON logger.
    synchronizer:
        Used for periodic full reconciliation; ``None`` disables it.
    """

    MAX_ATTEMPTS: int = 5
    BATCH_SIZE: int = 50
    _MAX_INTERVAL_S: float = 300.0
    _OPERATIONS: frozenset[str] = frozenset({"upsert"})

    def __init__(
        self,
        db: DatabaseManager,
        projection_repo: ProjectionRepository,
        config: AppConfig,
        logger: StructuredLogger,
        synchronizer: Optional[ProjectionSyncService] = None,
    ) -> None:
        super().__init__(logger)
        self._db: DatabaseManager = db
        self._projections: ProjectionRepository = projection_repo
        self._synchronizer: Optional[ProjectionSyncService] = synchronizer
        self._poll_interval_s: float = config.SYNC_WORKER_INTERVAL_S
        self._reconcile_interval_s: float = config.PROJECTION_RECONCILE_INTERVAL_S
        self._tables: frozenset[str] = frozenset({projection_repo.remote_table})
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._failed_cycles: int = 0
        self._last_reconcile: float = time.monotonic()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread.  No-op when it is already running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._failed_cycles = 0
        self._last_reconcile = time.monotonic()
        self._thread = threading.Thread(target=self._run, name="ProjectionOutbox", daemon=True)
        self._thread.start()
        self._logger.info("Projection outbox worker started.")

    def stop(self, timeout: float = 10.0) -> None:
        """Ask the worker to exit and join it.  Safe when not running."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            self._logger.warning("Projection outbox worker still alive after %.0f s.", timeout)
        else:
            self._logger.info("Projection outbox worker stopped.")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def drain_once(self) -> int:
        """Apply one batch of pending rows on the calling thread.

        Returns
        -------
        int
            Number of rows applied to the projection store.
        """
        batch = self._fetch_pending()
        if not batch:
            return 0

        applied = 0
        for row in self._coalesce(batch):
            if self._apply(row):
                applied += 1
        if applied:
            self._logger.info("Outbox batch: %d of %d rows applied.", applied, len(batch))
        return applied

    # ------------------------------------------------------------------
    # Thread body
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            while not self._stop_event.wait(timeout=self._next_interval()):
                try:
                    self.drain_once()
                    self._failed_cycles = 0
                except Exception:
                    self._failed_cycles += 1
                    self._logger.warning("Outbox cycle failed", exc_info=True)
                self._maybe_reconcile()
        except Exception:
            self._logger.error("Projection outbox worker crashed.", exc_info=True)

    def _next_interval(self) -> float:
        """Poll interval, doubled per consecutive failed cycle up to 5 minutes."""
        if not self._failed_cycles:
            return self._poll_interval_s
        return min(
            self._poll_interval_s * 2 ** min(self._failed_cycles, 6),
            self._MAX_INTERVAL_S,
        )

    def _maybe_reconcile(self) -> None:
        if self._synchronizer is None or self._reconcile_interval_s <= 0:
            return
        if time.monotonic() - self._last_reconcile < self._reconcile_interval_s:
            return
        self._last_reconcile = time.monotonic()
        try:
            self._synchronizer.synchronize()
        except Exception:
            self._logger.warning("Periodic reconciliation failed", exc_info=True)

    # ------------------------------------------------------------------
    # Batch handling
    # ------------------------------------------------------------------

    def _fetch_pending(self) -> list[OutboxRow]:
        with self._db.write_lock:
            rows = self._db.sqlite.execute(
                "SELECT id, table_name, operation, entity_id, payload FROM sync_queue "
                "WHERE status = 'pending' ORDER BY id LIMIT ?",
                (self.BATCH_SIZE,),
            ).fetchall()
        return [OutboxRow(*tuple(row)) for row in rows]

    def _coalesce(self, batch: list[OutboxRow]) -> list[OutboxRow]:
        """Keep the newest row per (table, entity); supersede the rest."""
        newest: dict[tuple[str, str], OutboxRow] = {}
        for row in batch:
            newest[(row.table_name, row.entity_id)] = row
        stale = [row.id for row in batch if newest[(row.table_name, row.entity_id)] is not row]
        if stale:
            with self._db.write_lock:
                self._db.sqlite.executemany(
                    "UPDATE sync_queue SET status = 'superseded', "
                    "attempted_at = CURRENT_TIMESTAMP WHERE id = ?",
                    [(row_id,) for row_id in stale],
                )
                self._db.sqlite.commit()
        return sorted(newest.values(), key=lambda row: row.id)

    def _apply(self, row: OutboxRow) -> bool:
        try:
            payload = json.loads(row.payload)
        except (json.JSONDecodeError, TypeError) as exc:
            self._logger.error("Outbox row %d has malformed JSON: %s", row.id, exc)
            self._record_failure(row.id, f"Malformed JSON: {exc}", permanent=True)
            return False

        try:
            if row.table_name not in self._tables:
                raise ValueError(f"Disallowed sync target table: {row.table_name}")
            if row.operation not in self._OPERATIONS:
                raise ValueError(f"Unknown sync operation: {row.operation}")
            if not isinstance(payload, dict):
                raise ValueError("Projection payload must be a JSON object")
            self._projections.apply_payload(payload)
        except Exception as exc:
            self._logger.warning("Outbox row %d not applied: %s", row.id, exc)
            self._record_failure(row.id, str(exc))
            return False

        self._record_success(row)
        self._logger.debug("Outbox row %d applied for %s", row.id, row.entity_id)
        return True

    def _record_success(self, row: OutboxRow) -> None:
        # Older rows left pending by earlier failed batches are stale now.
        with self._db.write_lock:
            self._db.sqlite.execute(
                "UPDATE sync_queue SET status = 'synced', attempts = attempts + 1, "
                "attempted_at = CURRENT_TIMESTAMP WHERE id = ?",
                (row.id,),
            )
            self._db.sqlite.execute(
                "UPDATE sync_queue SET status = 'superseded', attempted_at = CURRENT_TIMESTAMP "
                "WHERE table_name = ? AND entity_id = ? AND id < ? AND status = 'pending'",
                (row.table_name, row.entity_id, row.id),
            )
            self._db.sqlite.commit()

    def _record_failure(self, row_id: int, message: str, permanent: bool = False) -> None:
        """Count the attempt; give up after :attr:`MAX_ATTEMPTS`."""
        with self._db.write_lock:
            found = self._db.sqlite.execute(
                "SELECT attempts FROM sync_queue WHERE id = ?", (row_id,),
            ).fetchone()
            attempts = (found["attempts"] if found else 0) + 1
            status = (
                "permanently_failed"
                if permanent or attempts >= self.MAX_ATTEMPTS
                else "pending"
            )
            self._db.sqlite.execute(
                "UPDATE sync_queue SET status = ?, attempts = ?, "
                "attempted_at = CURRENT_TIMESTAMP, error_message = ? WHERE id = ?",
                (status, attempts, f"Attempt {attempts}: {message}", row_id),
            )
            self._db.sqlite.commit()
