"""
Identity Projection Synchronizer.

Keeps the secondary identity projection converged with the authoritative
identity records.

Sync strategy:
    - Full-scan, last-writer-wins reconciliation: every identity is
      visited; a missing projection is created, a stale one overwritten,
      a matching one left untouched.
    - Mirrored fields only: name, surname, username, email, is_active.
    - Lookups and upserts key on ``source_id``, never on the
      projection's surrogate id.
    - Per-record failures are logged and counted; the pass always visits
      every identity.

The same upsert path backs :meth:`ensure_projection`, the lazy
"create on first miss" entry point used by request handling, so both
writers produce at most one projection per identity.
"""

from __future__ import annotations

from typing import Optional

from opinions_identity.database import DatabaseManager
from opinions_identity.errors import InternalFailure, NotFound
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import SyncReport
from opinions_identity.models.enums import SyncOutcome
from opinions_identity.models.identity import Identity, IdentitySummary
from opinions_identity.models.projection import IdentityProjection
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.repositories.projection_repository import ProjectionRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.utils.audit import log_audit_event
from opinions_identity.utils.clock import Clock, utc_now


class ProjectionSyncService(BaseService):
    """
    Reconciles ``identities`` against the identity projection.

    Runs once at startup before roles are seeded, and may be re-run at
    any time as an idempotent maintenance operation.
    """

    def __init__(
        self,
        identity_repo: IdentityRepository,
        projection_repo: ProjectionRepository,
        db: DatabaseManager,
        logger: StructuredLogger,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger)
        self._identities = identity_repo
        self._projections = projection_repo
        self._db = db
        self._clock: Clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def synchronize(self) -> SyncReport:
        """Run one full reconciliation pass.

        Returns:
            Aggregate ``created`` / ``updated`` / ``unchanged`` / ``errors``
            counts; ``total`` is the number of identities visited.

        Raises:
            InternalFailure: The identity records could not be enumerated.
        """
        with self._store_guard("synchronize (enumerate)"):
            identities: list[Identity] = self._identities.list_all()

        self._logger.info(
            "Projection sync: reconciling %d identities", len(identities),
        )

        report = SyncReport()
        for identity in identities:
            try:
                outcome = self._reconcile(identity)
            except Exception:
                self._logger.error(
                    "Projection sync: failed for identity %s",
                    identity.id,
                    exc_info=True,
                    extra={"event": "PROJECTION_SYNC_ERROR"},
                )
                outcome = SyncOutcome.ERROR
            report.record(outcome)

        self._logger.info(
            "Projection sync complete: created=%d updated=%d unchanged=%d "
            "errors=%d total=%d",
            report.created,
            report.updated,
            report.unchanged,
            report.errors,
            report.total,
            extra={"event": "PROJECTION_SYNC_REPORT"},
        )
        return report

    def ensure_projection(self, identity_id: str) -> IdentityProjection:
        """Return the identity's projection, creating it on first miss.

        A stale projection is refreshed with the same upsert used by
        :meth:`synchronize`.

        Raises:
            NotFound: No identity with *identity_id*.
            InternalFailure: The projection could not be written.
        """
        with self._store_guard("ensure_projection"):
            identity: Optional[Identity] = self._identities.get_by_id(identity_id)
        if identity is None:
            raise NotFound(f"Identity {identity_id} not found.")

        existing = self._projections.get_by_source_id(identity.id)
        if existing is not None and not existing.diff(identity):
            return existing

        try:
            if existing is None:
                return self._create(identity)
            return self._update(existing, identity)
        except Exception as exc:
            # Possible race: another writer created the projection first.
            self._logger.warning(
                "Projection write failed for %s; retrying lookup. Error: %s",
                identity.id,
                exc,
            )
            retried = self._projections.get_by_source_id(identity.id)
            if retried is None:
                raise InternalFailure(
                    f"Failed to create projection for identity {identity.id}.",
                    original_error=exc,
                ) from exc
            return retried

    def find_missing(self) -> list[IdentitySummary]:
        """List identities that have no projection record."""
        with self._store_guard("find_missing"):
            identities = self._identities.list_all()
        projected: set[str] = self._projections.list_source_ids()
        missing = [i.to_summary() for i in identities if i.id not in projected]
        self._logger.info(
            "Projection check: %d of %d identities missing a projection",
            len(missing),
            len(identities),
        )
        return missing

    # ------------------------------------------------------------------
    # Private implementation
    # ------------------------------------------------------------------

    def _reconcile(self, identity: Identity) -> SyncOutcome:
        # Strict: a remote failure counts as an error, never as converged.
        existing = self._projections.get_by_source_id(identity.id, strict=True)
        if existing is None:
            self._create(identity, strict=True)
            return SyncOutcome.CREATED
        if existing.diff(identity):
            self._update(existing, identity, strict=True)
            return SyncOutcome.UPDATED
        return SyncOutcome.UNCHANGED

    def _create(self, identity: Identity, strict: bool = False) -> IdentityProjection:
        created = self._projections.upsert(
            IdentityProjection.from_identity(identity), now=self._clock(), strict=strict,
        )
        log_audit_event(
            logger=self._logger,
            action="PROJECTION_CREATE",
            entity_type="IdentityProjection",
            entity_id=identity.id,
            user_id="system",
            details={"username": identity.username, "email": identity.email},
            db=self._db,
        )
        return created

    def _update(
        self, existing: IdentityProjection, identity: Identity, strict: bool = False,
    ) -> IdentityProjection:
        changes = existing.diff(identity)
        self._logger.info(
            "Projection sync: updating %s. Changes: %s",
            identity.id,
            ", ".join(changes),
        )
        updated = self._projections.upsert(
            IdentityProjection.from_identity(identity), now=self._clock(), strict=strict,
        )
        log_audit_event(
            logger=self._logger,
            action="PROJECTION_SYNC",
            entity_type="IdentityProjection",
            entity_id=identity.id,
            user_id="system",
            details={"changes": "; ".join(changes)},
            db=self._db,
        )
        return updated
