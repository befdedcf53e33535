"""
Identity Administration Service.

Administrative operations on identities: profile lookup, listing,
activation toggling and role changes.

Architectural notes:
    - Identities are never hard-deleted; deactivation is the only removal.
    - A change to a projected field (``is_active``) commits together with
      its ``sync_queue`` outbox entry, so the projection converges even if
      the process stops before the sync worker runs.
    - Role changes delegate to :class:`RoleService`, which owns the
      exactly-one-role invariant.
"""

from __future__ import annotations

from typing import Optional

from opinions_identity.database import DatabaseManager
from opinions_identity.errors import NotFound
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.identity import Identity, IdentitySummary
from opinions_identity.models.role import RoleAssignment
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.services.role_service import RoleService
from opinions_identity.utils.audit import log_audit_event
from opinions_identity.utils.clock import Clock, utc_now


class IdentityAdminService(BaseService):
    """Service layer for admin identity management operations."""

    def __init__(
        self,
        identity_repo: IdentityRepository,
        role_service: RoleService,
        db: DatabaseManager,
        logger: StructuredLogger,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger)
        self._identities = identity_repo
        self._roles = role_service
        self._db = db
        self._clock: Clock = clock

    def get_profile(self, identity_id: str) -> IdentitySummary:
        """Return the identity's public profile, including its role.

        Raises:
            NotFound: No identity with *identity_id*.
        """
        identity = self._require(identity_id)
        return identity.to_summary(role=self._roles.resolve_role(identity.id))

    def list_identities(self) -> list[IdentitySummary]:
        """All identities, oldest first, without credentials or tokens."""
        with self._store_guard("list_identities"):
            identities: list[Identity] = self._identities.list_all()
        return [i.to_summary(role=self._roles.resolve_role(i.id)) for i in identities]

    def deactivate(self, identity_id: str, actor_id: str = "system") -> IdentitySummary:
        """Disable login for the identity.  Idempotent."""
        return self._set_active(identity_id, False, actor_id)

    def activate(self, identity_id: str, actor_id: str = "system") -> IdentitySummary:
        """Re-enable login for the identity.  Idempotent."""
        return self._set_active(identity_id, True, actor_id)

    def change_role(
        self, identity_id: str, role_name: str, actor_id: str = "system",
    ) -> RoleAssignment:
        """Replace the identity's role.

        Raises:
            ValidationError: Unknown role name.
            NotFound: Identity or role does not exist.
        """
        assignment = self._roles.ensure_role(identity_id, role_name)
        self._logger.info(
            "Role of %s set to %s by %s",
            identity_id,
            assignment.role_name,
            actor_id,
            extra={"event": "ROLE_CHANGED"},
        )
        return assignment

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require(self, identity_id: str) -> Identity:
        with self._store_guard("get_identity"):
            identity: Optional[Identity] = self._identities.get_by_id(identity_id)
        if identity is None:
            raise NotFound(f"Identity {identity_id} not found.")
        return identity

    def _set_active(
        self, identity_id: str, active: bool, actor_id: str,
    ) -> IdentitySummary:
        identity = self._require(identity_id)
        if identity.is_active == active:
            return identity.to_summary(role=self._roles.resolve_role(identity.id))

        now = self._clock()
        updated = identity.model_copy(update={"is_active": active, "updated_at": now})

        with self._store_guard("set_active"):
            with self._db.batch_write():
                if not self._identities.set_active(identity_id, active, now):
                    raise NotFound(f"Identity {identity_id} not found.")
                self._identities.enqueue_projection(updated)

        log_audit_event(
            logger=self._logger,
            action="IDENTITY_ACTIVATED" if active else "IDENTITY_DEACTIVATED",
            entity_type="Identity",
            entity_id=identity_id,
            user_id=actor_id,
            details={"email": identity.email},
            db=self._db,
        )
        return updated.to_summary(role=self._roles.resolve_role(identity_id))
