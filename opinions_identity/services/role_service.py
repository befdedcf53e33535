"""
Role Assignment Service.

Maintains the exactly-one-role invariant per identity.

- ``ensure_role`` is idempotent: an identity already holding the target
  role triggers zero writes.
- A role change replaces the identity's single ``user_roles`` row in one
  upsert, with a freshly generated id of at most 16 characters.
- The id scheme (``ur_`` + base36 time + base36 random) can collide within
  one millisecond bucket; a primary-key collision is retried with a new
  id a bounded number of times.
"""

from __future__ import annotations

import sqlite3
from typing import Callable, Optional

from opinions_identity.database import DatabaseManager
from opinions_identity.errors import InternalFailure, NotFound, ValidationError
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.enums import RoleName
from opinions_identity.models.identity import Identity
from opinions_identity.models.role import Role, RoleAssignment
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.repositories.role_repository import RoleRepository
from opinions_identity.services.base_service import BaseService
from opinions_identity.utils.audit import log_audit_event
from opinions_identity.utils.clock import Clock, utc_now
from opinions_identity.utils.ids import generate_assignment_id


class RoleService(BaseService):
    """Seeds roles and assigns exactly one role per identity.

    Parameters
    ----------
    role_repo:
        Access to ``roles`` and ``user_roles``.
    identity_repo:
        Used to resolve identity references.
    db:
        Database manager, used for audit persistence.
    logger:
        Structured JSON logger.
    default_role:
        Role applied at registration and assumed at login when an
        identity has no assignment.
    clock:
        Returns the current UTC time.
    id_generator:
        Produces assignment ids; injectable so collisions can be forced.
    max_id_attempts:
        Upper bound on fresh ids tried after a primary-key collision.
    """

    def __init__(
        self,
        role_repo: RoleRepository,
        identity_repo: IdentityRepository,
        db: DatabaseManager,
        logger: StructuredLogger,
        default_role: RoleName = RoleName.USER_ROLE,
        clock: Clock = utc_now,
        id_generator: Callable[[], str] = generate_assignment_id,
        max_id_attempts: int = 5,
    ) -> None:
        super().__init__(logger)
        self._roles = role_repo
        self._identities = identity_repo
        self._db = db
        self._default_role: RoleName = RoleName(default_role)
        self._clock: Clock = clock
        self._id_generator = id_generator
        self._max_id_attempts: int = max_id_attempts

    @property
    def default_role(self) -> RoleName:
        return self._default_role

    # ------------------------------------------------------------------
    # Role seeding
    # ------------------------------------------------------------------

    def ensure_default_role(self, role_name: str) -> Role:
        """Create the role named *role_name* unless it exists.

        Raises:
            ValidationError: *role_name* is outside the closed role set.
        """
        name = self._parse_role(role_name)
        with self._store_guard("ensure_default_role"):
            role, created = self._roles.create_if_absent(name)
        if created:
            self._logger.info("Seeded role %s", name, extra={"event": "ROLE_SEEDED"})
        return role

    def seed_roles(self) -> list[Role]:
        """Ensure every role of the closed set exists."""
        return [self.ensure_default_role(name) for name in RoleName]

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def ensure_role(self, identity_id: str, role_name: str) -> RoleAssignment:
        """Make *role_name* the identity's single role.

        No-op (zero writes) when the identity already holds that role.

        Raises:
            ValidationError: Unknown role name.
            NotFound: Identity or role does not exist.
            InternalFailure: Store failure, or every generated id collided.
        """
        name = self._parse_role(role_name)
        with self._store_guard("ensure_role"):
            current = self._roles.get_assignment(identity_id)
            if current is not None and current.role_name == name:
                self._logger.debug(
                    "Identity %s already holds %s; no change.", identity_id, name,
                )
                return current

            if self._identities.get_by_id(identity_id) is None:
                raise NotFound(f"Identity {identity_id} not found.")
            role = self._roles.get_by_name(name)
            if role is None:
                raise NotFound(f"Role {name} not found.")

            assignment = self._replace_assignment(identity_id, role)

        log_audit_event(
            logger=self._logger,
            action="ROLE_ASSIGNED",
            entity_type="Identity",
            entity_id=identity_id,
            user_id="system",
            details={
                "role": str(name),
                "previous_role": str(current.role_name) if current else None,
                "assignment_id": assignment.id,
            },
            db=self._db,
        )
        return assignment

    def promote_to_role(self, identity_ref: str, role_name: str) -> RoleAssignment:
        """Assign *role_name* to the identity found by id or email.

        Raises:
            NotFound: No identity matches *identity_ref*.
        """
        identity = self._resolve_identity(identity_ref)
        if identity is None:
            raise NotFound(f"Identity {identity_ref} not found.")
        return self.ensure_role(identity.id, role_name)

    def resolve_role(self, identity_id: str) -> RoleName:
        """Return the identity's role, or the default role when unassigned."""
        with self._store_guard("resolve_role"):
            assignment = self._roles.get_assignment(identity_id)
        if assignment is None:
            self._logger.warning(
                "Identity %s has no role assignment; assuming %s.",
                identity_id,
                self._default_role,
            )
            return self._default_role
        return assignment.role_name

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _replace_assignment(self, identity_id: str, role: Role) -> RoleAssignment:
        last_error: Optional[sqlite3.IntegrityError] = None
        for attempt in range(1, self._max_id_attempts + 1):
            assignment_id = self._id_generator()
            try:
                self._roles.upsert_assignment(
                    assignment_id, identity_id, role.id, self._clock(),
                )
            except sqlite3.IntegrityError as exc:
                if "user_roles.id" not in str(exc):
                    raise
                last_error = exc
                self._logger.warning(
                    "Assignment id collision on %s (attempt %d/%d); regenerating.",
                    assignment_id,
                    attempt,
                    self._max_id_attempts,
                )
                continue
            assignment = self._roles.get_assignment(identity_id)
            if assignment is None:
                raise InternalFailure(
                    f"Role assignment for {identity_id} missing after upsert."
                )
            return assignment

        raise InternalFailure(
            f"Could not generate a unique assignment id after "
            f"{self._max_id_attempts} attempts.",
            original_error=last_error,
        )

    def _resolve_identity(self, identity_ref: str) -> Optional[Identity]:
        with self._store_guard("resolve_identity"):
            identity = self._identities.get_by_id(identity_ref)
            if identity is None and "@" in identity_ref:
                identity = self._identities.get_by_email(identity_ref.strip().lower())
        return identity

    @staticmethod
    def _parse_role(role_name: str) -> RoleName:
        try:
            return RoleName(role_name)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown role '{role_name}'.", original_error=exc,
            ) from exc
