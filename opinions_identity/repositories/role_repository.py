"""
Role Repository.

Data access for the ``roles`` table and the single-row-per-identity
``user_roles`` assignment table.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from opinions_identity.models.enums import RoleName
from opinions_identity.models.role import Role, RoleAssignment
from opinions_identity.repositories.base_repository import BaseRepository


class RoleRepository(BaseRepository):
    """Data access layer for roles and role assignments.

    ``user_roles.user_id`` is UNIQUE, so :meth:`upsert_assignment`
    replaces an identity's role in a single statement; there is never a
    window in which the identity has zero or two assignments.
    """

    TABLE = "roles"
    ASSIGNMENT_TABLE = "user_roles"

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_by_name(self, name: RoleName) -> Optional[Role]:
        row = self.sqlite.execute(
            f"SELECT id, name, created_at FROM {self.TABLE} WHERE name = ?",
            (str(name),),
        ).fetchone()
        return Role(**dict(row)) if row else None

    def list_all(self) -> list[Role]:
        rows = self.sqlite.execute(
            f"SELECT id, name, created_at FROM {self.TABLE} ORDER BY name"
        ).fetchall()
        return [Role(**dict(row)) for row in rows]

    def create_if_absent(self, name: RoleName) -> tuple[Role, bool]:
        """Insert the role unless it exists.

        Returns:
            ``(role, created)`` where ``created`` is ``False`` when the
            role was already present.
        """
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"INSERT OR IGNORE INTO {self.TABLE} (id, name) VALUES (?, ?)",
                (str(uuid.uuid4()), str(name)),
            )
            self._commit()
            created = cursor.rowcount == 1
            role = self.get_by_name(name)
        if role is None:
            raise LookupError(f"Role {name} missing after insert")
        if created:
            self._logger.info("Role created: %s", name)
        return role, created

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def get_assignment(self, user_id: str) -> Optional[RoleAssignment]:
        row = self.sqlite.execute(
            f"""
            SELECT ur.id, ur.user_id, ur.role_id, r.name AS role_name, ur.created_at
            FROM {self.ASSIGNMENT_TABLE} ur
            JOIN {self.TABLE} r ON r.id = ur.role_id
            WHERE ur.user_id = ?
            """,
            (user_id,),
        ).fetchone()
        return RoleAssignment(**dict(row)) if row else None

    def count_assignments(self, user_id: str) -> int:
        row = self.sqlite.execute(
            f"SELECT COUNT(*) AS cnt FROM {self.ASSIGNMENT_TABLE} WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return int(row["cnt"]) if row else 0

    def upsert_assignment(
        self,
        assignment_id: str,
        user_id: str,
        role_id: str,
        now: datetime,
    ) -> None:
        """Insert or replace the identity's single assignment with a fresh id.

        Raises:
            sqlite3.IntegrityError: On a primary-key collision of
                *assignment_id* or a missing identity/role.
        """
        with self._db.write_lock:
            self.sqlite.execute(
                f"""
                INSERT INTO {self.ASSIGNMENT_TABLE} (id, user_id, role_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    id         = excluded.id,
                    role_id    = excluded.role_id,
                    created_at = excluded.created_at
                """,
                (assignment_id, user_id, role_id, now.isoformat()),
            )
            self._commit()
