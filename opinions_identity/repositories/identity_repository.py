"""
Identity Repository.

Handles all access to the authoritative ``identities`` table in the
SQLite credential store.  Single-use tokens are embedded in the identity
row; consuming one is a conditional ``UPDATE`` that only succeeds while
the row still holds that exact token.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.enums import TokenKind
from opinions_identity.models.identity import Identity
from opinions_identity.models.projection import IdentityProjection
from opinions_identity.repositories.base_repository import BaseRepository

# Column pairs per token kind.  Fixed strings, never user input.
_TOKEN_COLUMNS: dict[TokenKind, tuple[str, str]] = {
    TokenKind.VERIFICATION: (
        "email_verification_token",
        "email_verification_expires_at",
    ),
    TokenKind.PASSWORD_RESET: (
        "password_reset_token",
        "password_reset_expires_at",
    ),
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class IdentityRepository(BaseRepository):
    """Data access layer for :class:`Identity` records.

    **No ``delete()`` method.**  Identities are never hard-deleted; use
    :meth:`set_active` to revoke access while keeping the row (and its
    projection) intact.

    Methods raise ``sqlite3.Error`` unchanged; the service layer decides
    how store failures surface.
    """

    TABLE = "identities"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        projection_table: str = "identity_projections",
    ) -> None:
        super().__init__(db, logger)
        self._projection_table = projection_table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, identity_id: str) -> Optional[Identity]:
        row = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} WHERE id = ?", (identity_id,)
        ).fetchone()
        return Identity(**dict(row)) if row else None

    def get_by_email(self, email: str) -> Optional[Identity]:
        """Fetch an identity by email (case-insensitive via ``COLLATE NOCASE``)."""
        row = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} WHERE email = ?", (email.strip(),)
        ).fetchone()
        return Identity(**dict(row)) if row else None

    def get_by_identifier(self, identifier: str) -> Optional[Identity]:
        """Fetch an identity by email *or* username, case-insensitively.

        Args:
            identifier: Either the email address or the username.

        Returns:
            The matching Identity, or ``None``.
        """
        value = identifier.strip()
        row = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} WHERE email = ? OR username = ? LIMIT 1",
            (value, value),
        ).fetchone()
        return Identity(**dict(row)) if row else None

    def find_conflict(self, email: str, username: str) -> Optional[str]:
        """Return ``"email"`` or ``"username"`` when either is taken, else ``None``.

        A fast-path pre-check only.  The UNIQUE constraints on both
        columns remain the authoritative duplicate signal.
        """
        row = self.sqlite.execute(
            f"""
            SELECT email = ? AS email_taken
            FROM {self.TABLE}
            WHERE email = ? OR username = ?
            LIMIT 1
            """,
            (email, email, username),
        ).fetchone()
        if row is None:
            return None
        return "email" if row["email_taken"] else "username"

    def get_by_token(self, kind: TokenKind, token: str) -> Optional[Identity]:
        """Fetch the identity holding *token* (exact match) for *kind*."""
        token_col, _ = _TOKEN_COLUMNS[kind]
        row = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} WHERE {token_col} = ?", (token,)
        ).fetchone()
        return Identity(**dict(row)) if row else None

    def list_all(self) -> list[Identity]:
        rows = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} ORDER BY created_at ASC, id ASC"
        ).fetchall()
        return [Identity(**dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, identity: Identity) -> Identity:
        """Persist a new identity.

        Raises:
            sqlite3.IntegrityError: If the email or username is taken.
        """
        with self._db.write_lock:
            self.sqlite.execute(
                f"""
                INSERT INTO {self.TABLE} (
                    id, name, surname, username, email, password_hash,
                    phone, profile_picture, is_active, email_verified,
                    email_verification_token, email_verification_expires_at,
                    password_reset_token, password_reset_expires_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    identity.id,
                    identity.name,
                    identity.surname,
                    identity.username,
                    identity.email,
                    identity.password_hash,
                    identity.phone,
                    identity.profile_picture,
                    int(identity.is_active),
                    int(identity.email_verified),
                    identity.email_verification_token,
                    _iso(identity.email_verification_expires_at),
                    identity.password_reset_token,
                    _iso(identity.password_reset_expires_at),
                    _iso(identity.created_at),
                    _iso(identity.updated_at),
                ),
            )
            self._commit()
        self._logger.info("Identity inserted: %s", identity.id)
        return identity

    def set_token(
        self,
        identity_id: str,
        kind: TokenKind,
        token: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Store *token* for *kind*, replacing any previous token of that kind.

        Returns:
            ``True`` if the identity row was updated.
        """
        token_col, expiry_col = _TOKEN_COLUMNS[kind]
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"""
                UPDATE {self.TABLE}
                SET {token_col} = ?, {expiry_col} = ?, updated_at = ?
                WHERE id = ?
                """,
                (token, expires_at.isoformat(), now.isoformat(), identity_id),
            )
            self._commit()
        return cursor.rowcount == 1

    def consume_verification_token(
        self, identity_id: str, token: str, now: datetime,
    ) -> bool:
        """Mark the identity verified and clear the token in one statement.

        Only succeeds while the row still holds *token* and is unverified,
        so a concurrent second consumer gets ``False``.
        """
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"""
                UPDATE {self.TABLE}
                SET email_verified = 1,
                    email_verification_token = NULL,
                    email_verification_expires_at = NULL,
                    updated_at = ?
                WHERE id = ? AND email_verification_token = ? AND email_verified = 0
                """,
                (now.isoformat(), identity_id, token),
            )
            self._commit()
        return cursor.rowcount == 1

    def consume_password_reset_token(
        self,
        identity_id: str,
        token: str,
        password_hash: str,
        now: datetime,
    ) -> bool:
        """Replace the password hash and clear the reset token atomically."""
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"""
                UPDATE {self.TABLE}
                SET password_hash = ?,
                    password_reset_token = NULL,
                    password_reset_expires_at = NULL,
                    updated_at = ?
                WHERE id = ? AND password_reset_token = ?
                """,
                (password_hash, now.isoformat(), identity_id, token),
            )
            self._commit()
        return cursor.rowcount == 1

    def set_active(self, identity_id: str, active: bool, now: datetime) -> bool:
        """Toggle the account-active flag.  Returns ``False`` if no row matched."""
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"UPDATE {self.TABLE} SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(active), now.isoformat(), identity_id),
            )
            self._commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def enqueue_projection(self, identity: Identity) -> None:
        """Queue a projection upsert carrying *identity*'s mirrored fields.

        Call inside the same :meth:`DatabaseManager.batch_write` block as
        the authoritative change so both commit together.
        """
        projection = IdentityProjection.from_identity(identity)
        self._enqueue_outbox(
            identity.id,
            projection.sync_payload(),
            table_name=self._projection_table,
        )

    def count(self) -> int:
        row = self.sqlite.execute(
            f"SELECT COUNT(*) AS cnt FROM {self.TABLE}"
        ).fetchone()
        return int(row["cnt"]) if row else 0
