"""
Identity Projection Model.

Read-optimised mirror of a subset of identity fields, consumed by the
content features as a foreign key.  Keyed by ``source_id`` (the identity
id); the projection's own ``id`` is a surrogate and never used for lookup.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel

from opinions_identity.models.identity import Identity


class IdentityProjection(BaseModel):
    """Secondary identity record owned by the projection synchronizer."""

    MIRRORED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "surname",
        "username",
        "email",
        "is_active",
    )

    id: Optional[str] = None
    source_id: str
    name: str = ""
    surname: str = ""
    username: str
    email: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityProjection":
        """Build a projection carrying the identity's current mirrored fields."""
        return cls(
            source_id=identity.id,
            name=identity.name,
            surname=identity.surname,
            username=identity.username,
            email=identity.email,
            is_active=identity.is_active,
        )

    def diff(self, identity: Identity) -> list[str]:
        """Return ``"field: old -> new"`` entries for every stale mirrored field."""
        changes: list[str] = []
        for field in self.MIRRORED_FIELDS:
            current = getattr(self, field)
            source = getattr(identity, field)
            if current != source:
                changes.append(f"{field}: {current} -> {source}")
        return changes

    def sync_payload(self) -> dict[str, object]:
        """Columns written to the projection store on upsert."""
        return self.model_dump(
            include={"source_id", *self.MIRRORED_FIELDS},
        )
