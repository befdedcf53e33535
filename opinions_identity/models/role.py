"""
Role Models.

A role is a unique name from the closed :class:`RoleName` set.  Each
identity holds at most one :class:`RoleAssignment` row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from opinions_identity.models.enums import RoleName


class Role(BaseModel):
    id: str
    name: RoleName
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RoleAssignment(BaseModel):
    """Link between one identity and its single role.

    ``id`` is bounded to 16 characters and regenerated on every role
    change.
    """

    id: str
    user_id: str
    role_id: str
    role_name: RoleName
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
