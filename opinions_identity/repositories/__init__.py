"""
Repository Layer Package.

Provides data-access abstractions over the SQLite credential store and
the Supabase identity projection.  All database operations flow through
repositories; services never issue SQL or Supabase queries directly.

Usage:
    from opinions_identity.repositories.identity_repository import IdentityRepository
    from opinions_identity.repositories.projection_repository import ProjectionRepository
"""

from opinions_identity.repositories.base_repository import BaseRepository
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.repositories.projection_repository import ProjectionRepository
from opinions_identity.repositories.role_repository import RoleRepository

__all__ = [
    "BaseRepository",
    "IdentityRepository",
    "ProjectionRepository",
    "RoleRepository",
]
