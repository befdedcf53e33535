"""
Business Logic Services Package.

Services depend on the Repository layer for data access and receive
every collaborator through their constructors.

The ``create_services()`` factory wires every repository and service together,
returning a typed dict that the application layer (CLI / request handlers)
can consume without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from opinions_identity.config import AppConfig
from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger, get_logger
from opinions_identity.models.enums import RoleName
from opinions_identity.repositories.identity_repository import IdentityRepository
from opinions_identity.repositories.projection_repository import ProjectionRepository
from opinions_identity.repositories.role_repository import RoleRepository
from opinions_identity.services.auth_service import AuthService
from opinions_identity.services.email_service import EmailService
from opinions_identity.services.identity_admin import IdentityAdminService
from opinions_identity.services.notification_dispatcher import (
    Deliver,
    NotificationDispatcher,
)
from opinions_identity.services.passwords import PasswordHasher
from opinions_identity.services.projection_sync import ProjectionSyncService
from opinions_identity.services.role_service import RoleService
from opinions_identity.services.session_issuer import SessionIssuer
from opinions_identity.services.sync_worker import SyncWorkerService
from opinions_identity.services.token_service import TokenService
from opinions_identity.utils.clock import Clock, utc_now


class ServiceContainer(TypedDict):
    """Typed container for all application services."""

    # --- Repositories ---
    identity_repository: IdentityRepository
    role_repository: RoleRepository
    projection_repository: ProjectionRepository

    # --- Core ---
    auth_service: AuthService
    token_service: TokenService
    role_service: RoleService
    session_issuer: SessionIssuer
    identity_admin_service: IdentityAdminService
    projection_sync_service: ProjectionSyncService

    # --- Background workers ---
    email_service: EmailService
    notification_dispatcher: NotificationDispatcher
    sync_worker_service: SyncWorkerService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    clock: Clock = utc_now,
    deliver: Optional[Deliver] = None,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup.

    Args:
        db: Initialised DatabaseManager with the schema in place.
        config: Application configuration (injected into services that need it).
        clock: Time source shared by every time-dependent service.
        deliver: Notification delivery callable; defaults to
            :meth:`EmailService.deliver`.
        logger: Shared structured logger; defaults to ``get_logger("services")``.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = logger or get_logger("services")

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    identity_repo = IdentityRepository(
        db=db, logger=logger, projection_table=config.PROJECTION_TABLE,
    )
    role_repo = RoleRepository(db=db, logger=logger)
    projection_repo = ProjectionRepository(
        db=db, logger=logger, remote_table=config.PROJECTION_TABLE,
    )

    # ------------------------------------------------------------------
    # 2. Leaf services (no service dependencies)
    # ------------------------------------------------------------------
    password_hasher = PasswordHasher(iterations=config.PASSWORD_HASH_ITERATIONS)
    token_service = TokenService(
        repo=identity_repo, config=config, logger=logger, clock=clock,
    )
    session_issuer = SessionIssuer(config=config, logger=logger, clock=clock)
    role_service = RoleService(
        role_repo=role_repo,
        identity_repo=identity_repo,
        db=db,
        logger=logger,
        default_role=RoleName(config.DEFAULT_ROLE),
        clock=clock,
    )
    email_service = EmailService(config=config, logger=logger)
    dispatcher = NotificationDispatcher(
        deliver=deliver or email_service.deliver,
        logger=logger,
        maxsize=config.NOTIFICATION_QUEUE_SIZE,
    )
    projection_sync_service = ProjectionSyncService(
        identity_repo=identity_repo,
        projection_repo=projection_repo,
        db=db,
        logger=logger,
        clock=clock,
    )

    # ------------------------------------------------------------------
    # 3. Orchestration services (depend on other services)
    # ------------------------------------------------------------------
    auth_service = AuthService(
        identity_repo=identity_repo,
        token_service=token_service,
        role_service=role_service,
        session_issuer=session_issuer,
        password_hasher=password_hasher,
        dispatcher=dispatcher,
        db=db,
        logger=logger,
        clock=clock,
    )
    identity_admin_service = IdentityAdminService(
        identity_repo=identity_repo,
        role_service=role_service,
        db=db,
        logger=logger,
        clock=clock,
    )
    sync_worker_service = SyncWorkerService(
        db=db,
        projection_repo=projection_repo,
        config=config,
        logger=logger,
        synchronizer=projection_sync_service,
    )

    return ServiceContainer(
        identity_repository=identity_repo,
        role_repository=role_repo,
        projection_repository=projection_repo,
        auth_service=auth_service,
        token_service=token_service,
        role_service=role_service,
        session_issuer=session_issuer,
        identity_admin_service=identity_admin_service,
        projection_sync_service=projection_sync_service,
        email_service=email_service,
        notification_dispatcher=dispatcher,
        sync_worker_service=sync_worker_service,
    )
