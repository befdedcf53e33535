"""
Application Bootstrap.

Builds the dependency graph and runs the startup sequence in its
load-bearing order:

    1. open the credential store (SQLite) and apply the schema
    2. open the projection store (Supabase, when configured)
    3. reconcile the identity projection
    4. seed the closed role set
    5. promote the designated administrator
    6. start the background workers

Roles are seeded after reconciliation and the administrator is promoted
after seeding, so the promotion always finds its target role.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from supabase import Client as SupabaseClient

from opinions_identity.config import AppConfig, get_config
from opinions_identity.database import DatabaseManager
from opinions_identity.errors import NotFound
from opinions_identity.logger import StructuredLogger, get_logger
from opinions_identity.models.auth_models import SyncReport
from opinions_identity.models.enums import RoleName
from opinions_identity.schema import initialize_schema
from opinions_identity.services import ServiceContainer, create_services
from opinions_identity.services.notification_dispatcher import Deliver
from opinions_identity.utils.clock import Clock, utc_now


class Application:
    """Fully-wired identity core: config, stores and services.

    Create with :func:`build_application`, then call :meth:`startup`.
    """

    def __init__(
        self,
        config: AppConfig,
        db: DatabaseManager,
        services: ServiceContainer,
        logger: StructuredLogger,
    ) -> None:
        self.config = config
        self.db = db
        self.services = services
        self._logger = logger
        self._started: bool = False

    def startup(self, start_workers: bool = True) -> SyncReport:
        """Run steps 3-6 of the startup sequence.

        Returns:
            The report of the startup reconciliation pass.

        Raises:
            InternalFailure: The identity records could not be enumerated.
        """
        report = self.services["projection_sync_service"].synchronize()

        role_service = self.services["role_service"]
        role_service.seed_roles()
        self._promote_admin()

        if start_workers:
            self.services["notification_dispatcher"].start()
            self.services["sync_worker_service"].start()

        self._started = True
        self._logger.info(
            "Identity core started (projection store: %s).",
            "supabase" if self.db.is_online else "local",
        )
        return report

    def shutdown(self) -> None:
        """Stop the workers and close the credential store.  Idempotent."""
        self.services["sync_worker_service"].stop()
        self.services["notification_dispatcher"].stop()
        self.db.close()
        if self._started:
            self._logger.info("Identity core shut down.")
            self._started = False

    def _promote_admin(self) -> None:
        admin_email = self.config.ADMIN_EMAIL.strip()
        if not admin_email:
            self._logger.info("ADMIN_EMAIL not set; skipping administrator promotion.")
            return
        try:
            self.services["role_service"].promote_to_role(admin_email, RoleName.ADMIN_ROLE)
        except NotFound:
            # The administrator has not registered yet; promoted on the next start.
            self._logger.warning(
                "Designated administrator %s has not registered yet.",
                admin_email,
                extra={"event": "ADMIN_PROMOTION_PENDING"},
            )


def build_application(
    config: Optional[AppConfig] = None,
    supabase_client: Optional[SupabaseClient] = None,
    deliver: Optional[Deliver] = None,
    clock: Clock = utc_now,
) -> Application:
    """Open both stores, apply the schema and wire the services.

    Parameters
    ----------
    config:
        Defaults to :func:`get_config`.
    supabase_client:
        Pre-built projection store client; otherwise one is created from
        ``SUPABASE_URL`` / ``SUPABASE_KEY`` when both are set.
    deliver:
        Notification delivery callable; defaults to SMTP email.
    clock:
        Shared time source.
    """
    config = config or get_config()

    db_path: str = config.DATABASE_PATH
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    db = DatabaseManager(
        sqlite_path=db_path,
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_KEY.get_secret_value(),
        logger=StructuredLogger(name="database"),
        supabase_client=supabase_client,
    )
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    services = create_services(
        db=db, config=config, clock=clock, deliver=deliver,
    )
    return Application(
        config=config, db=db, services=services, logger=get_logger("bootstrap"),
    )
