import logging

import pytest

from conftest import make_registration
from opinions_identity.bootstrap import build_application
from opinions_identity.models.auth_models import SyncReport
from opinions_identity.models.enums import RoleName


@pytest.fixture()
def file_config(config, tmp_path):
    return config.model_copy(update={
        "DATABASE_PATH": str(tmp_path / "data" / "identity.db"),
        "ADMIN_EMAIL": "ada@example.com",
    })


def test_startup_seeds_roles_and_reports(file_config, notifier):
    app = build_application(config=file_config, deliver=notifier)
    try:
        report = app.startup(start_workers=False)
        names = {
            row["name"] for row in app.db.sqlite.execute("SELECT name FROM roles")
        }
    finally:
        app.shutdown()

    assert report == SyncReport()
    assert names == {"ADMIN_ROLE", "USER_ROLE"}


def test_admin_promotion_waits_for_registration(file_config, notifier, caplog):
    app = build_application(config=file_config, deliver=notifier)
    try:
        with caplog.at_level(logging.WARNING):
            app.startup(start_workers=False)
        assert any(
            getattr(r, "event", None) == "ADMIN_PROMOTION_PENDING" for r in caplog.records
        )
        ada = app.services["auth_service"].register(make_registration()).identity
        assert app.services["role_service"].resolve_role(ada.id) == RoleName.USER_ROLE
    finally:
        app.shutdown()

    # Next start finds the registered administrator and reconciles the projection.
    app = build_application(config=file_config, deliver=notifier)
    try:
        report = app.startup(start_workers=False)
        assert app.services["role_service"].resolve_role(ada.id) == RoleName.ADMIN_ROLE
    finally:
        app.shutdown()

    assert report.total == 1
    assert report.errors == 0


def test_startup_starts_and_shutdown_stops_workers(file_config, notifier):
    app = build_application(config=file_config, deliver=notifier)
    app.startup(start_workers=True)
    dispatcher = app.services["notification_dispatcher"]
    assert dispatcher.is_running

    app.shutdown()
    app.shutdown()

    assert not dispatcher.is_running
