import json

import pytest

from opinions_identity.errors import NotFound, ValidationError
from opinions_identity.models.enums import RoleName


def test_get_profile_includes_role_but_no_secrets(services, registered):
    ada = registered()
    profile = services["identity_admin_service"].get_profile(ada.id)

    assert profile.username == "ada"
    assert profile.role == RoleName.USER_ROLE
    assert profile.email_verified is True
    dumped = profile.model_dump()
    assert "password_hash" not in dumped
    assert "email_verification_token" not in dumped


def test_get_profile_unknown_identity(services):
    with pytest.raises(NotFound):
        services["identity_admin_service"].get_profile("missing")


def test_list_identities(services, registered):
    registered()
    registered(username="grace", email="grace@example.com")
    usernames = {s.username for s in services["identity_admin_service"].list_identities()}
    assert usernames == {"ada", "grace"}


def test_deactivate_commits_flag_outbox_and_audit_together(services, registered, db):
    ada = registered()
    admin = services["identity_admin_service"]

    summary = admin.deactivate(ada.id, actor_id="admin-1")

    assert summary.is_active is False
    assert services["identity_repository"].get_by_id(ada.id).is_active is False
    last = db.sqlite.execute(
        "SELECT payload FROM sync_queue WHERE entity_id = ? ORDER BY id DESC LIMIT 1", (ada.id,)
    ).fetchone()
    assert json.loads(last["payload"])["is_active"] is False
    audit = db.sqlite.execute(
        "SELECT user_id FROM audit_log WHERE action = 'IDENTITY_DEACTIVATED' AND entity_id = ?",
        (ada.id,),
    ).fetchone()
    assert audit["user_id"] == "admin-1"


def test_deactivate_is_idempotent(services, registered, db):
    ada = registered()
    admin = services["identity_admin_service"]
    admin.deactivate(ada.id)
    queued = db.get_pending_sync_count()

    admin.deactivate(ada.id)

    assert db.get_pending_sync_count() == queued


def test_activate_restores_login(services, registered, auth):
    from conftest import STRONG_PASSWORD

    ada = registered()
    admin = services["identity_admin_service"]
    admin.deactivate(ada.id)
    admin.activate(ada.id)

    assert auth.login("ada", STRONG_PASSWORD).user.id == ada.id


def test_identities_are_never_deleted(services, registered, db):
    ada = registered()
    services["identity_admin_service"].deactivate(ada.id)
    assert db.sqlite.execute("SELECT COUNT(*) AS cnt FROM identities").fetchone()["cnt"] == 1
    assert not hasattr(services["identity_repository"], "delete")


def test_change_role_delegates_to_role_service(services, registered):
    ada = registered()
    admin = services["identity_admin_service"]

    assignment = admin.change_role(ada.id, "ADMIN_ROLE", actor_id="admin-1")

    assert assignment.role_name == RoleName.ADMIN_ROLE
    assert admin.get_profile(ada.id).role == RoleName.ADMIN_ROLE
    with pytest.raises(ValidationError):
        admin.change_role(ada.id, "ROOT")
