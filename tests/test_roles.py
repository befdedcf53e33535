import itertools
import sqlite3

import pytest

from opinions_identity.errors import InternalFailure, NotFound, ValidationError
from opinions_identity.models.enums import RoleName
from opinions_identity.services.role_service import RoleService


def _row_count(db, table):
    return db.sqlite.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()["cnt"]


def test_seed_roles_is_idempotent(services, db):
    role_service = services["role_service"]
    first = {r.name: r.id for r in role_service.seed_roles()}
    second = {r.name: r.id for r in role_service.seed_roles()}

    assert first == second
    assert set(first) == {RoleName.ADMIN_ROLE, RoleName.USER_ROLE}
    assert _row_count(db, "roles") == 2


def test_ensure_default_role_rejects_unknown_names(services):
    with pytest.raises(ValidationError):
        services["role_service"].ensure_default_role("SUPERUSER")


def test_ensure_role_is_idempotent_with_zero_writes(services, registered, db):
    identity = registered()
    role_service = services["role_service"]
    before = services["role_repository"].get_assignment(identity.id)
    changes_before = db.sqlite.total_changes

    again = role_service.ensure_role(identity.id, RoleName.USER_ROLE)

    assert again == before
    assert db.sqlite.total_changes == changes_before


def test_role_change_replaces_the_single_assignment(services, registered):
    identity = registered()
    repo = services["role_repository"]
    before = repo.get_assignment(identity.id)

    after = services["role_service"].ensure_role(identity.id, RoleName.ADMIN_ROLE)

    assert after.role_name == RoleName.ADMIN_ROLE
    assert after.id != before.id
    assert len(after.id) <= 16
    assert after.id.startswith("ur_")
    assert repo.count_assignments(identity.id) == 1


def test_assignment_id_collision_is_retried(services, registered, db, logger, clock):
    first = registered()
    second = registered(username="grace", email="grace@example.com")
    taken = services["role_repository"].get_assignment(first.id).id

    ids = itertools.chain([taken, taken], itertools.repeat("ur_fresh0000001"))
    role_service = RoleService(
        role_repo=services["role_repository"],
        identity_repo=services["identity_repository"],
        db=db,
        logger=logger,
        clock=clock,
        id_generator=lambda: next(ids),
    )

    assignment = role_service.ensure_role(second.id, RoleName.ADMIN_ROLE)

    assert assignment.id == "ur_fresh0000001"
    assert assignment.role_name == RoleName.ADMIN_ROLE
    assert services["role_repository"].get_assignment(first.id).id == taken


def test_exhausted_id_attempts_raise_internal_failure(services, registered, db, logger):
    first = registered()
    second = registered(username="grace", email="grace@example.com")
    taken = services["role_repository"].get_assignment(first.id).id

    role_service = RoleService(
        role_repo=services["role_repository"],
        identity_repo=services["identity_repository"],
        db=db,
        logger=logger,
        id_generator=lambda: taken,
        max_id_attempts=3,
    )
    with pytest.raises(InternalFailure) as excinfo:
        role_service.ensure_role(second.id, RoleName.ADMIN_ROLE)
    assert isinstance(excinfo.value.original_error, sqlite3.IntegrityError)
    assert services["role_repository"].get_assignment(second.id).role_name == RoleName.USER_ROLE


def test_assignment_ids_longer_than_16_are_refused_by_the_store(services, registered, db, logger):
    identity = registered()
    role_service = RoleService(
        role_repo=services["role_repository"],
        identity_repo=services["identity_repository"],
        db=db,
        logger=logger,
        id_generator=lambda: "ur_" + "x" * 20,
    )
    with pytest.raises(InternalFailure):
        role_service.ensure_role(identity.id, RoleName.ADMIN_ROLE)


def test_ensure_role_for_missing_identity(services):
    with pytest.raises(NotFound):
        services["role_service"].ensure_role("missing", RoleName.USER_ROLE)


def test_ensure_role_for_unseeded_role(registered, services, db):
    identity = registered()
    with db.write_lock:
        db.sqlite.execute("DELETE FROM user_roles")
        db.sqlite.execute("DELETE FROM roles WHERE name = 'ADMIN_ROLE'")
        db.sqlite.commit()
    with pytest.raises(NotFound):
        services["role_service"].ensure_role(identity.id, RoleName.ADMIN_ROLE)


def test_promote_to_role_by_email_and_id(services, registered, db):
    identity = registered()
    role_service = services["role_service"]

    by_email = role_service.promote_to_role("ADA@example.com", RoleName.ADMIN_ROLE)
    assert by_email.role_name == RoleName.ADMIN_ROLE

    by_id = role_service.promote_to_role(identity.id, RoleName.USER_ROLE)
    assert by_id.role_name == RoleName.USER_ROLE

    audited = db.sqlite.execute(
        "SELECT COUNT(*) AS cnt FROM audit_log WHERE action = 'ROLE_ASSIGNED' AND entity_id = ?",
        (identity.id,),
    ).fetchone()["cnt"]
    assert audited == 3  # registration, promotion, demotion


def test_promote_unknown_identity(services):
    with pytest.raises(NotFound):
        services["role_service"].promote_to_role("ghost@example.com", RoleName.ADMIN_ROLE)
