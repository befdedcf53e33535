import pytest

from opinions_identity.errors import NotFound
from opinions_identity.models.auth_models import SyncReport


def _projection_rows(db):
    return {
        row["source_id"]: dict(row)
        for row in db.sqlite.execute("SELECT * FROM identity_projections")
    }


def test_first_pass_creates_then_second_pass_is_unchanged(services, registered, db):
    ada = registered()
    grace = registered(username="grace", email="grace@example.com")
    sync = services["projection_sync_service"]

    first = sync.synchronize()
    assert first == SyncReport(created=2, updated=0, unchanged=0, errors=0, total=2)

    second = sync.synchronize()
    assert second == SyncReport(created=0, updated=0, unchanged=2, errors=0, total=2)

    rows = _projection_rows(db)
    assert set(rows) == {ada.id, grace.id}
    assert rows[ada.id]["username"] == "ada"
    assert rows[grace.id]["email"] == "grace@example.com"


def test_one_existing_one_missing(services, registered, db, clock):
    ada = registered()
    sync = services["projection_sync_service"]
    sync.synchronize()

    registered(username="grace", email="grace@example.com")
    # Ada's name changes in the authoritative store only.
    with db.write_lock:
        db.sqlite.execute("UPDATE identities SET name = 'Augusta' WHERE id = ?", (ada.id,))
        db.sqlite.commit()

    report = sync.synchronize()

    assert report == SyncReport(created=1, updated=1, unchanged=0, errors=0, total=2)
    assert _projection_rows(db)[ada.id]["name"] == "Augusta"
    assert sync.synchronize() == SyncReport(unchanged=2, total=2)


def test_deactivation_reaches_the_projection(services, registered, db):
    ada = registered()
    sync = services["projection_sync_service"]
    sync.synchronize()

    services["identity_admin_service"].deactivate(ada.id)

    assert sync.synchronize().updated == 1
    assert _projection_rows(db)[ada.id]["is_active"] == 0


def test_per_record_failures_are_isolated(services, registered, monkeypatch):
    ada = registered()
    grace = registered(username="grace", email="grace@example.com")
    projections = services["projection_repository"]
    original = projections.upsert

    def _flaky(projection, now=None, strict=False):
        if projection.source_id == ada.id:
            raise RuntimeError("projection store rejected the row")
        return original(projection, now=now, strict=strict)

    monkeypatch.setattr(projections, "upsert", _flaky)

    report = services["projection_sync_service"].synchronize()

    assert report == SyncReport(created=1, updated=0, unchanged=0, errors=1, total=2)
    assert projections.get_by_source_id(grace.id) is not None
    assert projections.get_by_source_id(ada.id) is None


def test_empty_store_reports_zero(services):
    assert services["projection_sync_service"].synchronize() == SyncReport()


def test_ensure_projection_creates_on_first_miss(services, registered):
    ada = registered()
    sync = services["projection_sync_service"]

    created = sync.ensure_projection(ada.id)
    again = sync.ensure_projection(ada.id)

    assert created.source_id == ada.id
    assert again.id == created.id
    assert sync.synchronize() == SyncReport(unchanged=1, total=1)


def test_ensure_projection_recovers_from_a_concurrent_create(services, registered, monkeypatch):
    ada = registered()
    projections = services["projection_repository"]
    original = projections.upsert

    def _racing(projection, now=None, strict=False):
        # Another writer lands first, then this write fails.
        original(projection, now=now, strict=strict)
        raise RuntimeError("duplicate key value violates unique constraint")

    monkeypatch.setattr(projections, "upsert", _racing)

    result = services["projection_sync_service"].ensure_projection(ada.id)
    assert result.source_id == ada.id


def test_ensure_projection_for_unknown_identity(services):
    with pytest.raises(NotFound):
        services["projection_sync_service"].ensure_projection("missing")


def test_find_missing_lists_unprojected_identities(services, registered):
    ada = registered()
    sync = services["projection_sync_service"]
    assert [s.id for s in sync.find_missing()] == [ada.id]

    sync.synchronize()
    assert sync.find_missing() == []


def test_sync_actions_are_audited(services, registered, db):
    registered()
    services["projection_sync_service"].synchronize()
    actions = {
        row["action"]
        for row in db.sqlite.execute("SELECT action FROM audit_log WHERE user_id = 'system'")
    }
    assert "PROJECTION_CREATE" in actions
