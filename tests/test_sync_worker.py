import json
import time

from opinions_identity.models.auth_models import SyncReport
from opinions_identity.services.sync_worker import SyncWorkerService

from conftest import make_registration


def _queue(db):
    return [
        dict(row)
        for row in db.sqlite.execute(
            "SELECT id, entity_id, status, attempts, error_message FROM sync_queue ORDER BY id"
        )
    ]


def _enqueue(db, payload, table_name="identity_projections", entity_id="x"):
    with db.write_lock:
        db.sqlite.execute(
            "INSERT INTO sync_queue (table_name, operation, entity_id, payload) "
            "VALUES (?, 'upsert', ?, ?)",
            (table_name, entity_id, payload),
        )
        db.sqlite.commit()


def test_drain_applies_registration_outbox_locally(services, registered, db):
    ada = registered()
    worker = services["sync_worker_service"]

    assert worker.drain_once() == 1

    assert [row["status"] for row in _queue(db)] == ["synced"]
    projection = services["projection_repository"].get_by_source_id(ada.id)
    assert projection.username == "ada"
    assert db.get_pending_sync_count() == 0
    assert services["projection_sync_service"].synchronize() == SyncReport(unchanged=1, total=1)


def test_newest_change_wins_and_supersedes_older_rows(services, registered, db):
    ada = registered()
    admin = services["identity_admin_service"]
    admin.deactivate(ada.id)
    admin.activate(ada.id)
    admin.deactivate(ada.id)
    worker = services["sync_worker_service"]

    assert worker.drain_once() == 1

    statuses = [r["status"] for r in _queue(db)]
    assert statuses == ["superseded", "superseded", "superseded", "synced"]
    assert worker.drain_once() == 0
    assert services["projection_repository"].get_by_source_id(ada.id).is_active is False


def test_malformed_payload_fails_permanently(services, db):
    _enqueue(db, "{not json")
    assert services["sync_worker_service"].drain_once() == 0

    (row,) = _queue(db)
    assert row["status"] == "permanently_failed"
    assert "Malformed JSON" in row["error_message"]


def test_disallowed_table_is_never_replayed(services, db):
    _enqueue(db, json.dumps({"source_id": "x"}), table_name="identities")
    worker = services["sync_worker_service"]
    for _ in range(5):
        worker.drain_once()

    (row,) = _queue(db)
    assert row["status"] == "permanently_failed"
    assert row["attempts"] == 5


def test_remote_failures_retry_then_give_up(online_services, online_auth, online_db, fake_supabase):
    online_auth.register(make_registration())
    worker = online_services["sync_worker_service"]
    fake_supabase.fail = True

    for expected_attempts in range(1, 5):
        assert worker.drain_once() == 0
        (row,) = _queue(online_db)
        assert row["status"] == "pending"
        assert row["attempts"] == expected_attempts

    worker.drain_once()
    (row,) = _queue(online_db)
    assert row["status"] == "permanently_failed"


def test_retried_row_is_superseded_by_a_newer_change(online_services, online_auth, online_db, fake_supabase):
    ada = online_auth.register(make_registration()).identity
    worker = online_services["sync_worker_service"]
    fake_supabase.fail = True
    worker.drain_once()

    online_services["identity_admin_service"].deactivate(ada.id)
    fake_supabase.fail = False

    assert worker.drain_once() == 1
    assert [r["status"] for r in _queue(online_db)] == ["superseded", "synced"]
    assert fake_supabase.rows()[0]["is_active"] is False


def test_remote_replay_pushes_to_supabase(online_services, online_auth, online_db, fake_supabase):
    result = online_auth.register(make_registration())
    assert online_services["sync_worker_service"].drain_once() == 1

    (remote,) = fake_supabase.rows()
    assert remote["source_id"] == result.identity.id
    assert remote["email"] == "ada@example.com"
    local = online_db.sqlite.execute(
        "SELECT * FROM identity_projections WHERE source_id = ?", (result.identity.id,)
    ).fetchone()
    assert local["id"] == remote["id"]


def test_background_thread_drains_the_queue(services, registered, db):
    registered()
    worker = services["sync_worker_service"]
    worker.start()
    try:
        deadline = time.monotonic() + 5.0
        while db.get_pending_sync_count() and time.monotonic() < deadline:
            time.sleep(0.02)
        assert db.get_pending_sync_count() == 0
        assert worker.is_running
    finally:
        worker.stop()
    assert not worker.is_running


def test_periodic_reconciliation_repairs_missing_projections(services, registered, db, config, logger):
    ada = registered()
    with db.write_lock:
        db.sqlite.execute("DELETE FROM sync_queue")
        db.sqlite.commit()
    worker = SyncWorkerService(
        db=db,
        projection_repo=services["projection_repository"],
        config=config.model_copy(update={"PROJECTION_RECONCILE_INTERVAL_S": 0.01}),
        logger=logger,
        synchronizer=services["projection_sync_service"],
    )
    projections = services["projection_repository"]

    worker.start()
    try:
        deadline = time.monotonic() + 5.0
        while projections.get_by_source_id(ada.id) is None and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        worker.stop()

    assert projections.get_by_source_id(ada.id) is not None


def test_reconciliation_is_disabled_by_default(services, registered, db):
    ada = registered()
    with db.write_lock:
        db.sqlite.execute("DELETE FROM sync_queue")
        db.sqlite.commit()
    worker = services["sync_worker_service"]

    worker.start()
    try:
        time.sleep(0.3)
    finally:
        worker.stop()

    assert services["projection_repository"].get_by_source_id(ada.id) is None
