"""Shared fixtures for the identity core test suite."""

from __future__ import annotations

import os

# Keep test runs from writing a rotating log file into the working tree.
os.environ["LOG_FILE"] = ""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from opinions_identity.config import AppConfig
from opinions_identity.database import DatabaseManager
from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import (
    NotificationJob,
    RegistrationInput,
    ServiceResult,
)
from opinions_identity.models.enums import NotificationKind
from opinions_identity.schema import initialize_schema
from opinions_identity.services import create_services
from opinions_identity.services.auth_service import AuthService


STRONG_PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class MutableClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current: datetime = (start or datetime.now(timezone.utc)).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Delivery callable that records every job instead of sending email."""

    def __init__(self) -> None:
        self.jobs: list[NotificationJob] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, job: NotificationJob) -> ServiceResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append(job)
        return ServiceResult(success=True)

    def of_kind(self, kind: NotificationKind) -> list[NotificationJob]:
        return [job for job in self.jobs if job.kind == kind]

    def last_token(self, kind: NotificationKind) -> str:
        jobs = self.of_kind(kind)
        assert jobs, f"no {kind} notification recorded"
        token = jobs[-1].token
        assert token is not None
        return token


class SynchronousDispatcher:
    """Dispatcher double that delivers on the calling thread."""

    def __init__(self, deliver: RecordingNotifier) -> None:
        self._deliver = deliver

    def dispatch(self, job: NotificationJob) -> bool:
        self._deliver(job)
        return True


class _Response:
    def __init__(self, data: Any) -> None:
        self.data = data


class _FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str) -> None:
        self._client = client
        self._table = table
        self._op = "select"
        self._filters: list[tuple[str, object]] = []
        self._single = False
        self._payload: dict[str, object] = {}
        self._on_conflict = "id"

    def select(self, *_columns: str) -> "_FakeQuery":
        self._op = "select"
        return self

    def eq(self, column: str, value: object) -> "_FakeQuery":
        self._filters.append((column, value))
        return self

    def maybe_single(self) -> "_FakeQuery":
        self._single = True
        return self

    def upsert(self, payload: dict[str, object], on_conflict: str = "id") -> "_FakeQuery":
        self._op = "upsert"
        self._payload = dict(payload)
        self._on_conflict = on_conflict
        return self

    def execute(self) -> Optional[_Response]:
        if self._client.fail:
            raise ConnectionError("projection store unavailable")
        rows = self._client.tables.setdefault(self._table, {})

        if self._op == "upsert":
            self._client.upsert_calls += 1
            key = str(self._payload[self._on_conflict])
            now = datetime.now(timezone.utc).isoformat()
            row = rows.get(key) or {"id": uuid.uuid4().hex, "created_at": now}
            row = {**row, **self._payload, "updated_at": now}
            rows[key] = row
            return _Response([dict(row)])

        matched = [
            dict(row) for row in rows.values()
            if all(row.get(col) == val for col, val in self._filters)
        ]
        if self._single:
            return _Response(matched[0]) if matched else None
        return _Response(matched)


class FakeSupabase:
    """In-memory stand-in for the Supabase client's table query builder."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, object]]] = {}
        self.fail: bool = False
        self.upsert_calls: int = 0

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)

    def rows(self, name: str = "identity_projections") -> list[dict[str, object]]:
        return list(self.tables.get(name, {}).values())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def config() -> AppConfig:
    return AppConfig(
        DATABASE_PATH=":memory:",
        JWT_SECRET="test-secret-key-with-enough-length-for-hs256",
        JWT_EXPIRES_IN="30m",
        PASSWORD_HASH_ITERATIONS=1000,
        ADMIN_EMAIL="",
        NOTIFICATION_QUEUE_SIZE=10,
        SYNC_WORKER_INTERVAL_S=0.05,
        LOG_FILE="",
    )


@pytest.fixture()
def logger() -> StructuredLogger:
    return StructuredLogger(name="identity.tests", level=logging.DEBUG, log_file="")


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


def _open_db(logger: StructuredLogger, supabase_client: Any = None) -> DatabaseManager:
    db = DatabaseManager(
        sqlite_path=":memory:",
        supabase_url="",
        supabase_key="",
        logger=logger,
        supabase_client=supabase_client,
    )
    initialize_schema(db.sqlite, logger)
    return db


@pytest.fixture()
def db(logger: StructuredLogger):
    manager = _open_db(logger)
    yield manager
    manager.close()


@pytest.fixture()
def online_db(logger: StructuredLogger, fake_supabase: FakeSupabase):
    manager = _open_db(logger, supabase_client=fake_supabase)
    yield manager
    manager.close()


def _build_services(db, config, clock, notifier, logger):
    container = create_services(
        db=db, config=config, clock=clock, deliver=notifier, logger=logger,
    )
    container["role_service"].seed_roles()
    return container


@pytest.fixture()
def services(db, config, clock, notifier, logger):
    container = _build_services(db, config, clock, notifier, logger)
    yield container
    container["notification_dispatcher"].stop(timeout=2.0)
    container["sync_worker_service"].stop()


@pytest.fixture()
def online_services(online_db, config, clock, notifier, logger):
    container = _build_services(online_db, config, clock, notifier, logger)
    yield container
    container["notification_dispatcher"].stop(timeout=2.0)
    container["sync_worker_service"].stop()


def _sync_auth(container, db, notifier, logger, clock) -> AuthService:
    return AuthService(
        identity_repo=container["identity_repository"],
        token_service=container["token_service"],
        role_service=container["role_service"],
        session_issuer=container["session_issuer"],
        password_hasher=container["auth_service"]._hasher,
        dispatcher=SynchronousDispatcher(notifier),
        db=db,
        logger=logger,
        clock=clock,
    )


@pytest.fixture()
def auth(services, db, notifier, logger, clock) -> AuthService:
    """AuthService whose notifications are delivered synchronously."""
    return _sync_auth(services, db, notifier, logger, clock)


@pytest.fixture()
def online_auth(online_services, online_db, notifier, logger, clock) -> AuthService:
    return _sync_auth(online_services, online_db, notifier, logger, clock)


def make_registration(**overrides: object) -> RegistrationInput:
    data: dict[str, object] = {
        "name": "Ada",
        "surname": "Lovelace",
        "username": "ada",
        "email": "ada@example.com",
        "password": STRONG_PASSWORD,
    }
    data.update(overrides)
    return RegistrationInput(**data)


@pytest.fixture()
def registered(auth, notifier):
    """Factory: register an identity and optionally verify its email."""

    def _register(verify: bool = True, **overrides: object):
        result = auth.register(make_registration(**overrides))
        if verify:
            token = notifier.last_token(NotificationKind.VERIFICATION)
            auth.verify_email(token)
        return result.identity

    return _register


@pytest.fixture()
def registered_online(online_auth, notifier):
    """Same as ``registered`` against the Supabase-backed services."""

    def _register(verify: bool = True, **overrides: object):
        result = online_auth.register(make_registration(**overrides))
        if verify:
            online_auth.verify_email(notifier.last_token(NotificationKind.VERIFICATION))
        return result.identity

    return _register
