"""Shared pytest fixtures.

`teamdesk.db` builds its engine from settings at import time, so a throwaway
settings file is put in place before any teamdesk module is imported.
"""

import json
import os
import tempfile
from pathlib import Path

_BOOT_DIR = Path(tempfile.mkdtemp(prefix="teamdesk-tests-"))

SETTINGS_TEMPLATE = """
app:
  name: "Teamdesk"
  timezone: "{timezone}"
security:
  jwt_secret: "test-jwt-secret"
database:
  path: "{db_path}"
logging:
  level: "INFO"
  dir: "{log_dir}"
  retention_days: 7
webhooks:
  task_url: "https://hooks.example.test/tasks"
  report_url: "https://hooks.example.test/reports"
  timeout_seconds: 2
report:
  enabled: true
  hour: 20
  minute: 0
  batch_size: 2
  top_performers: 5
realtime:
  poll_seconds: 0.2
  change_retention_hours: 48
  stream_max_seconds: 0.6
""".lstrip()

_boot_settings = _BOOT_DIR / "settings.yml"
_boot_settings.write_text(
    SETTINGS_TEMPLATE.format(timezone="UTC", db_path=_BOOT_DIR / "boot.db", log_dir=_BOOT_DIR / "logs")
)
os.environ["TEAMDESK_SETTINGS"] = str(_boot_settings)

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from teamdesk import webhooks  # noqa: E402
from teamdesk.auth import create_access_token  # noqa: E402
from teamdesk.config import get_settings  # noqa: E402
from teamdesk.crud import create_user  # noqa: E402
from teamdesk.db import Base  # noqa: E402


@pytest.fixture
def settings_tmp(tmp_path, monkeypatch):
    path = tmp_path / "settings.yml"
    path.write_text(
        SETTINGS_TEMPLATE.format(timezone="UTC", db_path=tmp_path / "test.db", log_dir=tmp_path / "logs")
    )
    monkeypatch.setenv("TEAMDESK_SETTINGS", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def make_engine(db_path: str):
    engine = create_engine(
        f"sqlite+pysqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@pytest.fixture
def engine(settings_tmp, tmp_path):
    eng = make_engine(str(tmp_path / "test.db"))
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def webhook_calls(monkeypatch):
    """Record outbound webhook requests instead of hitting the network."""
    calls = []

    def fake_http_request(*, url, headers=None, data=None, method="POST", timeout=10):
        calls.append({"url": url, "method": method, "payload": json.loads(data.decode("utf-8"))})
        return 200, "ok"

    monkeypatch.setattr(webhooks, "_http_request", fake_http_request)
    yield calls
    webhooks.wait_for_webhook_dispatcher_idle(timeout=5.0)


@pytest.fixture
def admin(db):
    return create_user(db, name="Ada Admin", email="ada@example.com", password="password123", role="admin")


@pytest.fixture
def manager(db):
    return create_user(db, name="Pat Manager", email="pat@example.com", password="password123", role="project_manager")


@pytest.fixture
def member(db):
    return create_user(db, name="Mia Member", email="mia@example.com", password="password123")


@pytest.fixture
def other_member(db):
    return create_user(db, name="Omar Member", email="omar@example.com", password="password123")


def auth_headers(user) -> dict:
    token = create_access_token(subject=str(user.id), role=user.role)
    return {"Authorization": f"Bearer {token}"}
