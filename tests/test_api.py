import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from conftest import auth_headers
from teamdesk.db import get_db, get_session_factory
from teamdesk.main import app
from teamdesk.version import APP_VERSION


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "version": APP_VERSION}


def test_login_issues_bearer_token(client, member):
    r = client.post("/api/auth/token", data={"username": "MIA@example.com", "password": "password123"})
    assert r.status_code == 200
    token = r.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "mia@example.com"

    bad = client.post("/api/auth/token", data={"username": "mia@example.com", "password": "nope"})
    assert bad.status_code == 401


def test_inactive_users_are_rejected(client, db, member):
    headers = auth_headers(member)
    member.is_active = False
    db.add(member)
    db.commit()

    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_task_crud_over_http(client, member, other_member):
    r = client.post("/api/tasks/", json={"task_name": "Book venue", "priority": "high"}, headers=auth_headers(member))
    assert r.status_code == 200
    task = r.json()
    assert task["status"] == "pending"
    assert task["user"]["name"] == "Mia Member"

    listed = client.get("/api/tasks/", params={"search": "VENUE"}, headers=auth_headers(member))
    assert [t["id"] for t in listed.json()] == [task["id"]]

    assert client.get(f"/api/tasks/{task['id']}", headers=auth_headers(other_member)).status_code == 403
    assert client.get("/api/tasks/9999", headers=auth_headers(member)).status_code == 404

    r = client.patch(f"/api/tasks/{task['id']}", json={"status": "completed"}, headers=auth_headers(member))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = client.patch(f"/api/tasks/{task['id']}", json={"status": "blocked"}, headers=auth_headers(member))
    assert r.status_code == 400

    assert client.delete(f"/api/tasks/{task['id']}", headers=auth_headers(member)).json() == {"ok": True}


def test_members_cannot_assign_to_others(client, member, other_member):
    r = client.post(
        "/api/tasks/",
        json={"task_name": "Not mine", "user_id": other_member.id},
        headers=auth_headers(member),
    )
    assert r.status_code == 403


def test_daily_task_actions(client, member):
    r = client.post("/api/daily-tasks/", json={"task_name": "Water plants"}, headers=auth_headers(member))
    assert r.status_code == 200
    task_id = r.json()["id"]

    r = client.post(f"/api/daily-tasks/{task_id}/complete", headers=auth_headers(member))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["completed_at"] is not None

    done = client.get("/api/daily-tasks/", params={"status": "completed"}, headers=auth_headers(member))
    assert [t["id"] for t in done.json()] == [task_id]

    assert client.post(f"/api/daily-tasks/{task_id}/explode", headers=auth_headers(member)).status_code == 404


def test_projects_require_manager_for_writes(client, manager, member):
    r = client.post("/api/projects/", json={"name": "Launch"}, headers=auth_headers(member))
    assert r.status_code == 403

    r = client.post("/api/projects/", json={"name": "Launch", "member_ids": [member.id]}, headers=auth_headers(manager))
    assert r.status_code == 201
    assert [m["id"] for m in r.json()["members"]] == [member.id]

    mine = client.get("/api/users/me/projects", headers=auth_headers(member))
    assert [p["name"] for p in mine.json()] == ["Launch"]


def test_reports_and_notifications(client, manager, member):
    client.post("/api/tasks/", json={"task_name": "Ship it", "status": "completed"}, headers=auth_headers(member))

    assert client.get("/api/reports/daily", headers=auth_headers(member)).status_code == 403

    r = client.get("/api/reports/daily", headers=auth_headers(manager))
    assert r.status_code == 200
    body = r.json()
    assert body["total_tasks"] == 1
    assert body["completed_tasks"] == 1
    assert "1. Mia Member: 1/1 completed" in body["message"]

    own = client.get(f"/api/reports/daily/users/{member.id}", headers=auth_headers(member))
    assert own.status_code == 200
    assert [t["task_name"] for t in own.json()["tasks"]] == ["Ship it"]

    sent = client.post("/api/reports/daily/send", headers=auth_headers(manager))
    assert sent.status_code == 200
    assert sent.json()["recipients"] == 2
    assert sent.json()["notifications_created"] == 2

    unread = client.get("/api/notifications/unread-count", headers=auth_headers(member))
    assert unread.json() == {"unread": 1}

    [note] = client.get("/api/notifications/", headers=auth_headers(member)).json()
    assert note["type"] == "report"
    assert client.post(f"/api/notifications/{note['id']}/read", headers=auth_headers(member)).json()["is_read"] is True


def test_admin_webhook_settings(client, admin, member):
    assert client.get("/api/admin/webhooks", headers=auth_headers(member)).status_code == 403

    listed = client.get("/api/admin/webhooks", headers=auth_headers(admin)).json()
    assert {w["setting_key"] for w in listed} == {"task_webhook", "daily_report_webhook"}

    r = client.put(
        "/api/admin/webhooks/task_webhook",
        json={"enabled": True, "url": "ftp://example.test/hook"},
        headers=auth_headers(admin),
    )
    assert r.status_code == 400

    r = client.put(
        "/api/admin/webhooks/task_webhook",
        json={"enabled": True, "url": "https://n8n.example.test/hook"},
        headers=auth_headers(admin),
    )
    assert r.status_code == 200
    assert r.json()["url"] == "https://n8n.example.test/hook"

    r = client.post("/api/admin/webhooks/task_webhook/toggle", params={"enabled": False}, headers=auth_headers(admin))
    assert r.json()["enabled"] is False
    assert r.json()["url"] == "https://n8n.example.test/hook"

    assert client.get("/api/admin/webhooks/slack", headers=auth_headers(admin)).status_code == 404


def test_admin_webhook_test_endpoint(client, admin, webhook_calls):
    r = client.post("/api/admin/webhooks/daily_report_webhook/test", headers=auth_headers(admin))

    assert r.json()["sent"] is True
    assert webhook_calls[-1]["payload"]["event_type"] == "daily_performance_report"


def _sse_frames(body: str) -> list[dict]:
    frames = []
    for block in body.strip().split("\n\n"):
        frame = {}
        for line in block.splitlines():
            key, _, value = line.partition(": ")
            frame[key] = value
        frames.append(frame)
    return frames


def test_daily_task_stream_sends_connected_then_snapshot(client, member):
    created = client.post("/api/daily-tasks/", json={"task_name": "Check backups"}, headers=auth_headers(member))
    task_id = created.json()["id"]

    # The stream closes itself after realtime.stream_max_seconds.
    r = client.get("/api/daily-tasks/stream", headers=auth_headers(member))

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    frames = _sse_frames(r.text)
    assert frames[0]["event"] == "connected"
    assert json.loads(frames[0]["data"]) == {"user_id": member.id}
    assert frames[1]["event"] == "snapshot"
    assert [t["id"] for t in json.loads(frames[1]["data"])["tasks"]] == [task_id]


def test_daily_task_stream_rejects_bad_filters(client, member):
    r = client.get("/api/daily-tasks/stream", params={"status": "bogus"}, headers=auth_headers(member))
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid status"

    r = client.get("/api/daily-tasks/stream", params={"priority": "bogus"}, headers=auth_headers(member))
    assert r.status_code == 400


def test_admin_report_test_uses_app_timezone_date(client, admin, webhook_calls, settings_tmp, monkeypatch):
    from teamdesk.config import get_settings
    from teamdesk.utils import time_utils

    settings_tmp.write_text(settings_tmp.read_text().replace('timezone: "UTC"', 'timezone: "Pacific/Kiritimati"'))
    get_settings.cache_clear()
    # 20:00 UTC is already the next morning at UTC+14.
    monkeypatch.setattr(time_utils, "now_utc", lambda: datetime(2026, 10, 18, 20, 0))

    client.post("/api/admin/webhooks/daily_report_webhook/test", headers=auth_headers(admin))

    assert webhook_calls[-1]["payload"]["report_date"] == "2026-10-19"
