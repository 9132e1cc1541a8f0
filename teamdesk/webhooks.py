from __future__ import annotations

import json
import logging
import queue
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from urllib import parse, request
from urllib.error import HTTPError, URLError

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .meta_settings import REPORT_WEBHOOK_KEY, TASK_WEBHOOK_KEY, get_webhook_setting
from .models import Project, User

logger = logging.getLogger("teamdesk.webhooks")

WEBHOOK_SOURCE = "team_management_system"

# ---- Task webhook event types (stable, sent over the wire) ------------------------

EVENT_TASK_CREATED = "task_created"
EVENT_TASK_UPDATED = "task_updated"
EVENT_TASK_DELETED = "task_deleted"
EVENT_DAILY_TASK_CREATED = "daily_task_created"
EVENT_DAILY_TASK_UPDATED = "daily_task_updated"
EVENT_DAILY_TASK_DELETED = "daily_task_deleted"
EVENT_DAILY_REPORT = "daily_performance_report"

CREATED_EVENTS = {EVENT_TASK_CREATED, EVENT_DAILY_TASK_CREATED}
UPDATED_EVENTS = {EVENT_TASK_UPDATED, EVENT_DAILY_TASK_UPDATED}
DELETED_EVENTS = {EVENT_TASK_DELETED, EVENT_DAILY_TASK_DELETED}

TASK_EVENT_TYPES = CREATED_EVENTS | UPDATED_EVENTS | DELETED_EVENTS


@dataclass
class TaskWebhookData:
    event_type: str
    id: int | None = None
    task_name: str | None = None
    description: str | None = None
    status: str | None = None
    old_status: str | None = None
    priority: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    user_email: str | None = None
    created_by: int | None = None
    created_by_name: str | None = None
    created_by_email: str | None = None
    updated_by: int | None = None
    updated_by_name: str | None = None
    updated_by_email: str | None = None
    deleted_by: int | None = None
    deleted_by_name: str | None = None
    deleted_by_email: str | None = None
    project_id: int | None = None
    project_name: str | None = None
    due_date: datetime | None = None
    task_date: date | None = None
    progress: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _iso(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return v


def _now_iso() -> str:
    return datetime.utcnow().replace(tzinfo=None).isoformat() + "Z"


def _truncate(s: str, max_len: int) -> str:
    s2 = str(s or "")
    if len(s2) <= max_len:
        return s2
    if max_len <= 3:
        return s2[:max_len]
    return s2[: max_len - 3] + "..."


def _safe_url_for_log(url: str) -> str:
    """Return a log-safe URL: no query string, token-like path segments redacted."""

    raw = str(url or "")
    tokenish = re.compile(r"^[A-Za-z0-9._~-]{24,}$")
    hexish = re.compile(r"^[a-fA-F0-9-]{32,}$")

    p = parse.urlparse(raw)
    if not (p.scheme and p.netloc):
        return _truncate(raw, 200)

    path = p.path or ""
    parts = [seg for seg in path.split("/") if seg]
    redacted = ["<redacted>" if (tokenish.match(seg) or hexish.match(seg)) else seg for seg in parts]
    safe_path = ("/" + "/".join(redacted)) if path.startswith("/") else "/".join(redacted)
    return _truncate(f"{p.scheme}://{p.netloc}{safe_path}", 200)


def _format_exception(e: Exception, *, max_len: int = 800) -> str:
    name = type(e).__name__
    msg = str(e)
    base = f"{name}: {msg}" if msg else name
    return _truncate(base, int(max_len))


# ---- Lookups used to enrich payloads ----------------------------------------------


def get_user_data(db: Session, user_id: int | None) -> dict[str, str] | None:
    """Return {'name', 'email'} for a user of any role, or None."""
    if not user_id:
        return None
    try:
        user = db.query(User).filter(User.id == int(user_id)).first()
    except SQLAlchemyError:
        logger.exception("Error fetching user data for webhook")
        return None
    if not user:
        return None
    return {"name": user.name, "email": user.email}


def get_project_data(db: Session, project_id: int | None) -> dict[str, str] | None:
    if not project_id:
        return None
    try:
        project = db.query(Project).filter(Project.id == int(project_id)).first()
    except SQLAlchemyError:
        logger.exception("Error fetching project data for webhook")
        return None
    if not project:
        return None
    return {"name": project.name}


# ---- Payloads ---------------------------------------------------------------------


def build_task_webhook_payload(data: TaskWebhookData) -> dict[str, Any]:
    """Build the outbound JSON body for a task event.

    People are identified by name and email only; internal user ids are not sent.
    """
    et = str(data.event_type or "").strip().lower()
    if et not in TASK_EVENT_TYPES:
        raise ValueError("Invalid webhook event_type")

    payload: dict[str, Any] = {
        "task_id": data.id,
        "task_name": data.task_name,
        "description": data.description,
        "status": data.status,
        "priority": data.priority,
        "assigned_to_name": data.user_name,
        "assigned_to_email": data.user_email,
        "project_name": data.project_name,
        "due_date": _iso(data.due_date),
        "task_date": _iso(data.task_date),
        "progress": data.progress,
        "event_type": et,
        "created_at": _iso(data.created_at),
        "updated_at": _iso(data.updated_at),
        "timestamp": _now_iso(),
        "source": WEBHOOK_SOURCE,
    }

    if et in CREATED_EVENTS:
        payload["created_by"] = data.created_by_name
        payload["created_by_email"] = data.created_by_email
    elif et in UPDATED_EVENTS:
        payload["old_status"] = data.old_status
        payload["new_status"] = data.status
        payload["updated_by"] = data.updated_by_name
        payload["updated_by_email"] = data.updated_by_email
    else:
        payload["deleted_by"] = data.deleted_by_name
        payload["deleted_by_email"] = data.deleted_by_email

    return payload


def build_report_webhook_payload(*, report_date: date, metrics: dict[str, int], message: str) -> dict[str, Any]:
    return {
        "event_type": EVENT_DAILY_REPORT,
        "report_date": report_date.isoformat(),
        "metrics": dict(metrics),
        "message": message,
        "timestamp": _now_iso(),
        "source": WEBHOOK_SOURCE,
    }


# ---- HTTP -------------------------------------------------------------------------


def _http_request(
    *,
    url: str,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    data: bytes | None = None,
    timeout: int = 10,
) -> tuple[int, str]:
    # Webhook URLs are admin-provided; never follow file:/ or custom schemes.
    parsed = parse.urlparse(str(url))
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Invalid webhook URL")

    hdrs = {"User-Agent": "Teamdesk"}
    if headers:
        for k, v in headers.items():
            if k and v is not None:
                hdrs[str(k)] = str(v)
    req = request.Request(url=str(url), data=data, headers=hdrs, method=str(method).upper())

    safe_url = _safe_url_for_log(str(url))
    try:
        with request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            body = resp.read() or b""
            status = int(getattr(resp, "status", 200))
            text = body.decode("utf-8", errors="replace")
    except HTTPError as e:
        status = int(getattr(e, "code", 0) or 0)
        body = e.read() or b""
        snippet = _truncate(body.decode("utf-8", errors="replace").strip(), 300)
        raise RuntimeError(f"HTTP {status} from {safe_url}: {snippet}") from None
    except URLError as e:
        reason = getattr(e, "reason", None)
        raise RuntimeError(f"Request to {safe_url} failed: {reason or e}") from None
    except OSError as e:
        raise RuntimeError(f"Request to {safe_url} failed: {e}") from None

    if status < 200 or status >= 300:
        snippet = _truncate(text.strip(), 300)
        raise RuntimeError(f"HTTP {status} from {safe_url}: {snippet}")

    return status, text


def post_json(url: str, payload: dict[str, Any]) -> bool:
    """POST a JSON payload. Returns True on a 2xx response; never raises."""
    timeout = int(get_settings().webhooks.timeout_seconds)
    try:
        status, _ = _http_request(
            url=url,
            headers={"Content-Type": "application/json"},
            data=json.dumps(payload).encode("utf-8"),
            timeout=timeout,
        )
    except Exception as e:
        logger.error(
            "Failed to send webhook (%s) to %s: %s",
            payload.get("event_type"),
            _safe_url_for_log(url),
            _format_exception(e),
        )
        return False

    logger.info("Webhook %s delivered to %s (HTTP %s)", payload.get("event_type"), _safe_url_for_log(url), status)
    return True


def _resolve_webhook_url(db: Session, key: str) -> str | None:
    setting = get_webhook_setting(db, key)
    if not setting.enabled:
        logger.debug("Webhook %s is disabled, skipping notification", key)
        return None
    if not setting.url:
        logger.warning("Webhook %s is enabled but no URL is configured", key)
        return None
    return setting.url


def send_task_webhook(db: Session, data: TaskWebhookData) -> bool:
    """Synchronously deliver a task event. Returns success; never raises."""
    try:
        url = _resolve_webhook_url(db, TASK_WEBHOOK_KEY)
        if not url:
            return False
        payload = build_task_webhook_payload(data)
    except Exception:
        logger.exception("Error preparing task webhook")
        return False
    return post_json(url, payload)


def send_report_webhook(db: Session, *, report_date: date, metrics: dict[str, int], message: str) -> bool:
    try:
        url = _resolve_webhook_url(db, REPORT_WEBHOOK_KEY)
    except Exception:
        logger.exception("Error reading report webhook settings")
        return False
    if not url:
        return False
    payload = build_report_webhook_payload(report_date=report_date, metrics=metrics, message=message)
    return post_json(url, payload)


# ---- Async delivery ---------------------------------------------------------------


@dataclass(frozen=True)
class _WebhookJob:
    url: str
    payload: dict = field(default_factory=dict)


class _AsyncWebhookDispatcher:
    def __init__(self, *, max_workers: int = 2, queue_size: int = 500):
        self._q: queue.Queue[_WebhookJob | None] = queue.Queue(maxsize=int(queue_size))
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        for i in range(max(1, int(max_workers))):
            t = threading.Thread(target=self._worker, name=f"teamdesk-webhook-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, job: _WebhookJob) -> bool:
        if self._stop.is_set():
            return False
        try:
            self._q.put(job, block=False)
            return True
        except queue.Full:
            return False

    def shutdown(self) -> None:
        self._stop.set()
        for _ in self._threads:
            try:
                self._q.put_nowait(None)
            except queue.Full:
                break

    def wait_for_idle(self, *, timeout: float = 5.0) -> bool:
        end = time.monotonic() + float(timeout)
        while time.monotonic() < end:
            if self._q.unfinished_tasks == 0:
                return True
            time.sleep(0.05)
        return self._q.unfinished_tasks == 0

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._q.get(timeout=0.5)
            except queue.Empty:
                continue

            if job is None:
                self._q.task_done()
                break

            try:
                post_json(job.url, job.payload)
            except Exception:
                logger.exception("Unhandled exception in webhook worker")
            finally:
                self._q.task_done()


_DISPATCHER: _AsyncWebhookDispatcher | None = None
_DISPATCHER_LOCK = threading.Lock()


def _get_dispatcher() -> _AsyncWebhookDispatcher:
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        if _DISPATCHER is None:
            _DISPATCHER = _AsyncWebhookDispatcher()
        return _DISPATCHER


def shutdown_webhook_dispatcher() -> None:
    global _DISPATCHER
    with _DISPATCHER_LOCK:
        if _DISPATCHER is not None:
            try:
                _DISPATCHER.shutdown()
            finally:
                _DISPATCHER = None


def wait_for_webhook_dispatcher_idle(*, timeout: float = 5.0) -> bool:
    """Test helper to wait for queued webhook sends to finish."""
    d = _DISPATCHER
    if d is None:
        return True
    return bool(d.wait_for_idle(timeout=float(timeout)))


def dispatch_task_webhook(db: Session, data: TaskWebhookData) -> bool:
    """Queue a task event for background delivery.

    Settings are read in the caller's session; only the HTTP call runs on the
    worker thread. Returns True when a job was queued.
    """
    try:
        url = _resolve_webhook_url(db, TASK_WEBHOOK_KEY)
        if not url:
            return False
        payload = build_task_webhook_payload(data)
    except Exception:
        logger.exception("Error preparing task webhook (%s)", data.event_type)
        return False

    if not _get_dispatcher().submit(_WebhookJob(url=url, payload=payload)):
        logger.error("Webhook queue full, dropping %s for task %s", data.event_type, data.id)
        return False
    return True
