"""Database-backed application settings.

Settings that admins change at runtime (webhook targets and on/off switches)
live in the `app_meta` key/value table rather than settings.yml. This module
provides typed helpers over that store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .models import AppMeta


logger = logging.getLogger("teamdesk.settings")


# ----------------------------
# Low-level helpers
# ----------------------------


def _get_meta_row(db: Session, key: str) -> AppMeta | None:
    return db.query(AppMeta).filter(AppMeta.key == str(key)).first()


def _set_meta_value(db: Session, key: str, value: str) -> AppMeta:
    k = str(key)
    v = str(value)
    row = _get_meta_row(db, k)
    if row:
        row.value = v
    else:
        row = AppMeta(key=k, value=v)
    db.add(row)
    return row


def _set_json(db: Session, key: str, value: dict) -> AppMeta:
    return _set_meta_value(db, key, json.dumps(value, separators=(",", ":"), sort_keys=True))


# ----------------------------
# Webhook settings
# ----------------------------


TASK_WEBHOOK_KEY = "task_webhook"
REPORT_WEBHOOK_KEY = "daily_report_webhook"

WEBHOOK_KEYS = {
    TASK_WEBHOOK_KEY: "Task webhook notifications",
    REPORT_WEBHOOK_KEY: "Daily performance report webhook",
}


@dataclass
class WebhookConfig:
    setting_key: str
    enabled: bool = True
    url: str = ""
    description: str = ""
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _default_url(key: str) -> str:
    s = get_settings()
    if key == REPORT_WEBHOOK_KEY:
        return str(s.webhooks.report_url or "").strip()
    return str(s.webhooks.task_url or "").strip()


def default_webhook_setting(key: str) -> WebhookConfig:
    """Enabled webhook pointing at the configured default URL."""
    return WebhookConfig(
        setting_key=key,
        enabled=True,
        url=_default_url(key),
        description=WEBHOOK_KEYS.get(key, ""),
    )


def _check_key(key: str) -> str:
    k = str(key or "").strip()
    if k not in WEBHOOK_KEYS:
        raise ValueError("Unknown webhook setting")
    return k


def get_webhook_setting(db: Session, key: str = TASK_WEBHOOK_KEY) -> WebhookConfig:
    """Return the stored webhook setting.

    A missing row, a read failure, or an unparseable value all fall back to the
    enabled default so outbound notifications keep flowing.
    """
    k = _check_key(key)
    try:
        row = _get_meta_row(db, k)
    except SQLAlchemyError:
        logger.exception("Error fetching webhook setting %s", k)
        return default_webhook_setting(k)

    if row is None:
        logger.warning("No webhook settings found for %s, using default enabled webhook", k)
        return default_webhook_setting(k)

    try:
        raw = json.loads(row.value)
        if not isinstance(raw, dict):
            raise ValueError("webhook setting must be a JSON object")
    except ValueError:
        logger.exception("Invalid webhook setting stored for %s", k)
        return default_webhook_setting(k)

    return WebhookConfig(
        setting_key=k,
        enabled=bool(raw.get("enabled", True)),
        url=str(raw.get("url") or "").strip(),
        description=str(raw.get("description") or WEBHOOK_KEYS[k]),
        updated_at=row.updated_at,
    )


def update_webhook_setting(
    db: Session,
    *,
    key: str = TASK_WEBHOOK_KEY,
    enabled: bool,
    url: str | None = None,
) -> WebhookConfig | None:
    """Upsert a webhook setting. Keeps the current URL when `url` is empty.

    Returns None when the write fails.
    """
    k = _check_key(key)
    current = get_webhook_setting(db, k)
    new_url = str(url or "").strip() or current.url or _default_url(k)

    try:
        row = _set_json(
            db,
            k,
            {"enabled": bool(enabled), "url": new_url, "description": WEBHOOK_KEYS[k]},
        )
        db.commit()
        db.refresh(row)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error updating webhook setting %s", k)
        return None

    return WebhookConfig(
        setting_key=k,
        enabled=bool(enabled),
        url=new_url,
        description=WEBHOOK_KEYS[k],
        updated_at=row.updated_at,
    )


def toggle_webhook(db: Session, *, key: str = TASK_WEBHOOK_KEY, enabled: bool) -> bool:
    return update_webhook_setting(db, key=key, enabled=enabled) is not None
