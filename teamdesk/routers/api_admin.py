from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_admin_api
from ..db import get_db
from ..meta_settings import (
    REPORT_WEBHOOK_KEY,
    WEBHOOK_KEYS,
    get_webhook_setting,
    toggle_webhook,
    update_webhook_setting,
)
from ..schemas import WebhookSettingOut, WebhookSettingUpdate, WebhookTestOut
from ..utils.time_utils import today_local
from ..webhooks import EVENT_TASK_UPDATED, TaskWebhookData, send_report_webhook, send_task_webhook


router = APIRouter()


def _known_key(key: str) -> str:
    if key not in WEBHOOK_KEYS:
        raise HTTPException(status_code=404, detail="Unknown webhook setting")
    return key


@router.get("/webhooks", response_model=list[WebhookSettingOut])
def api_list_webhooks(db: Session = Depends(get_db), admin=Depends(require_admin_api)):
    return [WebhookSettingOut(**get_webhook_setting(db, k).to_dict()) for k in WEBHOOK_KEYS]


@router.get("/webhooks/{key}", response_model=WebhookSettingOut)
def api_get_webhook(key: str, db: Session = Depends(get_db), admin=Depends(require_admin_api)):
    return WebhookSettingOut(**get_webhook_setting(db, _known_key(key)).to_dict())


@router.put("/webhooks/{key}", response_model=WebhookSettingOut)
def api_update_webhook(
    key: str,
    payload: WebhookSettingUpdate,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    url = (payload.url or "").strip()
    if url and not url.lower().startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="Webhook URL must start with http:// or https://")

    cfg = update_webhook_setting(db, key=_known_key(key), enabled=payload.enabled, url=url or None)
    if cfg is None:
        raise HTTPException(status_code=500, detail="Failed to save webhook setting")
    return WebhookSettingOut(**cfg.to_dict())


@router.post("/webhooks/{key}/toggle", response_model=WebhookSettingOut)
def api_toggle_webhook(
    key: str,
    enabled: bool,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    k = _known_key(key)
    if not toggle_webhook(db, key=k, enabled=enabled):
        raise HTTPException(status_code=500, detail="Failed to save webhook setting")
    return WebhookSettingOut(**get_webhook_setting(db, k).to_dict())


@router.post("/webhooks/{key}/test", response_model=WebhookTestOut)
def api_test_webhook(key: str, db: Session = Depends(get_db), admin=Depends(require_admin_api)):
    """Send a sample event synchronously and report whether it was accepted."""
    k = _known_key(key)
    if k == REPORT_WEBHOOK_KEY:
        sent = send_report_webhook(
            db,
            report_date=today_local(),
            metrics={"total_tasks": 0, "completed_tasks": 0, "pending_tasks": 0, "blocked_tasks": 0, "deleted_tasks": 0},
            message="Test message from Teamdesk",
        )
    else:
        sent = send_task_webhook(
            db,
            TaskWebhookData(
                event_type=EVENT_TASK_UPDATED,
                task_name="Test task",
                status="completed",
                old_status="pending",
                priority="medium",
                user_name=admin.name,
                user_email=admin.email,
                updated_by_name=admin.name,
                updated_by_email=admin.email,
            ),
        )
    return WebhookTestOut(sent=bool(sent), detail={"setting_key": k})
