from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user_api
from ..crud import (
    count_unread_notifications,
    delete_notification,
    list_notifications,
    mark_all_notifications_read,
    mark_notification_read,
)
from ..db import get_db
from ..models import User
from ..schemas import NotificationOut, UnreadCountOut

router = APIRouter()


@router.get("/", response_model=List[NotificationOut])
def api_list_notifications(
    unread_only: bool = Query(False),
    type: str | None = Query(None, description="report / task / system"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_api),
):
    try:
        return list_notifications(db, user_id=int(user.id), unread_only=unread_only, type=type, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/unread-count", response_model=UnreadCountOut)
def api_unread_count(db: Session = Depends(get_db), user: User = Depends(get_current_user_api)):
    return UnreadCountOut(unread=count_unread_notifications(db, user_id=int(user.id)))


@router.post("/read-all")
def api_mark_all_read(db: Session = Depends(get_db), user: User = Depends(get_current_user_api)):
    return {"updated": mark_all_notifications_read(db, user_id=int(user.id))}


@router.post("/{notification_id}/read", response_model=NotificationOut)
def api_mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_api),
):
    n = mark_notification_read(db, user_id=int(user.id), notification_id=int(notification_id))
    if not n:
        raise HTTPException(status_code=404, detail="Not found")
    return n


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_api),
):
    if not delete_notification(db, user_id=int(user.id), notification_id=int(notification_id)):
        raise HTTPException(status_code=404, detail="Not found")
    return None
