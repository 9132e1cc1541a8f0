from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..auth import get_current_user_api
from ..config import get_settings
from ..crud import (
    create_daily_task,
    delete_daily_task,
    get_daily_task,
    list_daily_tasks,
    mark_daily_task_completed,
    mark_daily_task_pending,
    mark_daily_task_skipped,
    update_daily_task,
)
from ..db import get_db, get_session_factory
from ..realtime import DailyTaskFeed, DailyTaskFilters, Viewer
from ..schemas import DailyTaskCreate, DailyTaskOut, DailyTaskUpdate


router = APIRouter()

logger = logging.getLogger("teamdesk.realtime")


def _filters(
    status: str | None = Query(default=None, description="pending / completed / skipped"),
    member: int | None = Query(default=None, description="Assignee user id"),
    task_date: date | None = Query(default=None),
    priority: str | None = Query(default=None),
    project_id: int | None = Query(default=None),
    search: str | None = Query(default=None),
) -> DailyTaskFilters:
    return DailyTaskFilters(
        status=status,
        member=member,
        task_date=task_date,
        priority=priority,
        project_id=project_id,
        search=search,
    )


@router.get("/", response_model=list[DailyTaskOut])
def api_list_daily_tasks(
    filters: DailyTaskFilters = Depends(_filters),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return list_daily_tasks(db, current_user=current_user, **filters.as_query_kwargs())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/stream")
async def api_daily_tasks_stream(
    request: Request,
    filters: DailyTaskFilters = Depends(_filters),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    current_user=Depends(get_current_user_api),
):
    """Server-Sent Events: `connected`, a `snapshot`, then incremental changes."""
    viewer = Viewer.from_user(current_user)
    feed = DailyTaskFeed(viewer=viewer, filters=filters)

    # Snapshot before the response starts so bad filters still get a 400.
    try:
        snapshot = feed.snapshot(db)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    settings = get_settings().realtime
    poll_seconds = max(0.2, float(settings.poll_seconds))
    max_seconds = float(settings.stream_max_seconds)

    async def event_generator():
        yield f"event: connected\ndata: {json.dumps({'user_id': viewer.user_id})}\n\n"
        yield snapshot.to_sse()

        deadline = time.monotonic() + max_seconds if max_seconds > 0 else None
        while deadline is None or time.monotonic() < deadline:
            if await request.is_disconnected():
                break

            await asyncio.sleep(poll_seconds)

            dbx = session_factory()
            try:
                for ev in feed.poll(dbx):
                    yield ev.to_sse()
            except Exception:
                logger.exception("Error while polling daily task changes for user %s", viewer.user_id)
            finally:
                dbx.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/", response_model=DailyTaskOut)
def api_create_daily_task(
    payload: DailyTaskCreate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return create_daily_task(
            db,
            current_user=current_user,
            task_name=payload.task_name,
            description=payload.description,
            status=payload.status,
            priority=payload.priority,
            user_id=payload.user_id,
            project_id=payload.project_id,
            task_date=payload.task_date,
            is_active=payload.is_active,
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _visible_daily_task_or_404(db: Session, task_id: int, current_user):
    task = get_daily_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Daily task not found")
    if not current_user.is_manager and task.user_id != current_user.id and task.created_by != current_user.id:
        raise HTTPException(status_code=403, detail="Not allowed")
    return task


@router.get("/{task_id}", response_model=DailyTaskOut)
def api_get_daily_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    return _visible_daily_task_or_404(db, task_id, current_user)


@router.patch("/{task_id}", response_model=DailyTaskOut)
def api_update_daily_task(
    task_id: int,
    payload: DailyTaskUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = _visible_daily_task_or_404(db, task_id, current_user)
    try:
        return update_daily_task(db, task=task, current_user=current_user, **payload.model_dump(exclude_unset=True))
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


_MARKERS = {
    "complete": mark_daily_task_completed,
    "skip": mark_daily_task_skipped,
    "reopen": mark_daily_task_pending,
}


@router.post("/{task_id}/{action}", response_model=DailyTaskOut)
def api_mark_daily_task(
    task_id: int,
    action: str,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    fn = _MARKERS.get(action)
    if fn is None:
        raise HTTPException(status_code=404, detail="Unknown action")
    task = _visible_daily_task_or_404(db, task_id, current_user)
    try:
        return fn(db, task=task, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")


@router.delete("/{task_id}")
def api_delete_daily_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = _visible_daily_task_or_404(db, task_id, current_user)
    try:
        delete_daily_task(db, task=task, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    return {"ok": True}
