from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user_api
from ..crud import create_task, delete_task, get_task, list_tasks, update_task
from ..db import get_db
from ..schemas import TaskCreate, TaskOut, TaskUpdate


router = APIRouter()


@router.get("/", response_model=list[TaskOut])
def api_list_tasks(
    status: str | None = Query(default=None, description="pending / in_progress / completed"),
    user_id: int | None = Query(default=None, description="Managers only: filter by assignee"),
    priority: str | None = Query(default=None),
    project_id: int | None = Query(default=None),
    search: str | None = Query(default=None, description="Substring of name or description"),
    limit: int | None = Query(default=None, ge=1, le=500),
    offset: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return list_tasks(
            db,
            current_user=current_user,
            status=status,
            user_id=user_id,
            priority=priority,
            project_id=project_id,
            search=search,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/", response_model=TaskOut)
def api_create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        task = create_task(
            db,
            current_user=current_user,
            task_name=payload.task_name,
            description=payload.description,
            status=payload.status,
            priority=payload.priority,
            progress=payload.progress,
            user_id=payload.user_id,
            project_id=payload.project_id,
            due_date=payload.due_date,
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return task


def _visible_task_or_404(db: Session, task_id: int, current_user):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if not current_user.is_manager and task.user_id != current_user.id and task.created_by != current_user.id:
        raise HTTPException(status_code=403, detail="Not allowed")
    return task


@router.get("/{task_id}", response_model=TaskOut)
def api_get_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    return _visible_task_or_404(db, task_id, current_user)


@router.patch("/{task_id}", response_model=TaskOut)
def api_update_task(
    task_id: int,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = _visible_task_or_404(db, task_id, current_user)
    try:
        return update_task(db, task=task, current_user=current_user, **payload.model_dump(exclude_unset=True))
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{task_id}")
def api_delete_task(
    task_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    task = _visible_task_or_404(db, task_id, current_user)
    try:
        delete_task(db, task=task, current_user=current_user)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    return {"ok": True}
