from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, require_manager_api
from ..crud import (
    add_project_member,
    create_project,
    delete_project,
    get_project,
    list_projects,
    remove_project_member,
    update_project,
)
from ..db import get_db
from ..schemas import ProjectCreate, ProjectMemberAdd, ProjectOut, ProjectUpdate


router = APIRouter()


def _project_or_404(db: Session, project_id: int):
    project = get_project(db, project_id=project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.get("/", response_model=list[ProjectOut])
def api_list_projects(
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return list_projects(db, current_user=current_user, status=status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/", response_model=ProjectOut, status_code=status.HTTP_201_CREATED)
def api_create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    try:
        return create_project(
            db,
            creator=manager,
            name=payload.name,
            description=payload.description,
            client_name=payload.client_name,
            status=payload.status,
            member_ids=payload.member_ids,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{project_id}", response_model=ProjectOut)
def api_get_project(
    project_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    project = _project_or_404(db, project_id)
    if not current_user.is_manager and all(int(m.id) != int(current_user.id) for m in project.members):
        raise HTTPException(status_code=403, detail="Not allowed")
    return project


@router.patch("/{project_id}", response_model=ProjectOut)
def api_update_project(
    project_id: int,
    payload: ProjectUpdate,
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    project = _project_or_404(db, project_id)
    try:
        return update_project(
            db,
            project=project,
            name=payload.name,
            description=payload.description,
            client_name=payload.client_name,
            status=payload.status,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_project(
    project_id: int,
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    delete_project(db, project=_project_or_404(db, project_id))
    return None


@router.post("/{project_id}/members", response_model=ProjectOut)
def api_add_member(
    project_id: int,
    payload: ProjectMemberAdd,
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    project = _project_or_404(db, project_id)
    try:
        return add_project_member(db, project=project, user_id=payload.user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{project_id}/members/{user_id}", response_model=ProjectOut)
def api_remove_member(
    project_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    project = _project_or_404(db, project_id)
    if not remove_project_member(db, project=project, user_id=user_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return project
