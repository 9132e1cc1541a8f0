from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, require_admin_api, require_manager_api
from ..crud import (
    create_user,
    deactivate_user,
    delete_user,
    get_member_projects,
    get_user,
    list_users,
    update_user_admin,
    update_user_me,
)
from ..db import get_db
from ..models import Role
from ..schemas import ProjectBrief, UserAdminUpdate, UserCreate, UserMeUpdate, UserOut


router = APIRouter()


@router.get("/", response_model=list[UserOut])
def api_list_users(
    role: str | None = Query(default=None, description="member / project_manager / admin"),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    try:
        return list_users(db, role=role, active_only=active_only)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/", response_model=UserOut)
def api_create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    try:
        return create_user(
            db,
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role,
            avatar_url=payload.avatar_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/me", response_model=UserOut)
def api_get_me(current_user=Depends(get_current_user_api)):
    return current_user


@router.patch("/me", response_model=UserOut)
def api_update_me(
    payload: UserMeUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    try:
        return update_user_me(
            db,
            user=current_user,
            name=payload.name,
            email=payload.email,
            avatar_url=payload.avatar_url,
            current_password=payload.current_password,
            new_password=payload.new_password,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/me/projects", response_model=list[ProjectBrief])
def api_my_projects(
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    return get_member_projects(db, user_id=int(current_user.id))


@router.get("/{user_id}", response_model=UserOut)
def api_get_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    if not current_user.is_manager and int(current_user.id) != int(user_id):
        raise HTTPException(status_code=403, detail="Not allowed")
    user = get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/{user_id}", response_model=UserOut)
def api_update_user(
    user_id: int,
    payload: UserAdminUpdate,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    # An admin cannot lock themselves out through the API.
    if admin.id == user_id and (payload.is_active is False or (payload.role and payload.role != Role.admin.value)):
        raise HTTPException(status_code=400, detail="Cannot demote or deactivate the currently authenticated user")

    try:
        updated = update_user_admin(
            db,
            user_id=user_id,
            name=payload.name,
            email=payload.email,
            role=payload.role,
            is_active=payload.is_active,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return updated


@router.post("/{user_id}/deactivate", response_model=UserOut)
def api_deactivate_user(
    user_id: int,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    if admin.id == user_id:
        raise HTTPException(status_code=400, detail="Cannot deactivate the currently authenticated user")
    user = deactivate_user(db, user_id=user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.delete("/{user_id}")
def api_delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    admin=Depends(require_admin_api),
):
    if admin.id == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete the currently authenticated user")
    ok = delete_user(db, user_id=user_id)
    if not ok:
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True}
