from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .auth import hash_password, verify_password
from .models import (
    DailyTask,
    DailyTaskStatus,
    DeletedTask,
    DeletedTaskType,
    Notification,
    NotificationType,
    Priority,
    Project,
    ProjectMember,
    ProjectStatus,
    Role,
    Task,
    TaskChange,
    TaskStatus,
    User,
)
from .utils.time_utils import normalize_to_utc_naive, now_utc, today_local
from .webhooks import (
    EVENT_DAILY_TASK_CREATED,
    EVENT_DAILY_TASK_DELETED,
    EVENT_DAILY_TASK_UPDATED,
    EVENT_TASK_CREATED,
    EVENT_TASK_DELETED,
    EVENT_TASK_UPDATED,
    TaskWebhookData,
    dispatch_task_webhook,
    get_project_data,
    get_user_data,
)


logger = logging.getLogger("teamdesk.crud")


CHANGE_INSERT = "INSERT"
CHANGE_UPDATE = "UPDATE"
CHANGE_DELETE = "DELETE"

DAILY_TASKS_TABLE = "daily_tasks"

_UNSET = object()


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    e = str(email).strip().lower()
    return e or None


def _choice(value: str | None, enum_cls, label: str) -> str:
    v = str(value or "").strip().lower()
    try:
        return enum_cls(v).value
    except ValueError as e:
        raise ValueError(f"Invalid {label}") from e


def _search_pattern(search: str | None) -> str | None:
    term = (search or "").strip().lower()
    if not term:
        return None
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ---------------------- Users ----------------------


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == int(user_id)).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    e = normalize_email(email)
    if not e:
        return None
    return db.query(User).filter(func.lower(User.email) == e).first()


def list_users(db: Session, *, role: str | None = None, active_only: bool = False) -> list[User]:
    q = db.query(User)
    if role:
        q = q.filter(User.role == _choice(role, Role, "role"))
    if active_only:
        q = q.filter(User.is_active.is_(True))
    return q.order_by(User.name.asc(), User.id.asc()).all()


def list_active_users(db: Session) -> list[User]:
    """All active members, project managers and admins."""
    return db.query(User).filter(User.is_active.is_(True)).order_by(User.id.asc()).all()


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: str = Role.member.value,
    avatar_url: str | None = None,
) -> User:
    uname = (name or "").strip()
    if not uname:
        raise ValueError("Name is required")

    norm_email = normalize_email(email)
    if not norm_email or "@" not in norm_email:
        raise ValueError("A valid email is required")
    if get_user_by_email(db, norm_email):
        raise ValueError("Email already exists")

    user = User(
        name=uname,
        email=norm_email,
        hashed_password=hash_password(password),
        role=_choice(role, Role, "role"),
        is_active=True,
        avatar_url=(avatar_url or None),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_admin(
    db: Session,
    *,
    user_id: int,
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> Optional[User]:
    user = get_user(db, user_id)
    if not user:
        return None

    if name is not None:
        if not name.strip():
            raise ValueError("Name is required")
        user.name = name.strip()
    if email is not None:
        e = normalize_email(email)
        if not e or "@" not in e:
            raise ValueError("A valid email is required")
        other = get_user_by_email(db, e)
        if other and other.id != user.id:
            raise ValueError("Email already exists")
        user.email = e
    if role is not None:
        user.role = _choice(role, Role, "role")
    if is_active is not None:
        user.is_active = bool(is_active)

    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_me(
    db: Session,
    *,
    user: User,
    name: Optional[str] = None,
    email: Optional[str] = None,
    avatar_url: Optional[str] = None,
    current_password: Optional[str] = None,
    new_password: Optional[str] = None,
) -> User:
    if name is not None:
        if not name.strip():
            raise ValueError("Name is required")
        user.name = name.strip()

    if email is not None:
        e = normalize_email(email)
        if not e or "@" not in e:
            raise ValueError("A valid email is required")
        other = get_user_by_email(db, e)
        if other and other.id != user.id:
            raise ValueError("Email already exists")
        user.email = e

    if avatar_url is not None:
        user.avatar_url = avatar_url.strip() or None

    if new_password:
        if not current_password or not verify_password(current_password, user.hashed_password):
            raise ValueError("Current password is incorrect")
        user.hashed_password = hash_password(new_password)

    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_contact(db: Session, user_id: int | None) -> tuple[str, str] | None:
    """(name, email) for a user of any role, or None."""
    if not user_id:
        return None
    user = get_user(db, int(user_id))
    if not user:
        return None
    return user.name, user.email


def deactivate_user(db: Session, *, user_id: int) -> Optional[User]:
    return update_user_admin(db, user_id=user_id, is_active=False)


def delete_user(db: Session, *, user_id: int) -> bool:
    user = get_user(db, user_id)
    if not user:
        return False
    db.delete(user)
    db.commit()
    return True


# ---------------------- Projects ----------------------


def get_project(db: Session, *, project_id: int) -> Optional[Project]:
    return db.query(Project).filter(Project.id == int(project_id)).first()


def list_projects(db: Session, *, current_user: User, status: str | None = None) -> list[Project]:
    q = db.query(Project)
    if not current_user.is_manager:
        q = q.join(ProjectMember, ProjectMember.project_id == Project.id).filter(
            ProjectMember.user_id == int(current_user.id)
        )
    if status:
        q = q.filter(Project.status == _choice(status, ProjectStatus, "status"))
    return q.order_by(Project.name.asc()).all()


def get_member_projects(db: Session, *, user_id: int) -> list[Project]:
    """Projects the user has been added to."""
    return (
        db.query(Project)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .filter(ProjectMember.user_id == int(user_id))
        .order_by(Project.name.asc())
        .all()
    )


def create_project(
    db: Session,
    *,
    creator: User,
    name: str,
    description: str | None = None,
    client_name: str | None = None,
    status: str = ProjectStatus.active.value,
    member_ids: Iterable[int] = (),
) -> Project:
    pname = (name or "").strip()
    if not pname:
        raise ValueError("Project name is required")

    project = Project(
        name=pname,
        description=description,
        client_name=client_name,
        status=_choice(status, ProjectStatus, "status"),
        created_by=int(creator.id),
    )
    db.add(project)
    db.flush()

    for uid in sorted({int(x) for x in member_ids or ()}):
        if not get_user(db, uid):
            db.rollback()
            raise ValueError(f"User {uid} not found")
        db.add(ProjectMember(project_id=int(project.id), user_id=uid))

    db.commit()
    db.refresh(project)
    return project


def update_project(
    db: Session,
    *,
    project: Project,
    name: Optional[str] = None,
    description: Optional[str] = None,
    client_name: Optional[str] = None,
    status: Optional[str] = None,
) -> Project:
    if name is not None:
        if not name.strip():
            raise ValueError("Project name is required")
        project.name = name.strip()
    if description is not None:
        project.description = description
    if client_name is not None:
        project.client_name = client_name
    if status is not None:
        project.status = _choice(status, ProjectStatus, "status")

    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def delete_project(db: Session, *, project: Project) -> None:
    db.delete(project)
    db.commit()


def add_project_member(db: Session, *, project: Project, user_id: int) -> Project:
    if not get_user(db, user_id):
        raise ValueError("User not found")
    exists = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == int(project.id))
        .filter(ProjectMember.user_id == int(user_id))
        .first()
    )
    if not exists:
        db.add(ProjectMember(project_id=int(project.id), user_id=int(user_id)))
        db.commit()
    db.refresh(project)
    return project


def remove_project_member(db: Session, *, project: Project, user_id: int) -> bool:
    n = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == int(project.id))
        .filter(ProjectMember.user_id == int(user_id))
        .delete(synchronize_session=False)
    )
    db.commit()
    db.refresh(project)
    return bool(n)


# ---------------------- Shared task helpers ----------------------


def _can_modify(current_user: User, item: Task | DailyTask) -> bool:
    if current_user.is_manager:
        return True
    uid = int(current_user.id)
    return int(item.user_id) == uid or (item.created_by is not None and int(item.created_by) == uid)


def _resolve_assignee(db: Session, *, current_user: User, user_id: int | None) -> int:
    if user_id is None or int(user_id) == int(current_user.id):
        return int(current_user.id)
    if not current_user.is_manager:
        raise PermissionError("Members can only assign tasks to themselves")
    if not get_user(db, int(user_id)):
        raise ValueError("Assignee not found")
    return int(user_id)


def _check_project(db: Session, project_id: int | None) -> int | None:
    if project_id is None:
        return None
    if not get_project(db, project_id=int(project_id)):
        raise ValueError("Project not found")
    return int(project_id)


def _row_to_dict(row: Task | DailyTask) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for col in row.__table__.columns:
        v = getattr(row, col.key)
        if isinstance(v, (datetime, date)):
            v = v.isoformat()
        out[col.key] = v
    return out


def record_deleted_task(
    db: Session,
    *,
    task: Task | DailyTask,
    deleted_by: int | None,
    task_type: str,
    when_utc: datetime | None = None,
) -> DeletedTask:
    """Stage a snapshot row for a task that is about to be deleted."""
    snap = DeletedTask(
        original_task_id=int(task.id),
        task_type=_choice(task_type, DeletedTaskType, "task_type"),
        task_name=str(task.task_name),
        user_id=int(task.user_id) if task.user_id is not None else None,
        deleted_by=(int(deleted_by) if deleted_by is not None else None),
        task_data=json.dumps(_row_to_dict(task), sort_keys=True),
        deleted_at=(when_utc or now_utc()),
    )
    db.add(snap)
    return snap


def _webhook_data(
    db: Session,
    *,
    task: Task | DailyTask,
    event_type: str,
    actor_id: int | None = None,
    old_status: str | None = None,
) -> TaskWebhookData:
    assignee = get_user_data(db, task.user_id) or {}
    project = get_project_data(db, task.project_id) or {}
    data = TaskWebhookData(
        event_type=event_type,
        id=task.id,
        task_name=task.task_name,
        description=task.description,
        status=task.status,
        priority=task.priority,
        user_id=task.user_id,
        user_name=assignee.get("name"),
        user_email=assignee.get("email"),
        created_by=task.created_by,
        project_id=task.project_id,
        project_name=project.get("name"),
        created_at=task.created_at,
        updated_at=task.updated_at,
    )
    if isinstance(task, DailyTask):
        data.task_date = task.task_date
    else:
        data.due_date = task.due_date
        data.progress = task.progress

    if event_type in (EVENT_TASK_CREATED, EVENT_DAILY_TASK_CREATED):
        creator = get_user_data(db, task.created_by) or {}
        data.created_by_name = creator.get("name")
        data.created_by_email = creator.get("email")
    elif event_type in (EVENT_TASK_UPDATED, EVENT_DAILY_TASK_UPDATED):
        updater = get_user_data(db, actor_id) or {}
        data.old_status = old_status
        data.updated_by = actor_id
        data.updated_by_name = updater.get("name")
        data.updated_by_email = updater.get("email")
    else:
        deleter = get_user_data(db, actor_id) or {}
        data.deleted_by = actor_id
        data.deleted_by_name = deleter.get("name")
        data.deleted_by_email = deleter.get("email")
    return data


def _send_webhook(db: Session, **kwargs) -> None:
    # Webhooks are best-effort and must not fail the write that triggered them.
    try:
        dispatch_task_webhook(db, _webhook_data(db, **kwargs))
    except Exception:
        logger.exception("Failed to send %s webhook", kwargs.get("event_type"))


# ---------------------- Tasks ----------------------


def get_task(db: Session, *, task_id: int) -> Optional[Task]:
    return (
        db.query(Task)
        .options(joinedload(Task.user), joinedload(Task.project))
        .filter(Task.id == int(task_id))
        .first()
    )


def list_tasks(
    db: Session,
    *,
    current_user: User,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    priority: Optional[str] = None,
    project_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> list[Task]:
    q = db.query(Task).options(joinedload(Task.user), joinedload(Task.project))

    if not current_user.is_manager:
        q = q.filter(Task.user_id == int(current_user.id))
    elif user_id:
        q = q.filter(Task.user_id == int(user_id))

    if status:
        q = q.filter(Task.status == _choice(status, TaskStatus, "status"))
    if priority:
        q = q.filter(Task.priority == _choice(priority, Priority, "priority"))
    if project_id:
        q = q.filter(Task.project_id == int(project_id))

    pat = _search_pattern(search)
    if pat:
        q = q.filter(
            or_(
                func.lower(Task.task_name).like(pat, escape="\\"),
                func.lower(Task.description).like(pat, escape="\\"),
            )
        )

    q = q.order_by(Task.created_at.desc(), Task.id.desc())
    if offset:
        q = q.offset(max(0, int(offset)))
    if limit:
        q = q.limit(max(1, int(limit)))
    return q.all()


def create_task(
    db: Session,
    *,
    current_user: User,
    task_name: str,
    description: Optional[str] = None,
    status: str = TaskStatus.pending.value,
    priority: str = Priority.medium.value,
    progress: int = 0,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    due_date: Optional[datetime] = None,
) -> Task:
    name = (task_name or "").strip()
    if not name:
        raise ValueError("Task name is required")
    if not 0 <= int(progress) <= 100:
        raise ValueError("Progress must be between 0 and 100")

    task = Task(
        task_name=name,
        description=description,
        status=_choice(status or TaskStatus.pending.value, TaskStatus, "status"),
        priority=_choice(priority or Priority.medium.value, Priority, "priority"),
        progress=int(progress),
        user_id=_resolve_assignee(db, current_user=current_user, user_id=user_id),
        created_by=int(current_user.id),
        updated_by=int(current_user.id),
        project_id=_check_project(db, project_id),
        due_date=(normalize_to_utc_naive(due_date) if due_date else None),
    )
    db.add(task)
    db.commit()
    db.refresh(task)

    logger.info("Task %s created by user %s", task.id, current_user.id)
    _send_webhook(db, task=task, event_type=EVENT_TASK_CREATED)
    return task


def update_task(
    db: Session,
    *,
    task: Task,
    current_user: User,
    task_name: Optional[str] = None,
    description: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    progress: Optional[int] = None,
    user_id: Optional[int] = None,
    project_id: Any = _UNSET,
    due_date: Any = _UNSET,
) -> Task:
    if not _can_modify(current_user, task):
        raise PermissionError("Not allowed")

    old_status = task.status

    if task_name is not None:
        if not task_name.strip():
            raise ValueError("Task name is required")
        task.task_name = task_name.strip()
    if description is not None:
        task.description = description
    if status is not None:
        task.status = _choice(status, TaskStatus, "status")
    if priority is not None:
        task.priority = _choice(priority, Priority, "priority")
    if progress is not None:
        if not 0 <= int(progress) <= 100:
            raise ValueError("Progress must be between 0 and 100")
        task.progress = int(progress)
    if user_id is not None:
        task.user_id = _resolve_assignee(db, current_user=current_user, user_id=user_id)
    if project_id is not _UNSET:
        task.project_id = _check_project(db, project_id)
    if due_date is not _UNSET:
        task.due_date = normalize_to_utc_naive(due_date) if due_date else None

    task.updated_by = int(current_user.id)
    task.updated_at = now_utc()

    db.add(task)
    db.commit()
    db.refresh(task)

    # Only status transitions are announced.
    if status is not None and task.status != old_status:
        _send_webhook(
            db,
            task=task,
            event_type=EVENT_TASK_UPDATED,
            actor_id=int(current_user.id),
            old_status=old_status,
        )
    return task


def delete_task(db: Session, *, task: Task, current_user: User) -> None:
    if not _can_modify(current_user, task):
        raise PermissionError("Not allowed")

    # Capture payload before the row disappears.
    data = _webhook_data(db, task=task, event_type=EVENT_TASK_DELETED, actor_id=int(current_user.id))

    record_deleted_task(db, task=task, deleted_by=int(current_user.id), task_type=DeletedTaskType.regular.value)
    db.delete(task)
    db.commit()

    logger.info("Task %s deleted by user %s", data.id, current_user.id)
    try:
        dispatch_task_webhook(db, data)
    except Exception:
        logger.exception("Failed to send task_deleted webhook")


# ---------------------- Daily tasks ----------------------


def daily_task_to_dict(task: DailyTask) -> dict[str, Any]:
    return _row_to_dict(task)


def record_task_change(
    db: Session,
    *,
    event_type: str,
    record_id: int,
    actor_id: int | None,
    new: dict | None = None,
    old: dict | None = None,
    table_name: str = DAILY_TASKS_TABLE,
) -> TaskChange:
    change = TaskChange(
        table_name=table_name,
        event_type=event_type,
        record_id=int(record_id),
        actor_id=(int(actor_id) if actor_id is not None else None),
        new_json=(json.dumps(new, sort_keys=True) if new is not None else None),
        old_json=(json.dumps(old, sort_keys=True) if old is not None else None),
        created_at=now_utc(),
    )
    db.add(change)
    return change


def _log_change(db: Session, **kwargs) -> None:
    try:
        record_task_change(db, **kwargs)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record %s change for daily task %s", kwargs.get("event_type"), kwargs.get("record_id"))


def get_daily_task(db: Session, *, task_id: int) -> Optional[DailyTask]:
    return (
        db.query(DailyTask)
        .options(joinedload(DailyTask.user), joinedload(DailyTask.project))
        .filter(DailyTask.id == int(task_id))
        .first()
    )


def daily_tasks_query(
    db: Session,
    *,
    current_user: User,
    status: Optional[str] = None,
    member: Optional[int] = None,
    task_date: Optional[date] = None,
    priority: Optional[str] = None,
    project_id: Optional[int] = None,
    search: Optional[str] = None,
):
    q = db.query(DailyTask).options(joinedload(DailyTask.user), joinedload(DailyTask.project))

    if status:
        q = q.filter(DailyTask.status == _choice(status, DailyTaskStatus, "status"))
    if member:
        q = q.filter(DailyTask.user_id == int(member))
    if task_date:
        q = q.filter(DailyTask.task_date == task_date)
    if priority:
        q = q.filter(DailyTask.priority == _choice(priority, Priority, "priority"))
    if project_id:
        q = q.filter(DailyTask.project_id == int(project_id))

    pat = _search_pattern(search)
    if pat:
        q = q.filter(
            or_(
                func.lower(DailyTask.task_name).like(pat, escape="\\"),
                func.lower(DailyTask.description).like(pat, escape="\\"),
            )
        )

    if not current_user.is_manager:
        q = q.filter(DailyTask.user_id == int(current_user.id))

    return q.order_by(DailyTask.created_at.desc(), DailyTask.id.desc())


def list_daily_tasks(db: Session, *, current_user: User, **filters) -> list[DailyTask]:
    return daily_tasks_query(db, current_user=current_user, **filters).all()


def create_daily_task(
    db: Session,
    *,
    current_user: User,
    task_name: str,
    description: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    task_date: Optional[date] = None,
    is_active: bool = True,
) -> DailyTask:
    name = (task_name or "").strip()
    if not name:
        raise ValueError("Task name is required")

    st = _choice(status or DailyTaskStatus.pending.value, DailyTaskStatus, "status")
    task = DailyTask(
        task_name=name,
        description=description,
        status=st,
        priority=_choice(priority or Priority.medium.value, Priority, "priority"),
        user_id=_resolve_assignee(db, current_user=current_user, user_id=user_id),
        created_by=int(current_user.id),
        updated_by=int(current_user.id),
        project_id=_check_project(db, project_id),
        task_date=(task_date or today_local()),
        completed_at=(now_utc() if st == DailyTaskStatus.completed.value else None),
        is_active=bool(is_active),
    )
    db.add(task)
    db.commit()
    db.refresh(task)

    _log_change(
        db,
        event_type=CHANGE_INSERT,
        record_id=int(task.id),
        actor_id=int(current_user.id),
        new=daily_task_to_dict(task),
    )
    _send_webhook(db, task=task, event_type=EVENT_DAILY_TASK_CREATED)
    return task


def update_daily_task(
    db: Session,
    *,
    task: DailyTask,
    current_user: User,
    task_name: Optional[str] = None,
    description: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    user_id: Optional[int] = None,
    project_id: Any = _UNSET,
    task_date: Optional[date] = None,
    is_active: Optional[bool] = None,
    completed_at: Any = _UNSET,
) -> DailyTask:
    if not _can_modify(current_user, task):
        raise PermissionError("Not allowed")

    old = daily_task_to_dict(task)
    old_status = task.status

    if task_name is not None:
        if not task_name.strip():
            raise ValueError("Task name is required")
        task.task_name = task_name.strip()
    if description is not None:
        task.description = description
    if status is not None:
        task.status = _choice(status, DailyTaskStatus, "status")
    if priority is not None:
        task.priority = _choice(priority, Priority, "priority")
    if user_id is not None:
        task.user_id = _resolve_assignee(db, current_user=current_user, user_id=user_id)
    if project_id is not _UNSET:
        task.project_id = _check_project(db, project_id)
    if task_date is not None:
        task.task_date = task_date
    if is_active is not None:
        task.is_active = bool(is_active)
    if completed_at is not _UNSET:
        task.completed_at = completed_at
    elif task.status != old_status:
        # completed_at is only set while the task is completed.
        if task.status == DailyTaskStatus.completed.value:
            task.completed_at = now_utc()
        else:
            task.completed_at = None

    task.updated_by = int(current_user.id)
    task.updated_at = now_utc()

    db.add(task)
    db.commit()
    db.refresh(task)

    _log_change(
        db,
        event_type=CHANGE_UPDATE,
        record_id=int(task.id),
        actor_id=int(current_user.id),
        new=daily_task_to_dict(task),
        old=old,
    )

    if status is not None and task.status != old_status:
        _send_webhook(
            db,
            task=task,
            event_type=EVENT_DAILY_TASK_UPDATED,
            actor_id=int(current_user.id),
            old_status=old_status,
        )
    return task


def mark_daily_task_completed(db: Session, *, task: DailyTask, current_user: User) -> DailyTask:
    return update_daily_task(
        db,
        task=task,
        current_user=current_user,
        status=DailyTaskStatus.completed.value,
        completed_at=now_utc(),
    )


def mark_daily_task_skipped(db: Session, *, task: DailyTask, current_user: User) -> DailyTask:
    return update_daily_task(
        db,
        task=task,
        current_user=current_user,
        status=DailyTaskStatus.skipped.value,
        completed_at=None,
    )


def mark_daily_task_pending(db: Session, *, task: DailyTask, current_user: User) -> DailyTask:
    return update_daily_task(
        db,
        task=task,
        current_user=current_user,
        status=DailyTaskStatus.pending.value,
        completed_at=None,
    )


def delete_daily_task(db: Session, *, task: DailyTask, current_user: User) -> None:
    if not _can_modify(current_user, task):
        raise PermissionError("Not allowed")

    old = daily_task_to_dict(task)
    data = _webhook_data(db, task=task, event_type=EVENT_DAILY_TASK_DELETED, actor_id=int(current_user.id))

    record_deleted_task(db, task=task, deleted_by=int(current_user.id), task_type=DeletedTaskType.daily.value)
    db.delete(task)
    db.commit()

    _log_change(
        db,
        event_type=CHANGE_DELETE,
        record_id=int(old["id"]),
        actor_id=int(current_user.id),
        old=old,
    )
    try:
        dispatch_task_webhook(db, data)
    except Exception:
        logger.exception("Failed to send daily_task_deleted webhook")


def purge_task_changes(db: Session, *, older_than: datetime) -> int:
    n = db.query(TaskChange).filter(TaskChange.created_at < older_than).delete(synchronize_session=False)
    db.commit()
    return int(n or 0)


# ---------------------- Notifications ----------------------


def build_notification(
    *,
    user_id: int,
    title: str,
    message: str | None,
    type: str = NotificationType.system.value,
    created_at: datetime | None = None,
) -> Notification:
    return Notification(
        user_id=int(user_id),
        title=str(title)[:255],
        message=message,
        type=_choice(type, NotificationType, "notification type"),
        is_read=False,
        created_at=(created_at or now_utc()),
    )


def list_notifications(
    db: Session,
    *,
    user_id: int,
    unread_only: bool = False,
    type: str | None = None,
    limit: int = 50,
) -> list[Notification]:
    q = db.query(Notification).filter(Notification.user_id == int(user_id))
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    if type:
        q = q.filter(Notification.type == _choice(type, NotificationType, "notification type"))
    return q.order_by(Notification.id.desc()).limit(max(1, min(int(limit), 200))).all()


def count_unread_notifications(db: Session, *, user_id: int) -> int:
    n = (
        db.query(func.count(Notification.id))
        .filter(Notification.user_id == int(user_id))
        .filter(Notification.is_read.is_(False))
        .scalar()
    )
    return int(n or 0)


def mark_notification_read(db: Session, *, user_id: int, notification_id: int) -> Optional[Notification]:
    n = (
        db.query(Notification)
        .filter(Notification.id == int(notification_id))
        .filter(Notification.user_id == int(user_id))
        .first()
    )
    if not n:
        return None
    n.is_read = True
    db.add(n)
    db.commit()
    db.refresh(n)
    return n


def mark_all_notifications_read(db: Session, *, user_id: int) -> int:
    count = (
        db.query(Notification)
        .filter(Notification.user_id == int(user_id))
        .filter(Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return int(count or 0)


def delete_notification(db: Session, *, user_id: int, notification_id: int) -> bool:
    n = (
        db.query(Notification)
        .filter(Notification.id == int(notification_id))
        .filter(Notification.user_id == int(user_id))
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(n)
