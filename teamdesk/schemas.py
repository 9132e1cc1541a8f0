from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import DailyTaskStatus, Priority, ProjectStatus, Role, TaskStatus


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ---- Users --------------------------------------------------------------------------


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=256)
    role: str = Field(default=Role.member.value)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: str
    is_active: bool
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class UserBrief(BaseModel):
    id: int
    name: str
    email: str
    role: str
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class UserMeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(default=None, min_length=8, max_length=256)


class UserAdminUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=255)
    role: Optional[str] = None
    is_active: Optional[bool] = None


# ---- Projects -----------------------------------------------------------------------


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    client_name: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default=ProjectStatus.active.value)
    member_ids: List[int] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    client_name: Optional[str] = Field(default=None, max_length=255)
    status: Optional[str] = None


class ProjectOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    client_name: Optional[str]
    status: str
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime
    members: List[UserBrief] = []

    class Config:
        from_attributes = True


class ProjectBrief(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    client_name: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


class ProjectMemberAdd(BaseModel):
    user_id: int


# ---- Tasks --------------------------------------------------------------------------


class TaskCreate(BaseModel):
    task_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: str = Field(default=TaskStatus.pending.value)
    priority: str = Field(default=Priority.medium.value)
    progress: int = Field(default=0, ge=0, le=100)
    user_id: Optional[int] = Field(default=None, description="Assignee; defaults to the caller")
    project_id: Optional[int] = None
    due_date: Optional[datetime] = None


class TaskUpdate(BaseModel):
    task_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    user_id: Optional[int] = None
    project_id: Optional[int] = None
    due_date: Optional[datetime] = None


class TaskOut(BaseModel):
    id: int
    task_name: str
    description: Optional[str]
    status: str
    priority: str
    progress: int
    user_id: int
    created_by: Optional[int]
    updated_by: Optional[int]
    project_id: Optional[int]
    due_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    user: Optional[UserBrief] = None
    project: Optional[ProjectBrief] = None

    class Config:
        from_attributes = True


# ---- Daily tasks --------------------------------------------------------------------


class DailyTaskCreate(BaseModel):
    task_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: str = Field(default=DailyTaskStatus.pending.value)
    priority: str = Field(default=Priority.medium.value)
    user_id: Optional[int] = None
    project_id: Optional[int] = None
    task_date: Optional[date] = Field(default=None, description="Defaults to today in the app timezone")
    is_active: bool = True


class DailyTaskUpdate(BaseModel):
    task_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    user_id: Optional[int] = None
    project_id: Optional[int] = None
    task_date: Optional[date] = None
    is_active: Optional[bool] = None


class DailyTaskOut(BaseModel):
    id: int
    task_name: str
    description: Optional[str]
    status: str
    priority: str
    user_id: int
    created_by: Optional[int]
    updated_by: Optional[int]
    project_id: Optional[int]
    task_date: date
    completed_at: Optional[datetime]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    user: Optional[UserBrief] = None
    project: Optional[ProjectBrief] = None

    class Config:
        from_attributes = True


# ---- Notifications ------------------------------------------------------------------


class NotificationOut(BaseModel):
    id: int
    user_id: int
    title: str
    message: Optional[str]
    type: str
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCountOut(BaseModel):
    unread: int


# ---- Reports ------------------------------------------------------------------------


class UserBreakdownOut(BaseModel):
    user_id: int
    user_name: str
    user_email: str
    total_tasks: int
    completed: int
    pending: int
    blocked: int


class DailyReportOut(BaseModel):
    date: date
    total_tasks: int
    completed_tasks: int
    pending_tasks: int
    blocked_tasks: int
    deleted_tasks: int
    by_user: List[UserBreakdownOut] = []
    message: str = ""


class UserDailyReportOut(BaseModel):
    date: date
    user_id: int
    total_tasks: int
    completed: int
    pending: int
    blocked: int
    tasks: List[TaskOut] = []


class ReportDispatchOut(BaseModel):
    date: date
    recipients: int
    notifications_created: int
    failed_batches: int
    webhook_sent: bool


# ---- Admin --------------------------------------------------------------------------


class WebhookSettingOut(BaseModel):
    setting_key: str
    enabled: bool
    url: str
    description: str
    updated_at: Optional[datetime] = None


class WebhookSettingUpdate(BaseModel):
    enabled: bool
    url: Optional[str] = Field(default=None, max_length=2048)


class WebhookTestOut(BaseModel):
    sent: bool
    detail: Dict[str, Any] = Field(default_factory=dict)
