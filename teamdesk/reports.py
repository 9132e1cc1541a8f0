from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Iterator, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .config import get_settings
from .crud import build_notification, list_active_users
from .models import DeletedTask, DeletedTaskType, NotificationType, Task, TaskStatus
from .utils.time_utils import local_day_bounds_utc, now_utc, today_local
from .webhooks import send_report_webhook


logger = logging.getLogger("teamdesk.reports")


REPORT_TITLE = "📊 Daily Performance Report - {date}"
UNKNOWN_USER = "Unknown"


@dataclass
class UserBreakdown:
    user_id: int
    user_name: str
    user_email: str
    total_tasks: int = 0
    completed: int = 0
    pending: int = 0
    blocked: int = 0


@dataclass
class DailyReport:
    date: date
    total_tasks: int = 0
    completed_tasks: int = 0
    pending_tasks: int = 0
    blocked_tasks: int = 0
    deleted_tasks: int = 0
    by_user: list[UserBreakdown] = field(default_factory=list)

    def metrics(self) -> dict[str, int]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "pending_tasks": self.pending_tasks,
            "blocked_tasks": self.blocked_tasks,
            "deleted_tasks": self.deleted_tasks,
        }

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserDailyReport:
    date: date
    user_id: int
    total_tasks: int = 0
    completed: int = 0
    pending: int = 0
    blocked: int = 0
    tasks: list[Task] = field(default_factory=list)


@dataclass
class ReportDispatch:
    date: date
    recipients: int = 0
    notifications_created: int = 0
    failed_batches: int = 0
    webhook_sent: bool = False


def is_blocked(task: Task, now: datetime) -> bool:
    """Not completed and past its due date. Tasks without a due date never block."""
    if task.status == TaskStatus.completed.value:
        return False
    return task.due_date is not None and task.due_date < now


def _contact(task: Task) -> tuple[str, str]:
    if task.user is None:
        return UNKNOWN_USER, ""
    return task.user.name, task.user.email


def _resolve_day(report_date: date | None, now: datetime | None) -> tuple[date, datetime]:
    n = now or now_utc()
    return (report_date or today_local(n)), n


def _tasks_updated_between(db: Session, start: datetime, end: datetime, *, user_id: int | None = None) -> list[Task]:
    q = (
        db.query(Task)
        .options(joinedload(Task.user), joinedload(Task.project))
        .filter(Task.updated_at >= start)
        .filter(Task.updated_at < end)
    )
    if user_id is not None:
        q = q.filter(Task.user_id == int(user_id))
    return q.order_by(Task.updated_at.desc(), Task.id.desc()).all()


def _count_deleted_between(db: Session, start: datetime, end: datetime) -> int:
    try:
        n = (
            db.query(func.count(DeletedTask.id))
            .filter(DeletedTask.task_type == DeletedTaskType.regular.value)
            .filter(DeletedTask.deleted_at >= start)
            .filter(DeletedTask.deleted_at < end)
            .scalar()
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error fetching deleted tasks, counting them as zero")
        return 0
    return int(n or 0)


def generate_daily_report(
    db: Session,
    report_date: date | None = None,
    now: datetime | None = None,
) -> DailyReport:
    """Aggregate regular tasks updated during one local calendar day.

    `now` (naive UTC) decides which tasks are blocked and, when `report_date`
    is omitted, which day is reported. A failing task query propagates.
    """
    day, n = _resolve_day(report_date, now)
    start, end = local_day_bounds_utc(day)

    try:
        tasks = _tasks_updated_between(db, start, end)
    except SQLAlchemyError:
        logger.exception("Error fetching tasks for daily report %s", day)
        raise

    report = DailyReport(date=day)
    report.total_tasks = len(tasks)
    report.deleted_tasks = _count_deleted_between(db, start, end)

    per_user: dict[int, UserBreakdown] = {}
    for t in tasks:
        done = t.status == TaskStatus.completed.value
        blocked = is_blocked(t, n)
        if done:
            report.completed_tasks += 1
        else:
            report.pending_tasks += 1
        if blocked:
            report.blocked_tasks += 1

        uid = int(t.user_id)
        row = per_user.get(uid)
        if row is None:
            name, email = _contact(t)
            row = per_user[uid] = UserBreakdown(user_id=uid, user_name=name, user_email=email)
        row.total_tasks += 1
        if done:
            row.completed += 1
        else:
            row.pending += 1
        if blocked:
            row.blocked += 1

    report.by_user = [per_user[k] for k in sorted(per_user)]
    return report


def get_user_daily_report(
    db: Session,
    user_id: int,
    report_date: date | None = None,
    now: datetime | None = None,
) -> UserDailyReport:
    day, n = _resolve_day(report_date, now)
    start, end = local_day_bounds_utc(day)

    try:
        tasks = _tasks_updated_between(db, start, end, user_id=int(user_id))
    except SQLAlchemyError:
        logger.exception("Error fetching daily report for user %s", user_id)
        raise

    completed = sum(1 for t in tasks if t.status == TaskStatus.completed.value)
    return UserDailyReport(
        date=day,
        user_id=int(user_id),
        total_tasks=len(tasks),
        completed=completed,
        pending=len(tasks) - completed,
        blocked=sum(1 for t in tasks if is_blocked(t, n)),
        tasks=tasks,
    )


def format_report_message(report: DailyReport, top_n: Optional[int] = None) -> str:
    limit = get_settings().report.top_performers if top_n is None else int(top_n)

    lines = [
        f"📅 Date: {report.date.isoformat()}",
        "",
        "📈 Overall Performance:",
        f"• Total Tasks Updated: {report.total_tasks}",
        f"• ✅ Completed: {report.completed_tasks}",
        f"• ⏳ Pending: {report.pending_tasks}",
        f"• 🚫 Blocked: {report.blocked_tasks}",
        f"• 🗑️ Deleted: {report.deleted_tasks}",
        "",
    ]

    if report.by_user and limit > 0:
        ranked = sorted(report.by_user, key=lambda u: u.completed, reverse=True)[:limit]
        lines.append("🏆 Top Performers Today:")
        for i, u in enumerate(ranked, start=1):
            lines.append(f"{i}. {u.user_name}: {u.completed}/{u.total_tasks} completed")

    return "\n".join(lines)


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    step = max(1, int(size))
    for i in range(0, len(items), step):
        yield items[i : i + step]


def send_daily_report_to_all_users(
    db: Session,
    *,
    report_date: date | None = None,
    now: datetime | None = None,
) -> ReportDispatch:
    """Generate the report, notify every active user, then fire the report webhook.

    Notifications are inserted in batches; a failed batch is logged and skipped.
    Webhook failures are logged and reflected in `webhook_sent` only.
    """
    settings = get_settings()
    report = generate_daily_report(db, report_date=report_date, now=now)
    message = format_report_message(report)
    title = REPORT_TITLE.format(date=report.date.isoformat())

    users = list_active_users(db)
    result = ReportDispatch(date=report.date, recipients=len(users))
    logger.info("Sending daily report for %s to %s users", report.date, len(users))

    created_at = now_utc()
    for batch in _chunks(users, settings.report.batch_size):
        try:
            db.add_all(
                [
                    build_notification(
                        user_id=int(u.id),
                        title=title,
                        message=message,
                        type=NotificationType.report.value,
                        created_at=created_at,
                    )
                    for u in batch
                ]
            )
            db.commit()
            result.notifications_created += len(batch)
        except SQLAlchemyError:
            db.rollback()
            result.failed_batches += 1
            logger.exception("Error inserting daily report notification batch (%s users)", len(batch))

    try:
        result.webhook_sent = send_report_webhook(
            db,
            report_date=report.date,
            metrics=report.metrics(),
            message=message,
        )
    except Exception:
        logger.exception("Error sending daily report webhook")

    logger.info(
        "Daily report %s sent: %s notifications, %s failed batches, webhook=%s",
        report.date,
        result.notifications_created,
        result.failed_batches,
        result.webhook_sent,
    )
    return result
