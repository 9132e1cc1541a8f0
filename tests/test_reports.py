from datetime import date, datetime

import pytest
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

from teamdesk import reports
from teamdesk.crud import create_task
from teamdesk.models import DeletedTask, Notification, Task
from teamdesk.reports import (
    DailyReport,
    UserBreakdown,
    format_report_message,
    generate_daily_report,
    get_user_daily_report,
    send_daily_report_to_all_users,
)


DAY = date(2026, 10, 18)
NOW = datetime(2026, 10, 18, 20, 0)


def _task(db, user, name, *, status="pending", due=None, updated_at=datetime(2026, 10, 18, 9, 30)):
    t = create_task(db, current_user=user, task_name=name, status=status)
    t.due_date = due
    t.updated_at = updated_at
    db.add(t)
    db.commit()
    return t


def _deleted(db, *, task_type="regular", deleted_at=datetime(2026, 10, 18, 11, 0)):
    db.add(
        DeletedTask(original_task_id=99, task_type=task_type, task_name="gone", user_id=None, deleted_at=deleted_at)
    )
    db.commit()


def test_report_counts_tasks_updated_during_the_day(db, member, other_member):
    _task(db, member, "done", status="completed", due=datetime(2026, 10, 17, 9, 0))
    _task(db, member, "late", due=datetime(2026, 10, 18, 12, 0))
    _task(db, member, "no due date")
    _task(db, other_member, "in flight", status="in_progress", due=datetime(2026, 10, 25, 9, 0))
    _task(db, other_member, "yesterday", updated_at=datetime(2026, 10, 17, 23, 59))
    _task(db, other_member, "tomorrow", updated_at=datetime(2026, 10, 19, 0, 0))
    _deleted(db)
    _deleted(db, task_type="daily")
    _deleted(db, deleted_at=datetime(2026, 10, 16, 11, 0))

    report = generate_daily_report(db, report_date=DAY, now=NOW)

    assert report.date == DAY
    assert report.metrics() == {
        "total_tasks": 4,
        "completed_tasks": 1,
        "pending_tasks": 3,
        "blocked_tasks": 1,
        "deleted_tasks": 1,
    }
    assert [(u.user_name, u.total_tasks, u.completed, u.pending, u.blocked) for u in report.by_user] == [
        ("Mia Member", 3, 1, 2, 1),
        ("Omar Member", 1, 0, 1, 0),
    ]
    assert report.by_user[0].user_email == "mia@example.com"


def test_completed_tasks_past_due_are_not_blocked(db, member):
    _task(db, member, "done late", status="completed", due=datetime(2026, 10, 1, 9, 0))

    report = generate_daily_report(db, report_date=DAY, now=NOW)

    assert report.completed_tasks == 1
    assert report.blocked_tasks == 0


def test_report_window_follows_app_timezone(db, member, settings_tmp):
    from teamdesk.config import get_settings

    settings_tmp.write_text(settings_tmp.read_text().replace('timezone: "UTC"', 'timezone: "America/New_York"'))
    get_settings.cache_clear()

    # 02:00 UTC on the 19th is still the 18th in New York.
    _task(db, member, "late evening", updated_at=datetime(2026, 10, 19, 2, 0))
    _task(db, member, "early morning", updated_at=datetime(2026, 10, 18, 3, 0))

    report = generate_daily_report(db, report_date=DAY, now=NOW)

    assert report.total_tasks == 1


def test_unknown_assignee_is_reported_as_unknown():
    orphan = Task(user_id=4242, task_name="orphan", status="pending")

    assert reports._contact(orphan) == ("Unknown", "")


def test_report_query_count_does_not_grow_with_assignees(db, engine, admin, manager, member, other_member):
    statements = []

    def count(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    for user in (admin, manager, member, other_member):
        _task(db, user, f"work for {user.name}")

    event.listen(engine, "before_cursor_execute", count)
    try:
        report = generate_daily_report(db, report_date=DAY, now=NOW)
    finally:
        event.remove(engine, "before_cursor_execute", count)

    assert [u.user_name for u in report.by_user] == ["Ada Admin", "Pat Manager", "Mia Member", "Omar Member"]
    # One query for the tasks with their users, one for the deleted count.
    assert len(statements) == 2


def test_deleted_task_query_failure_counts_as_zero(db, member):
    _task(db, member, "still counted")
    DeletedTask.__table__.drop(db.get_bind())

    report = generate_daily_report(db, report_date=DAY, now=NOW)

    assert report.total_tasks == 1
    assert report.deleted_tasks == 0


def test_task_query_failure_propagates(db, monkeypatch):
    def broken(*args, **kwargs):
        raise SQLAlchemyError("database is gone")

    monkeypatch.setattr(reports, "_tasks_updated_between", broken)

    with pytest.raises(SQLAlchemyError):
        generate_daily_report(db, report_date=DAY, now=NOW)


def test_user_daily_report(db, member, other_member):
    _task(db, member, "a", status="completed")
    _task(db, member, "b", due=datetime(2026, 10, 18, 8, 0))
    _task(db, other_member, "c")

    r = get_user_daily_report(db, member.id, report_date=DAY, now=NOW)

    assert (r.total_tasks, r.completed, r.pending, r.blocked) == (2, 1, 1, 1)
    assert {t.task_name for t in r.tasks} == {"a", "b"}


def test_format_report_message_lists_top_performers():
    report = DailyReport(
        date=DAY,
        total_tasks=9,
        completed_tasks=5,
        pending_tasks=4,
        blocked_tasks=2,
        deleted_tasks=1,
        by_user=[
            UserBreakdown(1, "Ann", "ann@example.com", total_tasks=3, completed=1),
            UserBreakdown(2, "Ben", "ben@example.com", total_tasks=4, completed=3),
            UserBreakdown(3, "Cy", "cy@example.com", total_tasks=2, completed=1),
        ],
    )

    message = format_report_message(report, top_n=2)

    assert message.split("\n") == [
        "📅 Date: 2026-10-18",
        "",
        "📈 Overall Performance:",
        "• Total Tasks Updated: 9",
        "• ✅ Completed: 5",
        "• ⏳ Pending: 4",
        "• 🚫 Blocked: 2",
        "• 🗑️ Deleted: 1",
        "",
        "🏆 Top Performers Today:",
        "1. Ben: 3/4 completed",
        "2. Ann: 1/3 completed",
    ]


def test_format_report_message_without_breakdown():
    message = format_report_message(DailyReport(date=DAY))

    assert "Top Performers" not in message
    assert message.endswith("• 🗑️ Deleted: 0\n")


def test_send_report_notifies_active_users_in_batches(db, admin, manager, member, other_member, webhook_calls):
    other_member.is_active = False
    db.add(other_member)
    db.commit()
    _task(db, member, "shipped", status="completed")

    result = send_daily_report_to_all_users(db, report_date=DAY, now=NOW)

    assert result.recipients == 3
    assert result.notifications_created == 3
    assert result.failed_batches == 0
    assert result.webhook_sent is True

    rows = db.query(Notification).all()
    assert {n.user_id for n in rows} == {admin.id, manager.id, member.id}
    assert all(n.type == "report" for n in rows)
    assert rows[0].title == "📊 Daily Performance Report - 2026-10-18"
    assert "1. Mia Member: 1/1 completed" in rows[0].message

    [hook] = [c["payload"] for c in webhook_calls if c["payload"]["event_type"] == "daily_performance_report"]
    assert hook["report_date"] == "2026-10-18"
    assert hook["metrics"]["completed_tasks"] == 1
    assert hook["message"] == rows[0].message


def test_failed_batch_is_skipped(db, admin, manager, member, monkeypatch):
    real_build = reports.build_notification

    def flaky_build(**kwargs):
        if kwargs["user_id"] == admin.id:
            raise SQLAlchemyError("insert failed")
        return real_build(**kwargs)

    monkeypatch.setattr(reports, "build_notification", flaky_build)

    result = send_daily_report_to_all_users(db, report_date=DAY, now=NOW)

    # batch_size is 2: [admin, manager] fails, [member] goes through.
    assert result.failed_batches == 1
    assert result.notifications_created == 1
    assert [n.user_id for n in db.query(Notification).all()] == [member.id]


def test_report_webhook_failure_does_not_fail_dispatch(db, member, monkeypatch):
    from teamdesk import webhooks

    def failing_http_request(*, url, headers=None, data=None, method="POST", timeout=10):
        raise RuntimeError("HTTP 502 from https://hooks.example.test/reports: bad gateway")

    monkeypatch.setattr(webhooks, "_http_request", failing_http_request)

    result = send_daily_report_to_all_users(db, report_date=DAY, now=NOW)

    assert result.notifications_created == 1
    assert result.webhook_sent is False
