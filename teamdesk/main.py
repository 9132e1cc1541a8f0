from __future__ import annotations

import logging
import secrets

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .auth import DEFAULT_ADMIN_EMAIL
from .config import get_settings
from .crud import create_user
from .db import Base, SessionLocal, engine
from .logging_setup import purge_old_logs, setup_logging
from .models import Role, User
from .realtime import purge_old_changes
from .reports import send_daily_report_to_all_users
from .routers import (
    api_admin,
    api_auth,
    api_daily_tasks,
    api_notifications,
    api_projects,
    api_reports,
    api_tasks,
    api_users,
)
from .utils.time_utils import get_app_tz
from .version import APP_VERSION
from .webhooks import shutdown_webhook_dispatcher


settings = get_settings()

setup_logging(level=settings.logging.level, log_dir=settings.logging.dir)
logger = logging.getLogger("teamdesk")


app = FastAPI(title=settings.app.name, version=APP_VERSION)

app.include_router(api_auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(api_users.router, prefix="/api/users", tags=["users"])
app.include_router(api_projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(api_tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(api_daily_tasks.router, prefix="/api/daily-tasks", tags=["daily-tasks"])
app.include_router(api_notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(api_reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(api_admin.router, prefix="/api/admin", tags=["admin"])


scheduler: BackgroundScheduler | None = None


def _daily_report_job() -> None:
    db = SessionLocal()
    try:
        send_daily_report_to_all_users(db)
    except Exception:
        logger.exception("Error while sending the daily performance report")
    finally:
        db.close()


def _log_retention_job() -> None:
    try:
        purged = purge_old_logs(retention_days=int(settings.logging.retention_days), log_dir=settings.logging.dir)
        if purged:
            logger.info("Purged %s old log files", purged)
    except Exception:
        logger.exception("Error while purging old log files")


def _change_log_retention_job() -> None:
    db = SessionLocal()
    try:
        purged = purge_old_changes(db, retention_hours=int(settings.realtime.change_retention_hours))
        if purged:
            logger.info("Purged %s task change records", purged)
    except Exception:
        logger.exception("Error while purging task change records")
    finally:
        db.close()


def _configure_jobs(sched: BackgroundScheduler) -> None:
    tz = get_app_tz()
    if tz.key != settings.app.timezone:
        logger.warning("Unknown timezone %r in settings, scheduling jobs in %s", settings.app.timezone, tz.key)

    if settings.report.enabled:
        sched.add_job(
            _daily_report_job,
            "cron",
            hour=int(settings.report.hour),
            minute=int(settings.report.minute),
            timezone=tz,
            id="daily_report",
            replace_existing=True,
        )
        logger.info(
            "Daily report scheduled at %02d:%02d (%s)",
            int(settings.report.hour),
            int(settings.report.minute),
            tz.key,
        )
    else:
        logger.info("Daily report disabled")

    if int(settings.logging.retention_days) > 0:
        sched.add_job(
            _log_retention_job,
            "cron",
            hour=0,
            minute=15,
            timezone=tz,
            id="log_retention",
            replace_existing=True,
        )

    sched.add_job(
        _change_log_retention_job,
        "interval",
        hours=1,
        id="task_change_retention",
        replace_existing=True,
    )


def _ensure_first_admin() -> None:
    db = SessionLocal()
    try:
        if db.query(User).count() == 0:
            admin_password = secrets.token_urlsafe(12)
            create_user(
                db,
                name="Administrator",
                email=DEFAULT_ADMIN_EMAIL,
                password=admin_password,
                role=Role.admin.value,
            )
            logger.warning("============================================================")
            logger.warning("Teamdesk initial admin account created")
            logger.warning("Email: %s", DEFAULT_ADMIN_EMAIL)
            logger.warning("Password: %s", admin_password)
            logger.warning("Please log in and change this password.")
            logger.warning("============================================================")
    finally:
        db.close()


@app.on_event("startup")
def on_startup() -> None:
    global scheduler

    Base.metadata.create_all(bind=engine)
    _ensure_first_admin()

    scheduler = BackgroundScheduler(timezone="UTC")
    _configure_jobs(scheduler)
    _log_retention_job()

    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
    shutdown_webhook_dispatcher()


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"status": "ok", "version": APP_VERSION}
