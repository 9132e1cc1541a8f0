from __future__ import annotations

from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user_api, require_manager_api
from ..db import get_db
from ..reports import (
    format_report_message,
    generate_daily_report,
    get_user_daily_report,
    send_daily_report_to_all_users,
)
from ..schemas import DailyReportOut, ReportDispatchOut, UserDailyReportOut


router = APIRouter()


@router.get("/daily", response_model=DailyReportOut)
def api_daily_report(
    report_date: date | None = Query(default=None, description="Local calendar day; defaults to today"),
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    report = generate_daily_report(db, report_date=report_date)
    return DailyReportOut(**report.to_dict(), message=format_report_message(report))


@router.get("/daily/users/{user_id}", response_model=UserDailyReportOut)
def api_user_daily_report(
    user_id: int,
    report_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user_api),
):
    if not current_user.is_manager and int(current_user.id) != int(user_id):
        raise HTTPException(status_code=403, detail="Not allowed")
    report = get_user_daily_report(db, user_id, report_date=report_date)
    return UserDailyReportOut.model_validate(report, from_attributes=True)


@router.post("/daily/send", response_model=ReportDispatchOut)
def api_send_daily_report(
    report_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    manager=Depends(require_manager_api),
):
    return ReportDispatchOut(**asdict(send_daily_report_to_all_users(db, report_date=report_date)))
