from __future__ import annotations

import argparse
import json
import secrets
import sys
from dataclasses import asdict
from datetime import date

from sqlalchemy.orm import Session

from .auth import DEFAULT_ADMIN_EMAIL, hash_password
from .config import get_settings
from .crud import create_user, get_user_by_email
from .db import Base, SessionLocal, engine
from .logging_setup import setup_logging
from .models import Role
from .reports import send_daily_report_to_all_users
from .webhooks import wait_for_webhook_dispatcher_idle


def _reset_admin_password(db: Session, *, email: str, new_password: str) -> None:
    user = get_user_by_email(db, email)
    if user:
        user.hashed_password = hash_password(new_password)
        # The recovered account must be a usable admin.
        user.role = Role.admin.value
        user.is_active = True
        db.add(user)
        db.commit()
        return

    create_user(db, name="Administrator", email=email, password=new_password, role=Role.admin.value)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="teamdesk")
    sub = parser.add_subparsers(dest="command", required=True)

    p_reset = sub.add_parser(
        "reset-admin",
        help="Reset the admin password without knowing the current password.",
    )
    p_reset.add_argument(
        "--email",
        default=DEFAULT_ADMIN_EMAIL,
        help=f"Admin email to reset (default: {DEFAULT_ADMIN_EMAIL})",
    )
    p_reset.add_argument(
        "--password",
        default=None,
        help="New password. If omitted, a random password is generated.",
    )
    p_reset.add_argument(
        "--print",
        action="store_true",
        help="Print the new password even when --password is provided.",
    )

    p_report = sub.add_parser(
        "send-daily-report",
        help="Send the daily performance report now.",
    )
    p_report.add_argument(
        "--date",
        default=None,
        help="Report day as YYYY-MM-DD (default: today in the app timezone)",
    )

    args = parser.parse_args(argv)
    setup_logging(level=get_settings().logging.level)
    Base.metadata.create_all(bind=engine)

    if args.command == "reset-admin":
        new_password: str = args.password or secrets.token_urlsafe(12)
        with SessionLocal() as db:
            _reset_admin_password(db, email=args.email, new_password=new_password)

        if args.password is None or args.print:
            # Printed to stdout so operators can copy it.
            print(new_password)
        else:
            print("ok")
        return

    if args.command == "send-daily-report":
        try:
            report_date = date.fromisoformat(args.date) if args.date else None
        except ValueError:
            parser.error("--date must be YYYY-MM-DD")

        with SessionLocal() as db:
            result = send_daily_report_to_all_users(db, report_date=report_date)
        wait_for_webhook_dispatcher_idle(timeout=10.0)
        print(json.dumps(asdict(result), default=str))
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
