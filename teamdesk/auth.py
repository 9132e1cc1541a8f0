from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import get_settings
from .db import get_db
from .models import Role, User


# PBKDF2-SHA256 is implemented fully in passlib and needs no binary backend.
pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__rounds=200_000,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

DEFAULT_ADMIN_EMAIL = "admin@teamdesk.local"

logger = logging.getLogger("teamdesk.auth")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _log_admin_credentials(headline: str, email: str, password: str) -> None:
    logger.warning("============================================================")
    logger.warning(headline)
    logger.warning("Email: %s", email)
    logger.warning("Password: %s", password)
    logger.warning("Please log in and change this password.")
    logger.warning("============================================================")


def ensure_admin_user(db: Session) -> None:
    """Ensure at least one active admin account exists.

    Called during login attempts so a deployment that lost its admin can
    self-heal. The randomized password is written to the logs.
    """
    try:
        existing_admin = (
            db.query(User).filter(User.role == Role.admin.value).filter(User.is_active.is_(True)).first()
        )
        if existing_admin:
            return

        admin_password = secrets.token_urlsafe(12)

        existing = db.query(User).filter(func.lower(User.email) == DEFAULT_ADMIN_EMAIL).first()
        if existing:
            existing.role = Role.admin.value
            existing.is_active = True
            existing.hashed_password = hash_password(admin_password)
            db.add(existing)
            db.commit()
            _log_admin_credentials("Teamdesk admin recovery: existing admin account re-enabled", existing.email, admin_password)
            return

        u = User(
            name="Administrator",
            email=DEFAULT_ADMIN_EMAIL,
            hashed_password=hash_password(admin_password),
            role=Role.admin.value,
            is_active=True,
        )
        db.add(u)
        db.commit()
        _log_admin_credentials("Teamdesk admin recovery: new admin user created", u.email, admin_password)

    except Exception:
        # Never block login flows on recovery failures.
        db.rollback()
        logger.exception("Failed to auto-create admin user on login attempt")


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    ensure_admin_user(db)
    ident = (email or "").strip().lower()
    if not ident:
        return None

    user = db.query(User).filter(func.lower(User.email) == ident).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def create_access_token(*, subject: str, role: str, expires_minutes: int | None = None) -> str:
    settings = get_settings()
    minutes = int(expires_minutes or settings.security.token_minutes)
    expire = datetime.utcnow() + timedelta(minutes=minutes)
    to_encode = {
        "sub": subject,
        "exp": expire,
        "role": str(role),
    }
    return jwt.encode(to_encode, settings.security.jwt_secret, algorithm="HS256")


def _decode_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.security.jwt_secret, algorithms=["HS256"])


def get_current_user_api(db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = _decode_token(token)
        subject: str | None = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = int(subject)
    except (JWTError, ValueError):
        raise credentials_exception

    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        raise credentials_exception
    return user


def require_admin_api(current_user: User = Depends(get_current_user_api)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return current_user


def require_manager_api(current_user: User = Depends(get_current_user_api)) -> User:
    if not current_user.is_manager:
        raise HTTPException(status_code=403, detail="Project manager or admin privileges required")
    return current_user
