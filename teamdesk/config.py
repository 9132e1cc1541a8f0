from __future__ import annotations

import os
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("TEAMDESK_SETTINGS", "/data/settings.yml")


class AppSettings(BaseModel):
    name: str = "Teamdesk"
    timezone: str = "UTC"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8890
    base_url: str = ""


class SecuritySettings(BaseModel):
    jwt_secret: str = "CHANGE_ME_JWT_SECRET"
    token_minutes: int = 60 * 24


class DatabaseSettings(BaseModel):
    path: str = "/data/teamdesk.db"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    dir: str = "/data/logs"
    retention_days: int = 30


class WebhookSettings(BaseModel):
    # Defaults used until an admin stores URLs in the database.
    task_url: str = ""
    report_url: str = ""
    timeout_seconds: int = 10


class ReportSettings(BaseModel):
    enabled: bool = True
    # Local time (app.timezone) at which the daily report goes out.
    hour: int = Field(default=20, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    batch_size: int = Field(default=100, ge=1)
    top_performers: int = Field(default=5, ge=0)


class RealtimeSettings(BaseModel):
    poll_seconds: float = 2.0
    change_retention_hours: int = 48
    # Seconds before a stream is closed; 0 keeps it open.
    stream_max_seconds: float = Field(default=300.0, ge=0)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)


def _ensure_settings_file(path: str) -> None:
    p = Path(path)
    if p.exists():
        return

    p.parent.mkdir(parents=True, exist_ok=True)

    sample = Path(__file__).resolve().parent.parent / "settings.sample.yml"
    if sample.exists():
        shutil.copy(sample, p)
    else:
        p.write_text(
            "app:\n  name: 'Teamdesk'\n  timezone: 'UTC'\n  host: '0.0.0.0'\n  port: 8890\n"
            "security:\n  jwt_secret: 'CHANGE_ME_JWT_SECRET'\n"
            "database:\n  path: '/data/teamdesk.db'\n"
            "logging:\n  level: 'INFO'\n  dir: '/data/logs'\n  retention_days: 30\n"
            "report:\n  enabled: true\n  hour: 20\n  minute: 0\n"
        )


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("TEAMDESK_SETTINGS", DEFAULT_SETTINGS_PATH)
    _ensure_settings_file(settings_path)
    raw = _load_yaml(settings_path)
    s = Settings.model_validate(raw)

    jwt_secret = os.environ.get("TEAMDESK_JWT_SECRET")
    if jwt_secret:
        s.security.jwt_secret = jwt_secret

    base_url_env = os.environ.get("TEAMDESK_BASE_URL")
    if base_url_env:
        s.app.base_url = str(base_url_env).strip()

    port_env = os.environ.get("PORT") or os.environ.get("TEAMDESK_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s
