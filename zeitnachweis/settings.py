from functools import lru_cache
from datetime import time
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

DEFAULT_SEND_TIME = time(9, 0)


class Settings(BaseSettings):
    database_url: str | None = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: str = ""
    db_database: str = "zeitnachweis"

    app_name: str = "Zeitnachweis"
    port: int = 3001
    base_url: str | None = None
    app_timezone: str = "Europe/Berlin"
    cors_allow_origins: str = "*"
    log_level: str = "INFO"
    schema_guard_strict: bool = False

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    smtp_from_name: str = "Zeitnachweis-System"
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 15
    notification_email_enabled: bool = True

    upload_dir: str = "uploads"
    upload_max_bytes: int = 10 * 1024 * 1024
    upload_window_working_days: int = 0
    upload_attach_file_to_notice: bool = True
    upload_delete_replaced_files: bool = True

    reminder_first_day: int = 5
    reminder_second_day: int = 10
    reminder_final_day: int = 15
    reminder_send_time: str = "09:00"
    reminder_worker_enabled: bool = True
    reminder_worker_interval_seconds: int = 60

    admin_default_password: str = "admin123"
    admin_session_ttl_minutes: int | None = None
    trust_proxy_headers: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_database_url(settings: Settings | None = None) -> str | URL:
    settings = settings or get_settings()
    if settings.database_url:
        return settings.database_url
    return URL.create(
        "postgresql+psycopg",
        username=settings.db_user,
        password=settings.db_password or None,
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_database,
    )


def get_cors_origins() -> list[str]:
    raw = get_settings().cors_allow_origins
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_public_base_url(settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    if settings.base_url:
        return settings.base_url.rstrip("/")
    return f"http://localhost:{settings.port}"


def get_app_timezone(settings: Settings | None = None) -> ZoneInfo:
    settings = settings or get_settings()
    return ZoneInfo(settings.app_timezone)


def get_reminder_send_time(settings: Settings | None = None) -> time:
    settings = settings or get_settings()
    raw = (settings.reminder_send_time or "").strip()
    try:
        hour_str, minute_str = raw.split(":")
        return time(hour=int(hour_str), minute=int(minute_str))
    except ValueError:
        return DEFAULT_SEND_TIME
