from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zeitnachweis.errors import NotFoundError, StorageError, UploadWindowClosedError, ValidationError
from zeitnachweis.models import Employee, TimesheetUpload
from zeitnachweis.services.periods import Period, local_today, resolve_period
from zeitnachweis.services.working_days import nth_working_day_of_month
from zeitnachweis.settings import Settings, get_settings

logger = logging.getLogger("zeitnachweis.uploads")

ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg"}
ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/pjpeg",
}
UPSERT_UPDATE_COLUMNS = (
    "filename",
    "filepath",
    "original_filename",
    "content_type",
    "size_bytes",
    "uploaded_at",
)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
MAX_ORIGINAL_NAME_LENGTH = 120


@dataclass(frozen=True, slots=True)
class UploadWindow:
    allowed: bool
    window_working_days: int
    closes_on: date | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "status": "allowed" if self.allowed else "closed",
            "message": self.message,
            "window_working_days": self.window_working_days,
            "closes_on": self.closes_on.isoformat() if self.closes_on else None,
        }


@dataclass(frozen=True, slots=True)
class StoredUpload:
    upload_id: int
    employee_id: int
    employee_name: str
    employee_email: str
    period: Period
    filename: str
    filepath: str
    original_filename: str
    content_type: str | None
    size_bytes: int
    uploaded_at: datetime
    replaced: bool


def get_upload_window(today: date, settings: Settings | None = None) -> UploadWindow:
    settings = settings or get_settings()
    window_days = max(0, int(settings.upload_window_working_days))
    if window_days == 0:
        return UploadWindow(
            allowed=True,
            window_working_days=0,
            closes_on=None,
            message="Upload jederzeit möglich.",
        )

    closes_on = nth_working_day_of_month(today.year, today.month, window_days)
    if closes_on is None:
        # Fewer working days than the window: the whole month stays open.
        return UploadWindow(
            allowed=True,
            window_working_days=window_days,
            closes_on=None,
            message="Upload in diesem Monat jederzeit möglich.",
        )
    if today <= closes_on:
        return UploadWindow(
            allowed=True,
            window_working_days=window_days,
            closes_on=closes_on,
            message=f"Upload möglich bis einschließlich {closes_on.strftime('%d.%m.%Y')}.",
        )
    return UploadWindow(
        allowed=False,
        window_working_days=window_days,
        closes_on=closes_on,
        message=(
            f"Der Upload-Zeitraum ist geschlossen. Uploads sind nur in den ersten "
            f"{window_days} Werktagen eines Monats möglich."
        ),
    )


def ensure_upload_window_open(today: date, settings: Settings | None = None) -> UploadWindow:
    window = get_upload_window(today, settings)
    if not window.allowed:
        raise UploadWindowClosedError(window.message, details=window.to_dict())
    return window


def validate_upload_file(
    *,
    filename: str | None,
    content_type: str | None,
    size_bytes: int,
    settings: Settings | None = None,
) -> None:
    settings = settings or get_settings()
    name = (filename or "").strip()
    if not name:
        raise ValidationError("Keine Datei hochgeladen.", code="FILE_MISSING")

    extension = Path(name).suffix.lower()
    normalized_type = (content_type or "").split(";")[0].strip().lower()
    if extension not in ALLOWED_EXTENSIONS or normalized_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(
            "Nur PDF, PNG, JPG, JPEG Dateien sind erlaubt!",
            code="FILE_TYPE_NOT_ALLOWED",
            details={"extension": extension, "content_type": normalized_type},
        )
    if size_bytes <= 0:
        raise ValidationError("Die hochgeladene Datei ist leer.", code="FILE_EMPTY")
    if size_bytes > settings.upload_max_bytes:
        limit_mb = settings.upload_max_bytes / (1024 * 1024)
        raise ValidationError(
            f"Datei ist zu groß. Maximale Dateigröße: {limit_mb:g} MB",
            code="FILE_TOO_LARGE",
            details={"size_bytes": size_bytes, "max_bytes": settings.upload_max_bytes},
        )


def sanitize_filename(original: str) -> str:
    base = Path(original.replace("\\", "/")).name
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).strip("._")
    if not cleaned:
        return "datei"
    stem, dot, suffix = cleaned.rpartition(".")
    if dot and len(cleaned) > MAX_ORIGINAL_NAME_LENGTH:
        return f"{stem[: MAX_ORIGINAL_NAME_LENGTH - len(suffix) - 1]}.{suffix}"
    return cleaned[:MAX_ORIGINAL_NAME_LENGTH]


def build_stored_filename(employee_id: int, today: date, original: str) -> str:
    return f"zeitnachweis_{employee_id}_{today.isoformat()}_{secrets.token_hex(4)}_{sanitize_filename(original)}"


def _write_file(upload_dir: Path, stored_name: str, content: bytes) -> Path:
    try:
        upload_dir.mkdir(parents=True, exist_ok=True)
        target = upload_dir / stored_name
        with target.open("xb") as handle:
            handle.write(content)
    except OSError as exc:
        logger.exception("upload_write_failed", extra={"stored_name": stored_name})
        raise StorageError("Fehler beim Speichern der Datei.") from exc
    return target


def _remove_file_quietly(path: Path, *, reason: str) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("upload_file_cleanup_failed", extra={"path": str(path), "reason": reason})


def _upsert_upload_row(session: Session, values: dict[str, Any]) -> None:
    dialect_name = session.get_bind().dialect.name
    if dialect_name in {"postgresql", "sqlite"}:
        insert = postgresql.insert if dialect_name == "postgresql" else sqlite.insert
        stmt = insert(TimesheetUpload).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["employee_id", "month", "year"],
            set_={column: stmt.excluded[column] for column in UPSERT_UPDATE_COLUMNS},
        )
        session.execute(stmt)
        return

    existing = session.scalar(
        select(TimesheetUpload).where(
            TimesheetUpload.employee_id == values["employee_id"],
            TimesheetUpload.month == values["month"],
            TimesheetUpload.year == values["year"],
        )
    )
    if existing is None:
        session.add(TimesheetUpload(**values))
        return
    for column in UPSERT_UPDATE_COLUMNS:
        setattr(existing, column, values[column])


def _select_upload(session: Session, employee_id: int, period: Period) -> TimesheetUpload | None:
    return session.scalar(
        select(TimesheetUpload).where(
            TimesheetUpload.employee_id == employee_id,
            TimesheetUpload.month == period.month,
            TimesheetUpload.year == period.year,
        )
    )


def _is_inside(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


def store_timesheet_upload(
    session: Session,
    *,
    employee_id: int,
    filename: str | None,
    content_type: str | None,
    content: bytes,
    month: int | None = None,
    year: int | None = None,
    settings: Settings | None = None,
    now_utc: datetime | None = None,
) -> StoredUpload:
    settings = settings or get_settings()
    now_utc = now_utc or datetime.now(timezone.utc)
    today = local_today(settings, now_utc=now_utc)

    ensure_upload_window_open(today, settings)
    validate_upload_file(
        filename=filename,
        content_type=content_type,
        size_bytes=len(content),
        settings=settings,
    )
    period = resolve_period(month, year, default=Period.of(today))

    employee = session.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Mitarbeiter nicht gefunden.", code="EMPLOYEE_NOT_FOUND")
    if not employee.is_active:
        raise ValidationError("Mitarbeiter ist deaktiviert.", code="EMPLOYEE_INACTIVE")
    employee_name = employee.full_name
    employee_email = employee.email

    original_filename = (filename or "").strip()
    upload_dir = Path(settings.upload_dir)
    stored_name = build_stored_filename(employee_id, today, original_filename)
    target = _write_file(upload_dir, stored_name, content)

    previous = _select_upload(session, employee_id, period)
    previous_path = Path(previous.filepath) if previous is not None else None

    normalized_type = (content_type or "").split(";")[0].strip().lower() or None
    try:
        _upsert_upload_row(
            session,
            {
                "employee_id": employee_id,
                "month": period.month,
                "year": period.year,
                "filename": stored_name,
                "filepath": str(target),
                "original_filename": original_filename[:255],
                "content_type": normalized_type,
                "size_bytes": len(content),
                "uploaded_at": now_utc,
            },
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        _remove_file_quietly(target, reason="upsert_failed")
        logger.exception(
            "upload_upsert_failed",
            extra={"employee_id": employee_id, "period": period.to_dict()},
        )
        raise StorageError("Fehler beim Speichern des Uploads.") from exc

    stored = _select_upload(session, employee_id, period)
    if stored is None:
        raise StorageError("Upload wurde nicht gespeichert.")

    replaced = previous_path is not None
    if (
        replaced
        and settings.upload_delete_replaced_files
        and previous_path != target
        and _is_inside(previous_path, upload_dir)
    ):
        _remove_file_quietly(previous_path, reason="replaced")

    logger.info(
        "timesheet_uploaded",
        extra={
            "employee_id": employee_id,
            "period": period.to_dict(),
            "stored_name": stored_name,
            "size_bytes": len(content),
            "replaced": replaced,
        },
    )
    return StoredUpload(
        upload_id=stored.id,
        employee_id=employee_id,
        employee_name=employee_name,
        employee_email=employee_email,
        period=period,
        filename=stored_name,
        filepath=str(target),
        original_filename=original_filename,
        content_type=normalized_type,
        size_bytes=len(content),
        uploaded_at=now_utc,
        replaced=replaced,
    )
