from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zeitnachweis.db import SessionLocal
from zeitnachweis.errors import DeliveryError, ValidationError
from zeitnachweis.models import Employee, ReminderKind, ReminderLog, TimesheetUpload
from zeitnachweis.services.employees import count_active_employees, count_uploaded_employees
from zeitnachweis.services.notifications import EmailChannel, NotificationDispatcher
from zeitnachweis.services.periods import Period, reminder_target_period, resolve_period
from zeitnachweis.services.working_days import working_day_number
from zeitnachweis.settings import (
    Settings,
    get_app_timezone,
    get_public_base_url,
    get_reminder_send_time,
    get_settings,
)

logger = logging.getLogger("zeitnachweis.reminders")


@dataclass(slots=True)
class ReminderBatchResult:
    kind: ReminderKind
    period: Period
    manual: bool = False
    candidates: int = 0
    sent: int = 0
    failed: list[str] = field(default_factory=list)
    skipped: int = 0
    email_configured: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "period": self.period.to_dict(),
            "manual": self.manual,
            "candidates": self.candidates,
            "sent": self.sent,
            "failed": list(self.failed),
            "skipped": self.skipped,
            "email_configured": self.email_configured,
        }


def parse_reminder_kind(value: str | None) -> ReminderKind:
    normalized = (value or "").strip().lower()
    try:
        return ReminderKind(normalized)
    except ValueError as exc:
        raise ValidationError(
            "Ungültiger Erinnerungstyp. Verwenden Sie: first, second oder final.",
            code="INVALID_REMINDER_TYPE",
        ) from exc


def reminder_days(settings: Settings | None = None) -> dict[int, ReminderKind]:
    settings = settings or get_settings()
    return {
        int(settings.reminder_first_day): ReminderKind.FIRST,
        int(settings.reminder_second_day): ReminderKind.SECOND,
        int(settings.reminder_final_day): ReminderKind.FINAL,
    }


def resolve_due_reminder_kind(local_now: datetime, settings: Settings | None = None) -> ReminderKind | None:
    kind = reminder_days(settings).get(local_now.day)
    if kind is None:
        return None
    if local_now.time().replace(tzinfo=None) < get_reminder_send_time(settings):
        return None
    return kind


def find_employees_missing_upload(session: Session, period: Period) -> list[Employee]:
    stmt = (
        select(Employee)
        .outerjoin(
            TimesheetUpload,
            and_(
                TimesheetUpload.employee_id == Employee.id,
                TimesheetUpload.month == period.month,
                TimesheetUpload.year == period.year,
            ),
        )
        .where(Employee.is_active.is_(True), TimesheetUpload.id.is_(None))
        .order_by(Employee.lastname, Employee.firstname, Employee.id)
    )
    return list(session.scalars(stmt).all())


def _already_reminded_employee_ids(session: Session, period: Period, kind: ReminderKind) -> set[int]:
    stmt = select(ReminderLog.employee_id).where(
        ReminderLog.month == period.month,
        ReminderLog.year == period.year,
        ReminderLog.kind == kind,
    )
    return set(session.scalars(stmt).all())


def run_reminder_batch(
    session: Session,
    kind: ReminderKind,
    period: Period,
    *,
    dispatcher: NotificationDispatcher | None = None,
    settings: Settings | None = None,
    manual: bool = False,
    skip_already_reminded: bool = False,
    now_utc: datetime | None = None,
) -> ReminderBatchResult:
    """Send ``kind`` reminders to every active employee without an upload for ``period``.

    Employees are processed one after another; a failed delivery is recorded
    and the batch carries on. A reminder-log row is written only after the
    message was handed to the mail server.
    """
    settings = settings or get_settings()
    dispatcher = dispatcher or NotificationDispatcher(EmailChannel(settings))
    now_utc = now_utc or datetime.now(timezone.utc)
    result = ReminderBatchResult(kind=kind, period=period, manual=manual)

    candidates = find_employees_missing_upload(session, period)
    result.candidates = len(candidates)
    if skip_already_reminded and candidates:
        reminded = _already_reminded_employee_ids(session, period, kind)
        remaining = [employee for employee in candidates if employee.id not in reminded]
        result.skipped += len(candidates) - len(remaining)
        candidates = remaining

    if not dispatcher.can_deliver:
        result.email_configured = False
        result.skipped += len(candidates)
        logger.warning("reminder_batch_email_unavailable", extra=result.to_dict())
        return result

    local_today = now_utc.astimezone(get_app_timezone(settings)).date()
    base_template_data = {
        "period": period,
        "upload_url": f"{get_public_base_url(settings)}/",
        "working_day": working_day_number(local_today),
    }

    for employee in candidates:
        template_data = {**base_template_data, "employee_name": employee.full_name}
        try:
            delivery = dispatcher.send(kind.value, employee.email, template_data)
        except DeliveryError:
            result.failed.append(employee.email)
            continue
        if not delivery.delivered:
            result.skipped += 1
            continue

        result.sent += 1
        session.add(
            ReminderLog(
                employee_id=employee.id,
                month=period.month,
                year=period.year,
                kind=kind,
                manual=manual,
                sent_at=now_utc,
            )
        )
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "reminder_log_write_failed",
                extra={"employee_id": employee.id, "kind": kind.value, "period": period.to_dict()},
            )

    log_level = logging.WARNING if result.failed else logging.INFO
    logger.log(log_level, "reminder_batch_complete", extra=result.to_dict())
    return result


def trigger_manual_reminders(
    session: Session,
    *,
    reminder_type: str | None,
    month: int | None = None,
    year: int | None = None,
    dispatcher: NotificationDispatcher | None = None,
    settings: Settings | None = None,
    now_utc: datetime | None = None,
) -> ReminderBatchResult:
    settings = settings or get_settings()
    kind = parse_reminder_kind(reminder_type)
    period = resolve_period(month, year, default=reminder_target_period(settings, now_utc=now_utc))
    return run_reminder_batch(
        session,
        kind,
        period,
        dispatcher=dispatcher,
        settings=settings,
        manual=True,
        now_utc=now_utc,
    )


def run_scheduled_reminders(
    now_utc: datetime,
    db: Session | None = None,
    *,
    last_fired_on: date | None = None,
    dispatcher: NotificationDispatcher | None = None,
    settings: Settings | None = None,
) -> ReminderBatchResult | None:
    settings = settings or get_settings()
    local_now = now_utc.astimezone(get_app_timezone(settings))
    if last_fired_on is not None and local_now.date() == last_fired_on:
        return None
    kind = resolve_due_reminder_kind(local_now, settings)
    if kind is None:
        return None

    if db is None:
        with SessionLocal() as managed_db:
            return run_scheduled_reminders(
                now_utc,
                db=managed_db,
                last_fired_on=last_fired_on,
                dispatcher=dispatcher,
                settings=settings,
            )

    period = reminder_target_period(settings, now_utc=now_utc)
    logger.info(
        "reminder_schedule_fired",
        extra={"kind": kind.value, "period": period.to_dict(), "local_day": local_now.date().isoformat()},
    )
    return run_reminder_batch(
        db,
        kind,
        period,
        dispatcher=dispatcher,
        settings=settings,
        skip_already_reminded=True,
        now_utc=now_utc,
    )


def get_email_stats(
    session: Session,
    *,
    settings: Settings | None = None,
    now_utc: datetime | None = None,
    period: Period | None = None,
) -> dict[str, Any]:
    """Upload numbers for ``period`` (default: current month) and reminder
    numbers for the month reminders are currently chasing."""
    settings = settings or get_settings()
    reminder_period = reminder_target_period(settings, now_utc=now_utc)
    upload_period = period or Period.of(
        (now_utc or datetime.now(timezone.utc)).astimezone(get_app_timezone(settings)).date()
    )

    total = count_active_employees(session)
    uploaded = count_uploaded_employees(session, upload_period)
    rows = session.execute(
        select(ReminderLog.kind, func.count(ReminderLog.id))
        .where(ReminderLog.month == reminder_period.month, ReminderLog.year == reminder_period.year)
        .group_by(ReminderLog.kind)
    ).all()
    by_kind = {kind.value: 0 for kind in ReminderKind}
    for kind, count in rows:
        key = kind.value if isinstance(kind, ReminderKind) else str(kind)
        by_kind[key] = int(count or 0)

    return {
        "total_employees": total,
        "uploaded_employees": uploaded,
        "pending_employees": max(0, total - uploaded),
        "reminders_sent": sum(by_kind.values()),
        "reminders_by_kind": by_kind,
        "month": upload_period.month,
        "year": upload_period.year,
        "reminder_month": reminder_period.month,
        "reminder_year": reminder_period.year,
        "status_for": "current_month" if period is None else "requested_month",
    }
