from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zeitnachweis.errors import ConflictError, NotFoundError, ValidationError
from zeitnachweis.models import Employee, TimesheetUpload
from zeitnachweis.services.notifications import normalize_notification_email
from zeitnachweis.services.periods import Period

logger = logging.getLogger("zeitnachweis.employees")


@dataclass(frozen=True, slots=True)
class EmployeeUploadStatus:
    employee: Employee
    period: Period
    upload: TimesheetUpload | None

    @property
    def uploaded(self) -> bool:
        return self.upload is not None


def split_full_name(name: str) -> tuple[str, str]:
    """Split ``"Max Mustermann"`` into first and last name.

    The first token is the first name and the rest the last name. A single
    token is treated as the last name.
    """
    parts = name.split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return "", parts[0]
    return parts[0], " ".join(parts[1:])


def create_employee(
    session: Session,
    *,
    email: str | None,
    name: str | None = None,
    firstname: str | None = None,
    lastname: str | None = None,
) -> Employee:
    if (firstname is None or lastname is None) and name:
        split_first, split_last = split_full_name(name)
        firstname = firstname or split_first
        lastname = lastname or split_last
    resolved_first = (firstname or "").strip()
    resolved_last = (lastname or "").strip()
    normalized_email = normalize_notification_email(email)

    if not resolved_last or not email:
        raise ValidationError(
            "Name und E-Mail sind erforderlich.",
            code="MISSING_FIELDS",
        )
    if normalized_email is None:
        raise ValidationError("Ungültige E-Mail-Adresse.", code="INVALID_EMAIL")

    existing = session.scalar(select(Employee.id).where(Employee.email == normalized_email))
    if existing is not None:
        raise ConflictError("E-Mail-Adresse bereits vorhanden.", code="DUPLICATE_EMAIL")

    employee = Employee(firstname=resolved_first, lastname=resolved_last, email=normalized_email)
    session.add(employee)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("E-Mail-Adresse bereits vorhanden.", code="DUPLICATE_EMAIL") from exc
    session.refresh(employee)
    logger.info("employee_created", extra={"employee_id": employee.id})
    return employee


def list_employees(session: Session, *, include_inactive: bool = True) -> list[Employee]:
    stmt = select(Employee).order_by(Employee.lastname, Employee.firstname, Employee.id)
    if not include_inactive:
        stmt = stmt.where(Employee.is_active.is_(True))
    return list(session.scalars(stmt).all())


def list_active_employee_status(session: Session, period: Period) -> list[EmployeeUploadStatus]:
    stmt = (
        select(Employee, TimesheetUpload)
        .outerjoin(
            TimesheetUpload,
            and_(
                TimesheetUpload.employee_id == Employee.id,
                TimesheetUpload.month == period.month,
                TimesheetUpload.year == period.year,
            ),
        )
        .where(Employee.is_active.is_(True))
        .order_by(Employee.lastname, Employee.firstname, Employee.id)
    )
    return [
        EmployeeUploadStatus(employee=employee, period=period, upload=upload)
        for employee, upload in session.execute(stmt).all()
    ]


def set_employee_active(session: Session, employee_id: int, is_active: bool) -> Employee:
    employee = session.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Mitarbeiter nicht gefunden.", code="EMPLOYEE_NOT_FOUND")
    employee.is_active = is_active
    session.commit()
    session.refresh(employee)
    logger.info(
        "employee_reactivated" if is_active else "employee_deactivated",
        extra={"employee_id": employee.id},
    )
    return employee


def deactivate_employee(session: Session, employee_id: int) -> Employee:
    return set_employee_active(session, employee_id, False)


def count_active_employees(session: Session) -> int:
    return int(session.scalar(select(func.count(Employee.id)).where(Employee.is_active.is_(True))) or 0)


def count_uploaded_employees(session: Session, period: Period) -> int:
    stmt = (
        select(func.count(func.distinct(Employee.id)))
        .join(TimesheetUpload, TimesheetUpload.employee_id == Employee.id)
        .where(
            Employee.is_active.is_(True),
            TimesheetUpload.month == period.month,
            TimesheetUpload.year == period.year,
        )
    )
    return int(session.scalar(stmt) or 0)
