from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from zeitnachweis.db import get_db
from zeitnachweis.errors import ValidationError
from zeitnachweis.models import Employee
from zeitnachweis.schemas import (
    EmployeeActiveUpdateRequest,
    EmployeeCreate,
    EmployeeRead,
    EmployeeStatusRead,
    MessageResponse,
    UploadProbeResponse,
    UploadResponse,
)
from zeitnachweis.security import require_admin_session
from zeitnachweis.services.employees import (
    create_employee,
    deactivate_employee,
    list_active_employee_status,
    list_employees,
    set_employee_active,
)
from zeitnachweis.services.notifications import send_upload_notice
from zeitnachweis.services.periods import current_period, local_today, resolve_period
from zeitnachweis.services.uploads import get_upload_window, store_timesheet_upload
from zeitnachweis.settings import get_settings

router = APIRouter(tags=["public"])

UPLOAD_FILE_FIELDS = ("file", "zeitnachweis")
TRUE_VALUES = {"1", "true", "yes", "on"}


def _to_employee_read(employee: Employee) -> EmployeeRead:
    return EmployeeRead(
        id=employee.id,
        firstname=employee.firstname,
        lastname=employee.lastname,
        name=employee.full_name,
        email=employee.email,
        active=employee.is_active,
        created_at=employee.created_at,
    )


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def _optional_int(value: Any, *, field_name: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Ungültiger Wert für {field_name}.",
            code="INVALID_FIELD",
            details={"field": field_name},
        ) from exc


def _probe_response() -> UploadProbeResponse:
    settings = get_settings()
    window = get_upload_window(local_today(settings), settings)
    return UploadProbeResponse(**window.to_dict())


@router.get("/api/employees", response_model=list[EmployeeRead])
def get_employees(
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[EmployeeRead]:
    return [_to_employee_read(item) for item in list_employees(db, include_inactive=include_inactive)]


@router.get("/api/employees/status", response_model=list[EmployeeStatusRead])
def get_employee_status(
    month: int | None = Query(default=None),
    year: int | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[EmployeeStatusRead]:
    settings = get_settings()
    period = resolve_period(month, year, default=current_period(settings))
    rows = list_active_employee_status(db, period)
    return [
        EmployeeStatusRead(
            id=item.employee.id,
            firstname=item.employee.firstname,
            lastname=item.employee.lastname,
            name=item.employee.full_name,
            email=item.employee.email,
            active=item.employee.is_active,
            uploaded=item.uploaded,
            upload_date=item.upload.uploaded_at if item.upload is not None else None,
            filename=item.upload.filename if item.upload is not None else None,
            month=period.month,
            year=period.year,
        )
        for item in rows
    ]


@router.post(
    "/api/employees",
    response_model=EmployeeRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_session)],
)
def post_employee(payload: EmployeeCreate, db: Session = Depends(get_db)) -> EmployeeRead:
    employee = create_employee(
        db,
        email=payload.email,
        name=payload.name,
        firstname=payload.firstname,
        lastname=payload.lastname,
    )
    return _to_employee_read(employee)


@router.delete(
    "/api/employees/{employee_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_session)],
)
def delete_employee(employee_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    deactivate_employee(db, employee_id)
    return MessageResponse(message="Mitarbeiter erfolgreich deaktiviert.")


@router.patch(
    "/api/employees/{employee_id}/active",
    response_model=EmployeeRead,
    dependencies=[Depends(require_admin_session)],
)
def update_employee_active_status(
    employee_id: int,
    payload: EmployeeActiveUpdateRequest,
    db: Session = Depends(get_db),
) -> EmployeeRead:
    return _to_employee_read(set_employee_active(db, employee_id, payload.is_active))


@router.post("/api/upload", response_model=UploadResponse | UploadProbeResponse)
async def upload_timesheet(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> UploadResponse | UploadProbeResponse:
    content_type = (request.headers.get("content-type") or "").lower()
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Ungültiger JSON-Body.", code="INVALID_JSON") from exc
        if isinstance(body, dict) and _is_truthy(body.get("test")):
            return _probe_response()
        raise ValidationError("Keine Datei hochgeladen.", code="FILE_MISSING")

    form = await request.form()
    if _is_truthy(form.get("test")):
        return _probe_response()

    upload = next(
        (item for item in (form.get(name) for name in UPLOAD_FILE_FIELDS) if isinstance(item, UploadFile)),
        None,
    )
    if upload is None:
        raise ValidationError("Keine Datei hochgeladen.", code="FILE_MISSING")
    employee_id = _optional_int(form.get("employeeId"), field_name="employeeId")
    if employee_id is None:
        raise ValidationError("Mitarbeiter-ID ist erforderlich.", code="EMPLOYEE_ID_MISSING")
    month = _optional_int(form.get("month"), field_name="month")
    year = _optional_int(form.get("year"), field_name="year")

    settings = get_settings()
    # One byte past the limit is enough to reject oversized files.
    content = await upload.read(settings.upload_max_bytes + 1)
    await upload.close()

    stored = await run_in_threadpool(
        store_timesheet_upload,
        db,
        employee_id=employee_id,
        filename=upload.filename,
        content_type=upload.content_type,
        content=content,
        month=month,
        year=year,
        settings=settings,
    )
    request.state.employee_id = stored.employee_id

    background_tasks.add_task(
        send_upload_notice,
        employee_name=stored.employee_name,
        employee_email=stored.employee_email,
        period=stored.period,
        filename=stored.filename,
        filepath=stored.filepath,
        content_type=stored.content_type,
        uploaded_at=stored.uploaded_at,
        settings=settings,
    )
    return UploadResponse(
        message="Zeitnachweis erfolgreich hochgeladen!",
        filename=stored.filename,
        month=stored.period.month,
        year=stored.period.year,
        replaced=stored.replaced,
    )
