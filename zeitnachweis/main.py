import asyncio
from contextlib import suppress
from datetime import date, datetime, timezone
import logging
import time
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from zeitnachweis.db import SessionLocal, engine
from zeitnachweis.errors import ApiError, error_response
from zeitnachweis.logging_utils import setup_json_logging
from zeitnachweis.routers import admin, public
from zeitnachweis.schemas import HealthResponse
from zeitnachweis.services.admin_auth import ensure_admin_password
from zeitnachweis.services.notifications import get_email_channel_health
from zeitnachweis.services.reminders import run_scheduled_reminders
from zeitnachweis.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from zeitnachweis.settings import get_app_timezone, get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(level=settings.log_level)
logger = logging.getLogger("zeitnachweis.request")
reminder_worker_logger = logging.getLogger("zeitnachweis.reminder_worker")
STATIC_DIR = Path(__file__).resolve().parent / "static"


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "api_error",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "code": exc.code,
            },
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        429: "TOO_MANY_ATTEMPTS",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=400,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(public.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _seed_admin_password() -> bool:
    with SessionLocal() as session:
        return ensure_admin_password(session, settings)


async def _reminder_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.reminder_worker_interval_seconds))
    last_fired_on: date | None = None
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            result = await asyncio.to_thread(run_scheduled_reminders, now_utc, last_fired_on=last_fired_on)
        except Exception:
            reminder_worker_logger.exception("reminder_worker_tick_failed")
        else:
            if result is not None:
                last_fired_on = now_utc.astimezone(get_app_timezone(settings)).date()
                reminder_worker_logger.info("reminder_worker_tick", extra=result.to_dict())

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        reminder_worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    reminder_worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def seed_admin_password() -> None:
    try:
        await asyncio.to_thread(_seed_admin_password)
    except Exception:
        # Missing tables are already reported by the schema guard.
        reminder_worker_logger.exception("admin_password_seed_failed")


@app.on_event("startup")
async def start_reminder_worker() -> None:
    if not settings.reminder_worker_enabled:
        return
    if getattr(app.state, "reminder_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_reminder_worker_loop(stop_event))
    app.state.reminder_worker_stop_event = stop_event
    app.state.reminder_worker_task = task
    email_status = await asyncio.to_thread(get_email_channel_health)
    missing_fields = email_status.get("missing_fields", []) if isinstance(email_status, dict) else []
    if missing_fields:
        reminder_worker_logger.warning(
            "notification_email_channel_not_configured",
            extra={"missing_fields": missing_fields},
        )
    reminder_worker_logger.info(
        "reminder_worker_started",
        extra={
            "interval_seconds": max(15, int(settings.reminder_worker_interval_seconds)),
            "reminder_days": [
                settings.reminder_first_day,
                settings.reminder_second_day,
                settings.reminder_final_day,
            ],
            "send_time": settings.reminder_send_time,
            "email": email_status,
        },
    )


@app.on_event("shutdown")
async def stop_reminder_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "reminder_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "reminder_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.reminder_worker_stop_event = None
    app.state.reminder_worker_task = None
    engine.dispose()
    reminder_worker_logger.info("reminder_worker_stopped")


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        schema_guard=schema_guard_result.to_dict(),
        email=get_email_channel_health(),
    )


if STATIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")
