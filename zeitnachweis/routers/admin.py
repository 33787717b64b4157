from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from zeitnachweis.db import get_db
from zeitnachweis.errors import AuthError, DeliveryError, ValidationError
from zeitnachweis.schemas import (
    AdminChangePasswordRequest,
    AdminEmailRead,
    AdminEmailSavedResponse,
    AdminEmailUpsertRequest,
    AdminLoginRequest,
    AdminLoginResponse,
    AdminTestEmailRequest,
    AdminTokenRequest,
    AdminVerifyResponse,
    EmailStatsResponse,
    MessageResponse,
    ReminderTriggerRequest,
    ReminderTriggerResponse,
    SmtpStatusResponse,
)
from zeitnachweis.security import (
    SessionStore,
    bearer_scheme,
    ensure_login_attempt_allowed,
    get_session_store,
    is_valid_session_token,
    issue_session_token,
    register_login_failure,
    register_login_success,
    require_admin_session,
)
from zeitnachweis.services.admin_auth import change_admin_password, verify_admin_password
from zeitnachweis.services.exports import XLSX_MEDIA_TYPE, build_status_xlsx_bytes, status_export_filename
from zeitnachweis.services.notifications import (
    EmailChannel,
    NotificationDispatcher,
    delete_admin_notification_email,
    list_admin_notification_emails,
    send_admin_test_email,
    upsert_admin_notification_email,
)
from zeitnachweis.services.periods import current_period, resolve_period
from zeitnachweis.services.reminders import get_email_stats, trigger_manual_reminders
from zeitnachweis.settings import get_settings

router = APIRouter(tags=["admin"])
logger = logging.getLogger("zeitnachweis.admin")


def _client_ip(request: Request) -> str | None:
    if get_settings().trust_proxy_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            first_ip = forwarded_for.split(",")[0].strip()
            if first_ip:
                return first_ip
    if request.client is None:
        return None
    return request.client.host


def _resolve_token(
    body_token: str | None,
    credentials: HTTPAuthorizationCredentials | None,
) -> str | None:
    candidate = (body_token or "").strip()
    if candidate:
        return candidate
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


@router.post("/api/admin/login", response_model=AdminLoginResponse)
def admin_login(
    request: Request,
    payload: AdminLoginRequest | None = None,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> AdminLoginResponse:
    ip = _client_ip(request)
    if ip:
        ensure_login_attempt_allowed(ip)
    password = payload.password if payload else None
    if not password:
        raise ValidationError("Passwort fehlt.", code="PASSWORD_MISSING")

    if not verify_admin_password(db, password):
        if ip:
            register_login_failure(ip)
        logger.warning("admin_login_failed", extra={"ip": ip})
        raise AuthError("Falsches Passwort.", code="INVALID_CREDENTIALS")

    if ip:
        register_login_success(ip)
    token = issue_session_token(store)
    request.state.actor = "admin"
    logger.info("admin_login_success", extra={"ip": ip})
    return AdminLoginResponse(message="Login erfolgreich", token=token)


@router.post("/api/admin/verify", response_model=AdminVerifyResponse)
def admin_verify(
    payload: AdminTokenRequest | None = None,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    store: SessionStore = Depends(get_session_store),
) -> AdminVerifyResponse:
    token = _resolve_token(payload.token if payload else None, credentials)
    return AdminVerifyResponse(valid=is_valid_session_token(store, token))


@router.post("/api/admin/logout", response_model=MessageResponse)
def admin_logout(
    payload: AdminTokenRequest | None = None,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    store: SessionStore = Depends(get_session_store),
) -> MessageResponse:
    token = _resolve_token(payload.token if payload else None, credentials)
    if token:
        store.expire(token)
    return MessageResponse(message="Logout erfolgreich")


@router.post("/api/admin/change-password", response_model=MessageResponse)
def admin_change_password(
    payload: AdminChangePasswordRequest,
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> MessageResponse:
    if not is_valid_session_token(store, _resolve_token(payload.token, credentials)):
        raise AuthError("Nicht autorisiert.", code="INVALID_TOKEN")
    request.state.actor = "admin"
    change_admin_password(
        db,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    return MessageResponse(message="Passwort erfolgreich geändert")


@router.post(
    "/api/admin/test-smtp",
    response_model=SmtpStatusResponse,
    dependencies=[Depends(require_admin_session)],
)
def admin_test_smtp() -> SmtpStatusResponse:
    result = EmailChannel().verify_connection()
    if not result.get("ok"):
        details = {key: value for key, value in result.items() if key != "ok"}
        raise DeliveryError(
            "SMTP-Verbindung fehlgeschlagen.",
            code="SMTP_CONNECTION_FAILED",
            details=details,
        )
    return SmtpStatusResponse(
        message="SMTP-Verbindung erfolgreich",
        ok=True,
        smtp_host=result["smtp_host"],
        smtp_port=result["smtp_port"],
        smtp_user=result["smtp_user"],
        smtp_from=result.get("smtp_from"),
        use_tls=result["use_tls"],
    )


@router.post(
    "/api/admin/test-emails",
    response_model=ReminderTriggerResponse,
    dependencies=[Depends(require_admin_session)],
)
def admin_trigger_reminders(
    payload: ReminderTriggerRequest,
    db: Session = Depends(get_db),
) -> ReminderTriggerResponse:
    result = trigger_manual_reminders(
        db,
        reminder_type=payload.reminder_type,
        month=payload.month,
        year=payload.year,
    )
    if result.email_configured:
        message = f"{result.sent} Erinnerungen ({result.kind.value}) für {result.period.label} versendet."
    else:
        message = "E-Mail-Versand ist nicht konfiguriert. Es wurden keine Erinnerungen versendet."
    return ReminderTriggerResponse(
        message=message,
        reminder_type=result.kind,
        month=result.period.month,
        year=result.period.year,
        candidates=result.candidates,
        sent=result.sent,
        failed=len(result.failed),
        skipped=result.skipped,
        email_configured=result.email_configured,
        timestamp=datetime.now(timezone.utc),
    )


@router.post(
    "/api/admin/send-test-email",
    dependencies=[Depends(require_admin_session)],
)
def admin_send_test_email(
    payload: AdminTestEmailRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    dispatcher = NotificationDispatcher()
    if not dispatcher.can_deliver:
        raise DeliveryError("E-Mail-Versand ist nicht konfiguriert.", code="SMTP_NOT_CONFIGURED")
    result = send_admin_test_email(
        db,
        recipients=payload.recipients,
        subject=payload.subject,
        dispatcher=dispatcher,
    )
    if not result["ok"]:
        raise DeliveryError(
            "Test-Email konnte nicht versendet werden.",
            details={"failed": result["failed"], "mode": result["mode"]},
        )
    return {"message": "Test-Email erfolgreich versendet", **result}


@router.get(
    "/api/admin/email-stats",
    response_model=EmailStatsResponse,
    dependencies=[Depends(require_admin_session)],
)
def admin_email_stats(db: Session = Depends(get_db)) -> EmailStatsResponse:
    return EmailStatsResponse(**get_email_stats(db))


@router.get(
    "/api/admin/status-export",
    dependencies=[Depends(require_admin_session)],
)
def admin_status_export(
    month: int | None = Query(default=None),
    year: int | None = Query(default=None),
    db: Session = Depends(get_db),
) -> Response:
    settings = get_settings()
    period = resolve_period(month, year, default=current_period(settings))
    payload = build_status_xlsx_bytes(db, period=period, settings=settings)
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{status_export_filename(period)}"'},
    )


@router.get(
    "/api/admin/emails",
    response_model=list[AdminEmailRead],
    dependencies=[Depends(require_admin_session)],
)
def admin_list_emails(db: Session = Depends(get_db)) -> list[AdminEmailRead]:
    return [AdminEmailRead.model_validate(row) for row in list_admin_notification_emails(db)]


@router.post(
    "/api/admin/emails",
    response_model=AdminEmailSavedResponse,
    dependencies=[Depends(require_admin_session)],
)
def admin_save_email(
    payload: AdminEmailUpsertRequest,
    db: Session = Depends(get_db),
) -> AdminEmailSavedResponse:
    row = upsert_admin_notification_email(db, email=payload.email, label=payload.label)
    return AdminEmailSavedResponse(
        message="Admin-Email erfolgreich gespeichert",
        email=row.email,
        label=row.label,
    )


@router.delete(
    "/api/admin/emails/{email_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_session)],
)
def admin_delete_email(email_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    delete_admin_notification_email(db, email_id)
    return MessageResponse(message="Admin-Email erfolgreich gelöscht")
