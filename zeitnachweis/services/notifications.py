from __future__ import annotations

import logging
import mimetypes
import re
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zeitnachweis.db import SessionLocal
from zeitnachweis.errors import DeliveryError, NotFoundError, ValidationError
from zeitnachweis.models import AdminNotificationEmail
from zeitnachweis.services.email_templates import (
    TEMPLATE_TEST,
    TEMPLATE_UPLOAD_NOTICE,
    RenderedEmail,
    render_email,
)
from zeitnachweis.services.periods import Period
from zeitnachweis.settings import Settings, get_app_timezone, get_settings

logger = logging.getLogger("zeitnachweis.notifications")

EMAIL_ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SMTP_IMPLICIT_TLS_PORT = 465


@dataclass(frozen=True, slots=True)
class Attachment:
    filename: str
    path: str
    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str
    html: str | None = None
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    recipient: str
    kind: str
    delivered: bool
    mode: str
    message_id: str | None = None


@dataclass(slots=True)
class DeliveryReport:
    kind: str
    attempted: int = 0
    sent: int = 0
    failed: list[str] = field(default_factory=list)
    mode: str = "sent"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "attempted": self.attempted,
            "sent": self.sent,
            "failed": list(self.failed),
            "mode": self.mode,
        }


class NotificationChannel:
    configured: bool = False
    enabled: bool = True

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


def normalize_notification_email(value: str | None) -> str | None:
    normalized = " ".join((value or "").strip().lower().split())
    if not normalized:
        return None
    if not EMAIL_ADDRESS_PATTERN.match(normalized):
        return None
    return normalized


class EmailChannel(NotificationChannel):
    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip() or self.smtp_user
        self.smtp_from_name = (settings.smtp_from_name or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.timeout_seconds = max(1, int(settings.smtp_timeout_seconds))
        self.configured = not self.missing_fields()

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.smtp_host:
            missing.append("SMTP_HOST")
        if not self.smtp_from or "@" not in self.smtp_from:
            missing.append("SMTP_FROM")
        if self.smtp_user and not self.smtp_pass:
            missing.append("SMTP_PASS")
        return missing

    def _connect(self) -> smtplib.SMTP:
        if self.smtp_port == SMTP_IMPLICIT_TLS_PORT:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
        client = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
        if self.smtp_use_tls:
            try:
                client.starttls()
            except (smtplib.SMTPException, OSError):
                client.close()
                raise
        return client

    def _build_message(self, message: NotificationMessage, recipients: list[str]) -> EmailMessage:
        email_message = EmailMessage()
        email_message["From"] = formataddr((self.smtp_from_name, self.smtp_from)) if self.smtp_from_name else self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message["Message-ID"] = make_msgid(domain=self.smtp_from.partition("@")[2] or None)
        email_message.set_content(message.body)
        if message.html:
            email_message.add_alternative(message.html, subtype="html")

        for attachment in message.attachments:
            try:
                payload = Path(attachment.path).read_bytes()
            except OSError:
                logger.warning(
                    "email_attachment_unreadable",
                    extra={"path": attachment.path, "subject": message.subject},
                )
                continue
            content_type = attachment.content_type or mimetypes.guess_type(attachment.filename)[0]
            maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
            email_message.add_attachment(
                payload,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return email_message

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            logger.warning(
                "email_channel_not_configured",
                extra={
                    "subject": message.subject,
                    "recipients": recipients,
                    "missing_fields": self.missing_fields(),
                },
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = self._build_message(message, recipients)
        with self._connect() as smtp_client:
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {
            "mode": "sent",
            "sent": len(recipients),
            "recipients": recipients,
            "message_id": email_message["Message-ID"],
        }

    def verify_connection(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "smtp_host": self.smtp_host or "-",
            "smtp_port": self.smtp_port,
            "smtp_user": "konfiguriert" if self.smtp_user else "nicht konfiguriert",
            "smtp_from": self.smtp_from or None,
            "use_tls": self.smtp_use_tls or self.smtp_port == SMTP_IMPLICIT_TLS_PORT,
        }
        if not self.configured:
            return {
                **info,
                "ok": False,
                "error": "SMTP_NOT_CONFIGURED",
                "missing_fields": self.missing_fields(),
            }
        try:
            with self._connect() as smtp_client:
                if self.smtp_user:
                    smtp_client.login(self.smtp_user, self.smtp_pass)
                smtp_client.noop()
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "smtp_verify_failed",
                extra={"smtp_host": self.smtp_host, "smtp_port": self.smtp_port, "error": str(exc)[:500]},
            )
            return {**info, "ok": False, "error": exc.__class__.__name__}
        logger.info("smtp_verify_ok", extra={"smtp_host": self.smtp_host, "smtp_port": self.smtp_port})
        return {**info, "ok": True}

    def config_status(self) -> dict[str, Any]:
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": self.missing_fields(),
        }


class NotificationDispatcher:
    """Renders a template for one recipient at a time and hands it to a channel."""

    def __init__(self, channel: NotificationChannel | None = None) -> None:
        self.channel = channel or EmailChannel()

    @property
    def can_deliver(self) -> bool:
        return bool(self.channel.enabled and self.channel.configured)

    def send(
        self,
        kind: str,
        recipient: str,
        template_data: dict[str, Any],
        *,
        attachments: tuple[Attachment, ...] = (),
    ) -> DeliveryResult:
        rendered: RenderedEmail = render_email(kind, template_data)
        message = NotificationMessage(
            recipients=[recipient],
            subject=rendered.subject,
            body=rendered.text,
            html=rendered.html,
            attachments=attachments,
        )
        try:
            result = self.channel.send(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "notification_email_send_failed",
                extra={"kind": kind, "recipient": recipient, "error": str(exc)[:500]},
            )
            raise DeliveryError(
                f"Email an {recipient} konnte nicht versendet werden.",
                details={"recipient": recipient, "error": exc.__class__.__name__},
            ) from exc

        delivered = int(result.get("sent", 0) or 0) > 0
        if delivered:
            logger.info(
                "notification_email_sent",
                extra={"kind": kind, "recipient": recipient, "subject": rendered.subject},
            )
        return DeliveryResult(
            recipient=recipient,
            kind=kind,
            delivered=delivered,
            mode=str(result.get("mode") or "unknown"),
            message_id=result.get("message_id"),
        )

    def send_to_many(
        self,
        kind: str,
        recipients: list[str],
        template_data: dict[str, Any],
        *,
        attachments: tuple[Attachment, ...] = (),
    ) -> DeliveryReport:
        report = DeliveryReport(kind=kind)
        for recipient in recipients:
            report.attempted += 1
            try:
                result = self.send(kind, recipient, template_data, attachments=attachments)
            except DeliveryError:
                report.failed.append(recipient)
                continue
            if result.delivered:
                report.sent += 1
            else:
                report.mode = result.mode
        if report.failed and report.sent == 0:
            report.mode = "failed"
        return report


def list_admin_notification_emails(session: Session) -> list[AdminNotificationEmail]:
    stmt = select(AdminNotificationEmail).order_by(AdminNotificationEmail.id.asc())
    return list(session.scalars(stmt).all())


def get_admin_notification_recipients(session: Session) -> list[str]:
    return [row.email for row in list_admin_notification_emails(session) if (row.email or "").strip()]


def upsert_admin_notification_email(
    session: Session,
    *,
    email: str | None,
    label: str | None,
) -> AdminNotificationEmail:
    normalized = normalize_notification_email(email)
    if normalized is None:
        raise ValidationError("Eine gültige E-Mail-Adresse ist erforderlich.", code="INVALID_EMAIL")
    resolved_label = (label or "").strip()

    row = session.scalar(select(AdminNotificationEmail).where(AdminNotificationEmail.email == normalized))
    if row is None:
        row = AdminNotificationEmail(email=normalized, label=resolved_label)
        session.add(row)
    else:
        row.label = resolved_label
    try:
        session.commit()
    except IntegrityError:
        # Concurrent insert of the same address: keep the winner, update its label.
        session.rollback()
        row = session.scalar(select(AdminNotificationEmail).where(AdminNotificationEmail.email == normalized))
        if row is None:
            raise
        row.label = resolved_label
        session.commit()
    session.refresh(row)
    return row


def delete_admin_notification_email(session: Session, email_id: int) -> None:
    row = session.get(AdminNotificationEmail, email_id)
    if row is None:
        raise NotFoundError("Admin-Email nicht gefunden.")
    session.delete(row)
    session.commit()


def send_upload_notice(
    *,
    employee_name: str,
    employee_email: str,
    period: Period,
    filename: str,
    filepath: str,
    content_type: str | None,
    uploaded_at: datetime,
    settings: Settings | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> DeliveryReport:
    """Background task: tell every admin address about a new upload.

    Never raises. The outcome is returned and logged so the caller (or the
    background runner) has a single place to observe failures.
    """
    settings = settings or get_settings()
    dispatcher = dispatcher or NotificationDispatcher(EmailChannel(settings))
    report = DeliveryReport(kind=TEMPLATE_UPLOAD_NOTICE)
    try:
        if not dispatcher.can_deliver:
            report.mode = "not_configured"
            logger.warning(
                "upload_notice_skipped_email_unavailable",
                extra={"employee_email": employee_email, "period": period.to_dict()},
            )
            return report

        with SessionLocal() as session:
            recipients = get_admin_notification_recipients(session)
        if not recipients:
            report.mode = "skipped_no_recipients"
            logger.warning("upload_notice_skipped_no_admin_emails", extra={"period": period.to_dict()})
            return report

        attach = bool(settings.upload_attach_file_to_notice)
        attachments = (Attachment(filename=filename, path=filepath, content_type=content_type),) if attach else ()
        template_data = {
            "employee_name": employee_name,
            "employee_email": employee_email,
            "period": period,
            "filename": filename,
            "uploaded_at": uploaded_at.astimezone(get_app_timezone(settings)),
            "attached": attach,
        }
        report = dispatcher.send_to_many(
            TEMPLATE_UPLOAD_NOTICE,
            recipients,
            template_data,
            attachments=attachments,
        )
    except Exception:
        report.mode = "exception"
        logger.exception(
            "upload_notice_failed",
            extra={"employee_email": employee_email, "period": period.to_dict()},
        )
        return report

    logger.info("upload_notice_dispatched", extra=report.to_dict())
    return report


def send_admin_test_email(
    session: Session,
    *,
    recipients: list[str] | None = None,
    subject: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> dict[str, Any]:
    dispatcher = dispatcher or NotificationDispatcher()
    resolved_recipients = sorted(
        {
            normalized
            for normalized in (
                normalize_notification_email(item)
                for item in (recipients or get_admin_notification_recipients(session))
            )
            if normalized is not None
        }
    )
    if not resolved_recipients:
        raise ValidationError("Keine Empfänger für die Test-Email vorhanden.", code="NO_RECIPIENTS")

    template_data = {
        "subject": subject,
        "smtp_host": getattr(dispatcher.channel, "smtp_host", None),
        "sent_at": datetime.now(timezone.utc).astimezone(get_app_timezone()),
    }
    report = dispatcher.send_to_many(TEMPLATE_TEST, resolved_recipients, template_data)
    return {
        "ok": report.sent > 0,
        "sent": report.sent,
        "failed": report.failed,
        "mode": report.mode,
        "recipients": resolved_recipients,
        "configured": dispatcher.can_deliver,
    }


def get_email_channel_health() -> dict[str, Any]:
    return EmailChannel().config_status()
