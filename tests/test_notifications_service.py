from __future__ import annotations

import smtplib
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from zeitnachweis.db import Base
from zeitnachweis.errors import NotFoundError, ValidationError
from zeitnachweis.models import AdminNotificationEmail
from zeitnachweis.services.email_templates import render_email
from zeitnachweis.services.notifications import (
    Attachment,
    EmailChannel,
    NotificationChannel,
    NotificationDispatcher,
    NotificationMessage,
    delete_admin_notification_email,
    normalize_notification_email,
    send_admin_test_email,
    send_upload_notice,
    upsert_admin_notification_email,
)
from zeitnachweis.services.periods import Period
from zeitnachweis.settings import Settings

MARCH_2025 = Period(month=3, year=2025)
UPLOADED_AT = datetime(2025, 3, 20, 9, 15, tzinfo=timezone.utc)


def _smtp_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "smtp_host": "smtp.example.de",
        "smtp_port": 587,
        "smtp_user": "mailer",
        "smtp_pass": "secret",
        "smtp_from": "noreply@example.de",
    }
    values.update(overrides)
    return Settings(**values)


def _make_sessionmaker() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)


def _reminder_data() -> dict[str, Any]:
    return {
        "period": MARCH_2025,
        "employee_name": "Max Mustermann",
        "upload_url": "https://zeit.example.de/",
        "working_day": 4,
    }


class _RecordingChannel(NotificationChannel):
    def __init__(self, *, configured: bool = True, fail_for: set[str] | None = None) -> None:
        self.configured = configured
        self.enabled = True
        self.fail_for = fail_for or set()
        self.messages: list[NotificationMessage] = []

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipient = message.recipients[0]
        if recipient in self.fail_for:
            raise smtplib.SMTPServerDisconnected("connection lost")
        self.messages.append(message)
        return {"mode": "sent", "sent": 1, "recipients": list(message.recipients)}


class _ExplodingChannel(NotificationChannel):
    configured = True
    enabled = True

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise RuntimeError("template exploded")


class EmailTemplateTests(unittest.TestCase):
    def test_reminder_subjects_escalate(self) -> None:
        data = _reminder_data()
        self.assertEqual(render_email("first", data).subject, "Fehlender Zeitnachweis für März 2025")
        self.assertEqual(
            render_email("second", data).subject,
            "2. Erinnerung: Zeitnachweis für März 2025 fehlt immer noch",
        )
        final = render_email("final", data)
        self.assertEqual(final.subject, "DRINGEND: Zeitnachweis für März 2025 fehlt!")
        self.assertIn("SOFORT HOCHLADEN", final.html)
        self.assertIn("Admin-Team", final.text)

    def test_html_escapes_employee_name(self) -> None:
        data = {**_reminder_data(), "employee_name": "<script>alert(1)</script>"}
        rendered = render_email("first", data)
        self.assertNotIn("<script>", rendered.html)
        self.assertIn("&lt;script&gt;", rendered.html)

    def test_unknown_template_raises(self) -> None:
        with self.assertRaises(ValueError):
            render_email("fourth", _reminder_data())


class EmailChannelTests(unittest.TestCase):
    def test_missing_host_and_sender_are_reported(self) -> None:
        channel = EmailChannel(Settings(smtp_host="", smtp_user="", smtp_from=""))
        self.assertFalse(channel.configured)
        self.assertEqual(channel.missing_fields(), ["SMTP_HOST", "SMTP_FROM"])

        result = channel.send(NotificationMessage(recipients=["max@example.de"], subject="s", body="b"))
        self.assertEqual(result["mode"], "not_configured")
        self.assertEqual(result["sent"], 0)

    def test_disabled_channel_sends_nothing(self) -> None:
        channel = EmailChannel(_smtp_settings(notification_email_enabled=False))
        with patch("zeitnachweis.services.notifications.smtplib.SMTP") as smtp_cls:
            result = channel.send(NotificationMessage(recipients=["max@example.de"], subject="s", body="b"))
        self.assertEqual(result["mode"], "disabled")
        smtp_cls.assert_not_called()

    def test_send_uses_starttls_login_and_attachment(self) -> None:
        channel = EmailChannel(_smtp_settings())
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "zeitnachweis.pdf"
            path.write_bytes(b"%PDF-1.4\n")
            message = NotificationMessage(
                recipients=["chef@example.de"],
                subject="Neuer Zeitnachweis",
                body="Hallo",
                html="<p>Hallo</p>",
                attachments=(Attachment(filename="zeitnachweis.pdf", path=str(path)),),
            )
            with patch("zeitnachweis.services.notifications.smtplib.SMTP") as smtp_cls:
                smtp_instance = MagicMock()
                smtp_instance.__enter__.return_value = smtp_instance
                smtp_cls.return_value = smtp_instance
                result = channel.send(message)

        self.assertEqual(result["mode"], "sent")
        smtp_cls.assert_called_once_with("smtp.example.de", 587, timeout=15)
        smtp_instance.starttls.assert_called_once()
        smtp_instance.login.assert_called_once_with("mailer", "secret")
        sent_message = smtp_instance.send_message.call_args.args[0]
        self.assertEqual(sent_message["To"], "chef@example.de")
        self.assertIn("Zeitnachweis-System", sent_message["From"])
        attachments = list(sent_message.iter_attachments())
        self.assertEqual([item.get_filename() for item in attachments], ["zeitnachweis.pdf"])
        self.assertEqual(attachments[0].get_content_type(), "application/pdf")

    def test_verify_connection_failure_hides_password(self) -> None:
        channel = EmailChannel(_smtp_settings())
        with patch(
            "zeitnachweis.services.notifications.smtplib.SMTP",
            side_effect=OSError("connection refused for mailer:secret"),
        ):
            result = channel.verify_connection()

        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "OSError")
        self.assertEqual(result["smtp_user"], "konfiguriert")
        self.assertNotIn("secret", repr(result))

    def test_verify_connection_success(self) -> None:
        channel = EmailChannel(_smtp_settings(smtp_port=465))
        with patch("zeitnachweis.services.notifications.smtplib.SMTP_SSL") as smtp_cls:
            smtp_instance = MagicMock()
            smtp_instance.__enter__.return_value = smtp_instance
            smtp_cls.return_value = smtp_instance
            result = channel.verify_connection()

        self.assertTrue(result["ok"])
        self.assertTrue(result["use_tls"])
        smtp_instance.noop.assert_called_once()


class NotificationDispatcherTests(unittest.TestCase):
    def test_send_to_many_continues_after_failure(self) -> None:
        channel = _RecordingChannel(fail_for={"b@example.de"})
        dispatcher = NotificationDispatcher(channel)

        report = dispatcher.send_to_many("first", ["a@example.de", "b@example.de", "c@example.de"], _reminder_data())

        self.assertEqual(report.attempted, 3)
        self.assertEqual(report.sent, 2)
        self.assertEqual(report.failed, ["b@example.de"])
        self.assertEqual([message.recipients for message in channel.messages], [["a@example.de"], ["c@example.de"]])

    def test_unconfigured_channel_reports_undelivered(self) -> None:
        dispatcher = NotificationDispatcher(EmailChannel(Settings(smtp_host="")))
        self.assertFalse(dispatcher.can_deliver)

        result = dispatcher.send("first", "max@example.de", _reminder_data())

        self.assertFalse(result.delivered)
        self.assertEqual(result.mode, "not_configured")


class AdminNotificationEmailTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = _make_sessionmaker()()

    def tearDown(self) -> None:
        self.session.close()

    def test_normalize_notification_email(self) -> None:
        self.assertEqual(normalize_notification_email("  Chef@Example.DE "), "chef@example.de")
        self.assertIsNone(normalize_notification_email("kein-at-zeichen"))
        self.assertIsNone(normalize_notification_email(None))

    def test_upsert_updates_label_of_existing_address(self) -> None:
        upsert_admin_notification_email(self.session, email="Chef@Example.de", label="Chef")
        row = upsert_admin_notification_email(self.session, email="chef@example.de", label="Geschäftsführung")

        self.assertEqual(row.label, "Geschäftsführung")
        count = self.session.scalar(select(func.count(AdminNotificationEmail.id)))
        self.assertEqual(count, 1)

    def test_upsert_rejects_invalid_address(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            upsert_admin_notification_email(self.session, email="chef", label=None)
        self.assertEqual(ctx.exception.code, "INVALID_EMAIL")

    def test_delete_unknown_address_raises(self) -> None:
        with self.assertRaises(NotFoundError):
            delete_admin_notification_email(self.session, 404)

    def test_admin_test_email_requires_recipients(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            send_admin_test_email(self.session, dispatcher=NotificationDispatcher(_RecordingChannel()))
        self.assertEqual(ctx.exception.code, "NO_RECIPIENTS")

    def test_admin_test_email_goes_to_stored_addresses(self) -> None:
        upsert_admin_notification_email(self.session, email="chef@example.de", label="Chef")
        channel = _RecordingChannel()

        result = send_admin_test_email(self.session, dispatcher=NotificationDispatcher(channel))

        self.assertTrue(result["ok"])
        self.assertEqual(result["recipients"], ["chef@example.de"])
        self.assertEqual(channel.messages[0].subject, "Test-Email vom Zeitnachweis-System")


class UploadNoticeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = _make_sessionmaker()
        with self.session_factory() as session:
            session.add(AdminNotificationEmail(email="chef@example.de", label="Chef"))
            session.commit()
        self.settings = _smtp_settings()

    def _notice(self, dispatcher: NotificationDispatcher):  # type: ignore[no-untyped-def]
        with patch("zeitnachweis.services.notifications.SessionLocal", self.session_factory):
            return send_upload_notice(
                employee_name="Max Mustermann",
                employee_email="max@example.de",
                period=MARCH_2025,
                filename="zeitnachweis_1_2025-03-20_ab12cd34_zeit.pdf",
                filepath="/srv/uploads/zeitnachweis_1_2025-03-20_ab12cd34_zeit.pdf",
                content_type="application/pdf",
                uploaded_at=UPLOADED_AT,
                settings=self.settings,
                dispatcher=dispatcher,
            )

    def test_notice_is_sent_to_admin_addresses_with_attachment(self) -> None:
        channel = _RecordingChannel()

        report = self._notice(NotificationDispatcher(channel))

        self.assertEqual(report.sent, 1)
        message = channel.messages[0]
        self.assertEqual(message.recipients, ["chef@example.de"])
        self.assertEqual(message.subject, "Neuer Zeitnachweis von Max Mustermann - März 2025")
        self.assertIn("20.03.2025 10:15", message.body)
        self.assertEqual(len(message.attachments), 1)
        self.assertEqual(message.attachments[0].content_type, "application/pdf")

    def test_notice_without_email_config_is_skipped(self) -> None:
        channel = _RecordingChannel(configured=False)

        report = self._notice(NotificationDispatcher(channel))

        self.assertEqual(report.mode, "not_configured")
        self.assertEqual(channel.messages, [])

    def test_notice_never_raises(self) -> None:
        report = self._notice(NotificationDispatcher(_ExplodingChannel()))

        self.assertEqual(report.mode, "exception")
        self.assertEqual(report.sent, 0)


if __name__ == "__main__":
    unittest.main()
