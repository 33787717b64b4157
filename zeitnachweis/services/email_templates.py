from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Any, Callable

from zeitnachweis.services.periods import Period

TEMPLATE_FIRST = "first"
TEMPLATE_SECOND = "second"
TEMPLATE_FINAL = "final"
TEMPLATE_UPLOAD_NOTICE = "upload_notice"
TEMPLATE_TEST = "test"

SIGNATURE_TEXT = "Mit freundlichen Grüßen,\nIhr Zeitnachweis-Team"
SIGNATURE_HTML = "<p>Mit freundlichen Grüßen,<br>Ihr Zeitnachweis-Team</p>"


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


@dataclass(frozen=True, slots=True)
class _ReminderStyle:
    subject: str
    heading: str
    intro: str
    highlight_lines: tuple[str, ...]
    button_label: str
    accent_color: str
    box_background: str
    box_border: str
    button_padding: str = "12px 25px"
    footer_hint: str | None = None


def _wrap_html(inner: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
        f"{inner}"
        "</div>"
    )


def _format_local_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d.%m.%Y %H:%M")


def _reminder_style(kind: str, period: Period) -> _ReminderStyle:
    label = period.label
    if kind == TEMPLATE_SECOND:
        return _ReminderStyle(
            subject=f"2. Erinnerung: Zeitnachweis für {label} fehlt immer noch",
            heading="Zweite Erinnerung - Zeitnachweis fehlt!",
            intro=(
                "Dies ist eine zweite Erinnerung - wir haben noch immer keinen "
                f"Zeitnachweis für den {label} erhalten."
            ),
            highlight_lines=(
                f"Zeitnachweis für {label} fehlt weiterhin",
                "Bitte laden Sie diesen umgehend hoch.",
            ),
            button_label="Jetzt hochladen",
            accent_color="#e67e22",
            box_background="#fff3cd",
            box_border="#ffc107",
        )
    if kind == TEMPLATE_FINAL:
        return _ReminderStyle(
            subject=f"DRINGEND: Zeitnachweis für {label} fehlt!",
            heading="DRINGEND - Zeitnachweis fehlt!",
            intro=f"DRINGEND: Ihr Zeitnachweis für den {label} fehlt weiterhin!",
            highlight_lines=(
                f"Zeitnachweis für {label} ist überfällig",
                "Bitte laden Sie diesen SOFORT hoch!",
            ),
            button_label="SOFORT HOCHLADEN",
            accent_color="#dc3545",
            box_background="#f8d7da",
            box_border="#dc3545",
            button_padding="15px 30px",
            footer_hint="Bei Problemen wenden Sie sich bitte umgehend an das Admin-Team.",
        )
    return _ReminderStyle(
        subject=f"Fehlender Zeitnachweis für {label}",
        heading="Zeitnachweis fehlt noch!",
        intro=f"Uns fehlt noch Ihr Zeitnachweis für den {label}.",
        highlight_lines=(
            f"Zeitnachweis für {label} fehlt",
            "Bitte laden Sie diesen so schnell wie möglich hoch.",
        ),
        button_label="Jetzt hochladen",
        accent_color="#e67e22",
        box_background="#fff3cd",
        box_border="#ffc107",
    )


def _render_reminder(kind: str, data: dict[str, Any]) -> RenderedEmail:
    period: Period = data["period"]
    employee_name = str(data.get("employee_name") or "").strip() or "Kollegin, Kollege"
    upload_url = str(data.get("upload_url") or "")
    working_day = data.get("working_day")
    style = _reminder_style(kind, period)

    text_lines = [
        f"Hallo {employee_name},",
        "",
        style.intro,
        "",
        *style.highlight_lines,
    ]
    if working_day:
        text_lines.append(f"Heute ist der {working_day}. Werktag des Monats.")
    text_lines.extend(["", f"Jetzt hochladen: {upload_url}"])
    if style.footer_hint:
        text_lines.extend(["", style.footer_hint])
    text_lines.extend(["", SIGNATURE_TEXT])

    highlight_html = "".join(f"<p><strong>{escape(line)}</strong></p>" for line in style.highlight_lines)
    if working_day:
        highlight_html += f"<p>Heute ist der <strong>{int(working_day)}. Werktag</strong> des Monats.</p>"
    footer_html = (
        f'<p style="color: #666; font-size: 14px;">{escape(style.footer_hint)}</p>' if style.footer_hint else ""
    )
    html = _wrap_html(
        f'<h2 style="color: {style.accent_color};">{escape(style.heading)}</h2>'
        f"<p>Hallo <strong>{escape(employee_name)}</strong>,</p>"
        f"<p>{escape(style.intro)}</p>"
        f'<div style="background-color: {style.box_background}; padding: 15px; '
        f'border-left: 4px solid {style.box_border}; margin: 20px 0;">{highlight_html}</div>'
        f'<p><a href="{escape(upload_url, quote=True)}" style="background-color: {style.accent_color}; '
        f"color: white; padding: {style.button_padding}; text-decoration: none; border-radius: 5px; "
        f'display: inline-block; font-weight: bold;">{escape(style.button_label)}</a></p>'
        f"{footer_html}{SIGNATURE_HTML}"
    )
    return RenderedEmail(subject=style.subject, text="\n".join(text_lines), html=html)


def _render_upload_notice(_kind: str, data: dict[str, Any]) -> RenderedEmail:
    period: Period = data["period"]
    employee_name = str(data.get("employee_name") or "-")
    employee_email = str(data.get("employee_email") or "-")
    filename = str(data.get("filename") or "-")
    uploaded_at = _format_local_timestamp(data.get("uploaded_at"))
    attached = bool(data.get("attached"))

    rows = (
        ("Mitarbeiter", employee_name),
        ("E-Mail", employee_email),
        ("Zeitraum", period.label),
        ("Datei", filename),
        ("Upload-Zeit", uploaded_at),
    )
    hint = (
        "Die hochgeladene Datei finden Sie im Anhang dieser E-Mail."
        if attached
        else "Die Datei liegt im Upload-Verzeichnis des Servers."
    )
    text = "\n".join(
        [
            "Hallo,",
            "",
            "es wurde ein neuer Zeitnachweis hochgeladen:",
            "",
            *(f"{label}: {value}" for label, value in rows),
            "",
            hint,
        ]
    )
    rows_html = "".join(
        f'<p style="margin: 5px 0;"><strong>{label}:</strong> {escape(value)}</p>' for label, value in rows
    )
    html = _wrap_html(
        '<h2 style="color: #2c3e50; border-bottom: 2px solid #3498db; padding-bottom: 10px;">'
        "Neuer Zeitnachweis eingegangen</h2>"
        '<p style="font-size: 16px; line-height: 1.6; color: #34495e;">Hallo,<br><br>'
        "es wurde ein neuer Zeitnachweis hochgeladen:</p>"
        f'<div style="background: #f3f4f6; padding: 15px; border-radius: 6px; margin: 20px 0;">{rows_html}</div>'
        f'<p style="font-size: 14px; color: #7f8c8d; margin-top: 30px;"><em>{escape(hint)}</em></p>'
    )
    return RenderedEmail(
        subject=f"Neuer Zeitnachweis von {employee_name} - {period.label}",
        text=text,
        html=html,
    )


def _render_test(_kind: str, data: dict[str, Any]) -> RenderedEmail:
    subject = str(data.get("subject") or "").strip() or "Test-Email vom Zeitnachweis-System"
    smtp_host = str(data.get("smtp_host") or "-")
    sent_at = _format_local_timestamp(data.get("sent_at"))
    text = (
        "Hallo,\n\ndiese Test-Email bestätigt, dass das Zeitnachweis-System erfolgreich "
        "konfiguriert ist und E-Mails versenden kann.\n\n"
        f"SMTP Server: {smtp_host}\nZeitstempel: {sent_at}"
    )
    html = _wrap_html(
        '<h2 style="color: #2c3e50; border-bottom: 2px solid #3498db; padding-bottom: 10px;">'
        "Zeitnachweis-System Test-Email</h2>"
        "<p>Hallo,<br><br>diese Test-Email bestätigt, dass das <strong>Zeitnachweis-System</strong> "
        "erfolgreich konfiguriert ist und E-Mails versenden kann.</p>"
        f'<p style="margin: 5px 0;"><strong>SMTP Server:</strong> {escape(smtp_host)}</p>'
        f'<p style="margin: 5px 0;"><strong>Zeitstempel:</strong> {escape(sent_at)}</p>'
    )
    return RenderedEmail(subject=subject, text=text, html=html)


_RENDERERS: dict[str, Callable[[str, dict[str, Any]], RenderedEmail]] = {
    TEMPLATE_FIRST: _render_reminder,
    TEMPLATE_SECOND: _render_reminder,
    TEMPLATE_FINAL: _render_reminder,
    TEMPLATE_UPLOAD_NOTICE: _render_upload_notice,
    TEMPLATE_TEST: _render_test,
}


def render_email(kind: str, data: dict[str, Any]) -> RenderedEmail:
    renderer = _RENDERERS.get(kind)
    if renderer is None:
        raise ValueError(f"Unknown email template: {kind}")
    return renderer(kind, data)
