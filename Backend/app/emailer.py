"""
Transactional e-mail through the Resend HTTP API.

All senders are best-effort: they log and return False instead of raising so
a mail outage never fails a booking.
"""

import base64
import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from .core.config import get_settings

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class Attachment:
    filename: str
    content: str
    content_type: str = "text/calendar; charset=utf-8"

    def to_payload(self) -> dict:
        return {
            "filename": self.filename,
            "content": base64.b64encode(self.content.encode("utf-8")).decode("ascii"),
            "content_type": self.content_type,
        }


async def send_email(
    to_email: str,
    subject: str,
    html_body: str,
    attachments: Optional[list[Attachment]] = None,
    from_name: Optional[str] = None,
) -> bool:
    settings = get_settings()
    if not settings.resend_api_key or not settings.resend_from:
        logger.warning("Resend is not configured; skipping email send.")
        return False
    if not to_email:
        return False

    sender = f"{from_name} <{settings.resend_from}>" if from_name else settings.resend_from
    payload = {
        "from": sender,
        "to": to_email,
        "subject": subject,
        "html": html_body,
    }
    if attachments:
        payload["attachments"] = [a.to_payload() for a in attachments]

    headers = {
        "Authorization": f"Bearer {settings.resend_api_key}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(RESEND_URL, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Email '{subject}' to {to_email[:3]}*** failed: {e}")
        return False

    logger.info(f"Email '{subject}' sent to {to_email[:3]}***")
    return True


# ────────────────────────────────────────────────────────────────
# iCalendar
# ────────────────────────────────────────────────────────────────

def format_utc_timestamp(value: datetime) -> str:
    """Format datetime as UTC timestamp for iCalendar (RFC 5545)."""
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def escape_ical_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def build_ics_event(
    uid: str,
    start_at: datetime,
    end_at: datetime,
    summary: str,
    description: str,
    location: str,
) -> str:
    dtstamp = format_utc_timestamp(datetime.now(timezone.utc))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//AgendaBarber//Booking//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{format_utc_timestamp(start_at)}",
        f"DTEND:{format_utc_timestamp(end_at)}",
        f"SUMMARY:{escape_ical_text(summary)}",
        f"DESCRIPTION:{escape_ical_text(description)}",
        f"LOCATION:{escape_ical_text(location)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"


# ────────────────────────────────────────────────────────────────
# Templates
# ────────────────────────────────────────────────────────────────

def _wrap(body: str, footer: str) -> str:
    return (
        '<div style="font-family: sans-serif; color: #333; max-width: 600px; margin: 0 auto;">'
        f"{body}"
        '<hr style="border: none; border-top: 1px solid #eaeaea; margin: 20px 0;" />'
        f'<p style="font-size: 12px; color: #888;">{footer}</p>'
        "</div>"
    )


def _card(*lines: str) -> str:
    inner = "".join(f'<p style="margin: 4px 0;">{line}</p>' for line in lines)
    return f'<div style="background: #f4f4f5; padding: 24px; border-radius: 12px; margin: 24px 0;">{inner}</div>'


def _button(label: str, url: str) -> str:
    return (
        '<div style="text-align: center; margin: 30px 0;">'
        f'<a href="{html.escape(url)}" style="background-color: #f59e0b; color: #000; padding: 14px 28px; '
        f'border-radius: 100px; text-decoration: none; font-weight: bold;">{html.escape(label)}</a>'
        "</div>"
    )


async def send_booking_confirmation(
    *,
    client_name: str,
    client_email: str,
    service_name: str,
    staff_name: str,
    date_label: str,
    time_label: str,
    business_name: str,
    booking_id: str,
    start_at: datetime,
    end_at: datetime,
) -> bool:
    esc = html.escape
    body = (
        f'<h1 style="color: #000;">Hi {esc(client_name)}!</h1>'
        "<p>Your appointment is confirmed.</p>"
        + _card(
            f"<strong>Service:</strong> {esc(service_name)}",
            f"<strong>Barber:</strong> {esc(staff_name)}",
            f"<strong>When:</strong> {esc(date_label)} at {esc(time_label)}",
        )
        + f"<p>See you at <strong>{esc(business_name)}</strong>.</p>"
    )
    ics = build_ics_event(
        uid=f"{booking_id}@agendabarber",
        start_at=start_at,
        end_at=end_at,
        summary=f"{service_name} with {staff_name}",
        description=f"Appointment at {business_name}",
        location=business_name,
    )
    return await send_email(
        client_email,
        f"Appointment confirmed: {service_name}",
        _wrap(body, "Need to cancel or reschedule? Please contact us."),
        attachments=[Attachment(filename="appointment.ics", content=ics)],
        from_name=business_name,
    )


async def send_staff_new_booking(
    *,
    staff_email: str,
    staff_name: str,
    client_name: str,
    service_name: str,
    date_label: str,
    time_label: str,
    business_name: str,
) -> bool:
    esc = html.escape
    body = (
        f'<h1 style="color: #000;">New booking for {esc(staff_name)}</h1>'
        + _card(
            f"<strong>{esc(client_name)}</strong>",
            esc(service_name),
            f"{esc(date_label)} at {esc(time_label)}",
        )
    )
    return await send_email(
        staff_email,
        f"New booking: {client_name} - {service_name}",
        _wrap(body, f"Automatic message from {esc(business_name)}."),
        from_name=business_name,
    )


async def send_booking_reminder(
    *,
    client_name: str,
    client_email: str,
    service_name: str,
    staff_name: str,
    date_label: str,
    time_label: str,
    business_name: str,
) -> bool:
    esc = html.escape
    body = (
        f'<h1 style="color: #000;">Hi {esc(client_name)}!</h1>'
        "<p>A reminder that your appointment is <strong>tomorrow</strong>.</p>"
        + _card(
            f"<strong>{esc(service_name)}</strong>",
            f"with {esc(staff_name)}",
            f"{esc(date_label)} at {esc(time_label)}",
        )
        + f"<p>See you at <strong>{esc(business_name)}</strong>.</p>"
    )
    return await send_email(
        client_email,
        "Reminder: your appointment is tomorrow",
        _wrap(body, "If you can't make it, please let us know in advance."),
        from_name=business_name,
    )


async def send_winback_email(
    *,
    client_name: str,
    client_email: str,
    days_since_last_visit: int,
    business_name: str,
    booking_url: str,
) -> bool:
    esc = html.escape
    body = (
        f'<h1 style="color: #000;">We miss you, {esc(client_name)}!</h1>'
        f"<p>It's been {days_since_last_visit} days since your last visit to "
        f"<strong>{esc(business_name)}</strong>.</p>"
        + _button("Book now", booking_url)
    )
    return await send_email(
        client_email,
        f"It's been a while, {client_name}",
        _wrap(body, f"You received this because you visited {esc(business_name)}."),
        from_name=business_name,
    )


async def send_rating_request(
    *,
    client_name: str,
    client_email: str,
    service_name: str,
    staff_name: str,
    business_name: str,
    rating_url: str,
) -> bool:
    esc = html.escape
    body = (
        f'<h1 style="color: #000;">How was your visit, {esc(client_name)}?</h1>'
        f"<p>Tell us about your {esc(service_name)} with {esc(staff_name)}.</p>"
        + _button("Rate your visit", rating_url)
    )
    return await send_email(
        client_email,
        f"How was your visit to {business_name}?",
        _wrap(body, "It only takes a few seconds."),
        from_name=business_name,
    )
