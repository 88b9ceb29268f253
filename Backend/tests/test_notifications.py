"""
Tests for e-mail, iCalendar and SMS helpers.

Outbound HTTP is intercepted by patching httpx.AsyncClient.post; nothing
leaves the process.
"""

import base64
from datetime import datetime, timezone

import httpx
import pytest

from app import emailer, sms
from app.core.config import get_settings


def configured_settings(**overrides):
    values = {"resend_api_key": "re_test", "resend_from": "citas@agendabarber.pro"}
    values.update(overrides)
    return get_settings().model_copy(update=values)


class TestIcs:
    def test_escape_ical_text(self):
        assert emailer.escape_ical_text("a\\b;c,d\ne") == "a\\\\b\\;c\\,d\\ne"

    def test_event_uses_crlf_and_utc(self):
        ics = emailer.build_ics_event(
            uid="42@agendabarber",
            start_at=datetime(2026, 5, 18, 16, 0, tzinfo=timezone.utc),
            end_at=datetime(2026, 5, 18, 16, 30, tzinfo=timezone.utc),
            summary="Haircut with Luis",
            description="Appointment at Barbería Centro",
            location="Centro, CDMX",
        )
        assert ics.startswith("BEGIN:VCALENDAR\r\n")
        assert ics.endswith("END:VCALENDAR\r\n")
        assert "DTSTART:20260518T160000Z\r\n" in ics
        assert "DTEND:20260518T163000Z\r\n" in ics
        assert "LOCATION:Centro\\, CDMX\r\n" in ics
        assert "\n" not in ics.replace("\r\n", "")


class TestSendEmail:
    async def test_unconfigured_returns_false(self):
        assert await emailer.send_email("ana@example.com", "Hi", "<p>Hi</p>") is False

    async def test_posts_to_resend(self, monkeypatch):
        captured = {}

        async def fake_post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return httpx.Response(200, json={"id": "email_1"}, request=httpx.Request("POST", url))

        monkeypatch.setattr(emailer, "get_settings", configured_settings)
        monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

        ok = await emailer.send_email(
            "ana@example.com",
            "Appointment confirmed",
            "<p>See you</p>",
            attachments=[emailer.Attachment(filename="appointment.ics", content="BEGIN:VCALENDAR")],
            from_name="Barbería Centro",
        )

        assert ok is True
        assert captured["url"] == emailer.RESEND_URL
        assert captured["headers"]["Authorization"] == "Bearer re_test"
        assert captured["json"]["from"] == "Barbería Centro <citas@agendabarber.pro>"
        attachment = captured["json"]["attachments"][0]
        assert base64.b64decode(attachment["content"]).decode() == "BEGIN:VCALENDAR"

    async def test_http_error_is_reported_not_raised(self, monkeypatch):
        async def failing_post(self, url, json=None, headers=None):
            return httpx.Response(500, request=httpx.Request("POST", url))

        monkeypatch.setattr(emailer, "get_settings", configured_settings)
        monkeypatch.setattr(httpx.AsyncClient, "post", failing_post)

        assert await emailer.send_email("ana@example.com", "Hi", "<p>Hi</p>") is False

    async def test_confirmation_attaches_calendar_invite(self, monkeypatch):
        sent = {}

        async def fake_send(to_email, subject, html_body, attachments=None, from_name=None):
            sent.update(to=to_email, subject=subject, html=html_body, attachments=attachments)
            return True

        monkeypatch.setattr(emailer, "send_email", fake_send)

        ok = await emailer.send_booking_confirmation(
            client_name="Ana <script>",
            client_email="ana@example.com",
            service_name="Haircut",
            staff_name="Luis",
            date_label="Monday, May 18",
            time_label="10:00 AM",
            business_name="Barbería Centro",
            booking_id="42",
            start_at=datetime(2026, 5, 18, 16, 0, tzinfo=timezone.utc),
            end_at=datetime(2026, 5, 18, 16, 30, tzinfo=timezone.utc),
        )

        assert ok is True
        assert sent["subject"] == "Appointment confirmed: Haircut"
        assert "&lt;script&gt;" in sent["html"]
        assert sent["attachments"][0].filename == "appointment.ics"
        assert "UID:42@agendabarber" in sent["attachments"][0].content


class TestSms:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5512345678", "+525512345678"),
            ("55 1234 5678", "+525512345678"),
            ("+1 (212) 555-0100", "+12125550100"),
            ("0044 20 7946 0958", "+442079460958"),
            ("", ""),
        ],
    )
    def test_ensure_e164_format(self, raw, expected):
        assert sms.ensure_e164_format(raw) == expected

    async def test_unconfigured_returns_false(self):
        assert await sms.send_sms("5512345678", "Reminder") is False
