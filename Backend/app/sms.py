"""
SMS sender using Twilio Programmable SMS.

Used for appointment reminders when a guest left a phone number but no
e-mail address.
"""

import logging

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .core.config import get_settings

logger = logging.getLogger(__name__)

# Ten-digit local numbers are assumed to be Mexican
DEFAULT_COUNTRY_CODE = "+52"


def ensure_e164_format(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a phone number to E.164 (+<country><number>)."""
    if not phone:
        return ""

    cleaned = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("00"):
        return f"+{cleaned[2:]}"
    if len(cleaned) == 10:
        return f"{country_code}{cleaned}"
    return f"+{cleaned}" if cleaned else ""


async def send_sms(to_phone: str, body: str) -> bool:
    """
    Send an SMS using Twilio.

    Returns True on success. Missing configuration and API errors are
    logged and reported as False; this function never raises.
    """
    settings = get_settings()
    try:
        if not settings.twilio_account_sid or not settings.twilio_auth_token or not settings.twilio_from_number:
            logger.warning("Twilio SMS not configured. Skipping SMS send.")
            return False

        to_formatted = ensure_e164_format(to_phone)
        from_formatted = ensure_e164_format(settings.twilio_from_number)
        if not to_formatted:
            logger.error(f"Invalid phone number format: {to_phone!r}")
            return False

        client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        message = client.messages.create(body=body, from_=from_formatted, to=to_formatted)

        logger.info(f"SMS sent to {to_formatted[:6]}***. SID: {message.sid}")
        return True

    except TwilioRestException as e:
        logger.error(f"Twilio API error sending SMS to {to_phone[:6]}***: {e.code} - {e.msg}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error sending SMS to {to_phone[:6]}***: {e}")
        return False
