"""
Outbound messaging collaborator.

``send_message(channel, to, body)`` is the only entry point the outreach
services use.  SMS goes out through Twilio; every other channel (email,
phone, mail, portal) is handed to staff or the patient portal, so the
receipt is recorded as ``pending`` with no external id.

Never raises: delivery problems come back in the receipt's ``error`` field
so callers can record them next to the offer or contact attempt.
"""

import asyncio
import logging
import re
from functools import lru_cache
from typing import Optional

from clinic_outreach.config import get_settings

logger = logging.getLogger(__name__)

# Strict E.164 format: + followed by 1-15 digits, starting with non-zero
_E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


@lru_cache(maxsize=16)
def _get_twilio_client(account_sid: str, auth_token: str):
    from twilio.rest import Client
    return Client(account_sid, auth_token)


async def send_sms(
    to_number: str,
    from_number: str,
    body: str,
    account_sid: str,
    auth_token: str,
    max_retries: int = 3,
) -> dict:
    """
    Twilio SMS send with retry on transient failures.

    Retries network errors, 429s and 5xx responses with exponential back-off
    (1s, 2s, 4s).  Other 4xx responses are permanent and returned at once.

    Returns {"success": True, "message_sid": "SM..."} or
    {"success": False, "error": "..."}.
    """
    if not _E164_PATTERN.match(to_number or ""):
        logger.error("send_sms: invalid to_number format: %s", (to_number or "")[:20])
        return {"success": False, "error": f"Invalid phone number format: {to_number}"}
    if not _E164_PATTERN.match(from_number or ""):
        logger.error("send_sms: invalid from_number format: %s", (from_number or "")[:20])
        return {"success": False, "error": f"Invalid from_number format: {from_number}"}

    from twilio.base.exceptions import TwilioRestException

    client = _get_twilio_client(account_sid, auth_token)
    last_error: str = ""

    for attempt in range(1, max_retries + 1):
        try:
            # Twilio's SDK is synchronous
            message = await asyncio.to_thread(
                client.messages.create,
                to=to_number,
                from_=from_number,
                body=body,
            )
            logger.info("SMS sent: SID=%s, to=%s (attempt %d)", message.sid, to_number, attempt)
            return {"success": True, "message_sid": message.sid}
        except TwilioRestException as e:
            last_error = f"Twilio error: {e.msg}" if hasattr(e, "msg") else str(e)
            twilio_status = getattr(e, "status", None)
            if twilio_status == 429:
                logger.warning("Twilio rate limit (429) sending SMS to %s (attempt %d/%d)", to_number, attempt, max_retries)
            elif twilio_status and 400 <= twilio_status < 500:
                logger.error("Twilio client error sending SMS to %s: %s", to_number, e)
                return {"success": False, "error": last_error}
            else:
                logger.warning("Twilio server error sending SMS to %s (attempt %d/%d): %s", to_number, attempt, max_retries, e)
        except Exception as e:
            last_error = f"Network/runtime error: {e}"
            logger.warning("Transient error sending SMS to %s (attempt %d/%d): %s", to_number, attempt, max_retries, e)

        if attempt < max_retries:
            await asyncio.sleep(2 ** (attempt - 1))

    logger.error("SMS to %s failed after %d attempts: %s", to_number, max_retries, last_error)
    return {"success": False, "error": last_error}


async def send_message(channel: str, to: Optional[str], body: str) -> dict:
    """Deliver ``body`` to ``to`` over ``channel``.

    Returns a receipt dict: {"external_id": str|None, "status": str, "error": str|None}
    where status is one of the contact-log delivery statuses (pending, sent, failed).
    """
    if channel != "sms":
        return {"external_id": None, "status": "pending", "error": None}

    if not to:
        return {"external_id": None, "status": "failed", "error": "Patient has no phone number on file"}

    settings = get_settings()
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        logger.warning("send_message: Twilio credentials not configured, SMS to %s not sent", to[:20])
        return {"external_id": None, "status": "failed", "error": "SMS delivery is not configured"}

    result = await send_sms(
        to_number=to,
        from_number=settings.TWILIO_FROM_NUMBER,
        body=body,
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        max_retries=settings.SMS_MAX_RETRIES,
    )
    if result["success"]:
        return {"external_id": result["message_sid"], "status": "sent", "error": None}
    return {"external_id": None, "status": "failed", "error": result.get("error")}
