"""Outbound SMS to the clinic desk through Twilio."""

from __future__ import annotations

import logging

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from . import config

logger = logging.getLogger(__name__)


class SmsNotConfigured(ValueError):
    pass


def twilio_client() -> Client:
    creds = config.twilio_credentials()
    if creds is None:
        raise SmsNotConfigured("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set")
    return Client(*creds)


def send_sms(to_phone: str, body: str) -> str | None:
    """Send `body` to `to_phone`; returns the message SID, or None when SMS is unconfigured or Twilio refuses."""
    sender = config.twilio_from_number()
    try:
        if not sender:
            raise SmsNotConfigured("TWILIO_PHONE_NUMBER must be set")
        message = twilio_client().messages.create(to=to_phone, from_=sender, body=body)
    except (SmsNotConfigured, TwilioException) as exc:
        logger.warning("SMS to %s not sent: %s", to_phone, exc)
        return None
    return message.sid
