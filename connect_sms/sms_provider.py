"""
Twilio access for sending SMS and reading message history.

The provider is built once when the application starts and is handed to
request handlers through the ``get_sms_provider`` dependency.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fastapi import Request
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from connect_sms.config import Settings
from connect_sms.errors import ApiError

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 20


class SmsProviderError(Exception):
    """Raised when the SMS provider rejects or fails a call."""


@dataclass
class ProviderMessage:
    """A message as reported by the SMS provider."""
    sid: str
    body: Optional[str]
    from_: Optional[str]
    to: Optional[str]
    direction: Optional[str]
    status: Optional[str]
    date_sent: Optional[datetime]

    @classmethod
    def from_twilio(cls, record) -> "ProviderMessage":
        return cls(
            sid=record.sid,
            body=record.body,
            from_=record.from_,
            to=record.to,
            direction=record.direction,
            status=record.status,
            date_sent=record.date_sent,
        )


class TwilioSmsProvider:
    """Thin wrapper over the Twilio REST client."""

    def __init__(self, client: TwilioClient, from_number: str):
        self.client = client
        self.from_number = from_number

    def send(self, to: str, body: str) -> ProviderMessage:
        try:
            record = self.client.messages.create(to=to, body=body, from_=self.from_number)
        except TwilioException as e:
            logger.error(f"Twilio send to {to} failed: {e}")
            raise SmsProviderError(str(e)) from e
        logger.info(f"SMS sent successfully, Twilio SID: {record.sid}")
        return ProviderMessage.from_twilio(record)

    def list_messages(
        self,
        to: Optional[str] = None,
        from_: Optional[str] = None,
        limit: int = HISTORY_PAGE_SIZE,
    ) -> List[ProviderMessage]:
        filters = {}
        if to:
            filters["to"] = to
        if from_:
            filters["from_"] = from_

        try:
            records = self.client.messages.list(limit=limit, **filters)
        except TwilioException as e:
            logger.error(f"Twilio history lookup failed (to={to}, from={from_}): {e}")
            raise SmsProviderError(str(e)) from e
        return [ProviderMessage.from_twilio(record) for record in records]


def build_sms_provider(settings: Settings) -> Optional[TwilioSmsProvider]:
    """Create the provider, or return None when Twilio credentials are missing."""
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN):
        logger.warning("Twilio credentials not configured, SMS provider disabled")
        return None

    client = TwilioClient(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    logger.info("Twilio client initialized")
    return TwilioSmsProvider(client, settings.TWILIO_PHONE_NUMBER)


def get_sms_provider(request: Request) -> TwilioSmsProvider:
    """Dependency returning the provider created at startup."""
    provider = getattr(request.app.state, "sms_provider", None)
    if provider is None:
        raise ApiError(500, "SMS provider not configured")
    return provider
