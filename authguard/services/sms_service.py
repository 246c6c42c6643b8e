# authguard/services/sms_service.py

import logging
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from authguard.core.config import settings

logger = logging.getLogger(__name__)


class SmsDeliveryError(RuntimeError):
    pass


class SmsService:
    """Twilio SMS for phone factor challenges."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
    ):
        account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.client = Client(account_sid, auth_token) if account_sid and auth_token else None

    @property
    def configured(self) -> bool:
        return self.client is not None and bool(self.from_number)

    def send_sms(self, to: str, body: str) -> str:
        if not self.configured:
            raise SmsDeliveryError("SMS is not configured")

        try:
            message = self.client.messages.create(body=body, to=to, from_=self.from_number)
        except TwilioException as e:
            logger.error("Twilio SMS to %s failed: %s", to, e)
            raise SmsDeliveryError("Failed to send SMS") from e

        logger.info("SMS sent via Twilio: %s", message.sid)
        return message.sid
