"""
Carrier gateway client.

SmsGateway is the capability the dispatcher depends on; TwilioGateway is
the REST implementation. Tests substitute their own SmsGateway.
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from bridgechat.config import Settings
from bridgechat.domain import DeliveryStatus
from bridgechat.errors import ConfigurationError, GatewayError
from bridgechat.validators import mask_phone_number

logger = logging.getLogger(__name__)


CARRIER_STATUS_MAP = {
    "accepted": DeliveryStatus.QUEUED,
    "queued": DeliveryStatus.QUEUED,
    "sending": DeliveryStatus.QUEUED,
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.UNDELIVERED,
}


def map_carrier_status(carrier_status: Optional[str]) -> DeliveryStatus:
    """Map the carrier's status vocabulary onto DeliveryStatus; unknown -> pending."""
    return CARRIER_STATUS_MAP.get((carrier_status or "").lower(), DeliveryStatus.PENDING)


class SendResult(BaseModel):
    """Carrier response to one outbound send."""
    sid: str
    status: str


class SmsGateway(Protocol):
    def send_sms(
        self,
        from_number: str,
        to_number: str,
        body: str,
        status_callback: Optional[str] = None,
    ) -> SendResult:
        ...


class TwilioGateway:
    """Sends SMS through the Twilio-compatible Messages REST endpoint."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        if not account_sid or not auth_token:
            raise ConfigurationError("Carrier credentials not configured")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwilioGateway":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            base_url=settings.TWILIO_API_BASE_URL,
            timeout=settings.TWILIO_TIMEOUT_SECONDS,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def send_sms(
        self,
        from_number: str,
        to_number: str,
        body: str,
        status_callback: Optional[str] = None,
    ) -> SendResult:
        """
        Send one SMS.

        Returns:
            SendResult with the carrier sid and its initial status string

        Raises:
            GatewayError: on transport errors or a non-2xx response
        """
        data = {"From": from_number, "To": to_number, "Body": body}
        if status_callback:
            data["StatusCallback"] = status_callback

        try:
            if self._client is not None:
                response = self._post(self._client, data)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = self._post(client, data)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}: {e.response.text}"
            logger.error(f"Carrier rejected SMS to {mask_phone_number(to_number)}: {error_msg}")
            raise GatewayError(f"Carrier API error: {error_msg}")
        except httpx.HTTPError as e:
            logger.error(f"Carrier request failed for {mask_phone_number(to_number)}: {e}")
            raise GatewayError(f"Carrier request failed: {e}")

        payload = response.json()
        return SendResult(sid=payload["sid"], status=payload.get("status", ""))

    def _post(self, client: httpx.Client, data: dict) -> httpx.Response:
        return client.post(
            self.messages_url,
            data=data,
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
