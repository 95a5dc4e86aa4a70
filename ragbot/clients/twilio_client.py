"""Twilio WhatsApp client.

Async delivery of outbound WhatsApp messages through the Twilio Messages REST
API. Errors are logged and reported in the returned `SendMessageResult`, never
raised, so the webhook can translate them into an HTTP response.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import uuid

import httpx

from .. import config

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0


@dataclass
class SendMessageResult:
    success: bool
    message_sid: Optional[str] = None
    error: Optional[str] = None


class TwilioClient:
    """Sends WhatsApp messages via Twilio.

    Args:
        account_sid: Twilio Account SID (AC...).
        auth_token: Twilio auth token, used for HTTP basic auth.
        from_number: Sender in WhatsApp format ('whatsapp:+1555...').
        messaging_service_sid: Messaging Service SID; preferred over from_number.
        api_url: Twilio API base URL.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: Optional[str] = None,
        messaging_service_sid: Optional[str] = None,
        api_url: str = "https://api.twilio.com",
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.messaging_service_sid = messaging_service_sid
        self.api_url = api_url.rstrip("/")

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def _build_payload(self, to: str, body: str) -> Dict[str, str]:
        payload = {"To": to, "Body": body}
        if self.messaging_service_sid:
            payload["MessagingServiceSid"] = self.messaging_service_sid
        elif self.from_number:
            payload["From"] = self.from_number
        return payload

    async def send_whatsapp_message(self, to: str, body: str) -> SendMessageResult:
        """Send a text message to a WhatsApp address ('whatsapp:+...')."""
        if not self.messaging_service_sid and not self.from_number:
            logger.error("[TWILIO] No sender configured (TWILIO_PHONE_NUMBER or TWILIO_MESSAGING_SERVICE_SID)")
            return SendMessageResult(success=False, error="No sender configured")

        payload = self._build_payload(to, body)
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
            try:
                response = await client.post(
                    self.messages_url,
                    data=payload,
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
                data = response.json()
                logger.info(f"[TWILIO] Message sent to {to}: sid={data.get('sid')} status={data.get('status')}")
                return SendMessageResult(success=True, message_sid=data.get("sid"))
            except httpx.HTTPStatusError as e:
                detail = _error_detail(e.response)
                logger.error(f"[TWILIO] Error sending message to {to}: {e.response.status_code} {detail}")
                return SendMessageResult(success=False, error=detail)
            except httpx.HTTPError as e:
                logger.error(f"[TWILIO] Request to Twilio failed for {to}: {e}")
                return SendMessageResult(success=False, error=str(e) or e.__class__.__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return data.get("message") or response.text


class FakeTwilioClient:
    """Records outbound messages instead of calling Twilio."""

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.sent: List[Dict[str, str]] = []

    async def send_whatsapp_message(self, to: str, body: str) -> SendMessageResult:
        if self.fail_with:
            return SendMessageResult(success=False, error=self.fail_with)
        sid = f"SM{uuid.uuid4().hex}"
        self.sent.append({"to": to, "body": body, "sid": sid})
        logger.info(f"[TWILIO] (fake) Message recorded for {to}: sid={sid}")
        return SendMessageResult(success=True, message_sid=sid)


def create_twilio_client(use_fake_clients: Optional[bool] = None) -> Any:
    """Build the Twilio client from config (or the fake)."""
    if use_fake_clients is None:
        use_fake_clients = config.USE_FAKE_CLIENTS
    if use_fake_clients:
        return FakeTwilioClient()
    return TwilioClient(
        account_sid=config.TWILIO_ACCOUNT_SID,
        auth_token=config.TWILIO_AUTH_TOKEN,
        from_number=config.TWILIO_PHONE_NUMBER,
        messaging_service_sid=config.TWILIO_MESSAGING_SERVICE_SID,
        api_url=config.TWILIO_API_URL,
    )
