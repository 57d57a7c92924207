# app/infra/notification_channels.py
"""
Outbound notification channels.

- SMS via Twilio REST API (blocking client, run in a worker thread)
- Push via an HTTP push gateway (aiohttp)

Channels make a single delivery attempt.  Timeouts, retries, the circuit
breaker and outbox fallback live in ``ResilientChannelSender``; provider
exceptions are allowed to propagate so the sender can record them.

Usage:
    sms = TwilioSmsChannel(sid, token, from_number)
    ok = await sms.send("+15550100", "Your bid was accepted")
"""
from __future__ import annotations

import abc
import asyncio
from typing import Any

from app.infra.http_client import get_sender_session
from app.infra.logging_config import get_logger, mask_phone

logger = get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Abstract base class for notification channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics ("sms", "push")"""

    @abc.abstractmethod
    async def send(self, recipient: str, body: str) -> bool:
        """
        Deliver one message.

        Returns:
            True if the provider accepted it, False if it refused
        """

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel has the credentials it needs"""


class TwilioSmsChannel(NotificationChannel):
    """SMS through the Twilio Messages API."""

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        client: Any = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client

    @property
    def name(self) -> str:
        return "sms"

    def is_configured(self) -> bool:
        return bool(
            (self._client is not None or (self._account_sid and self._auth_token))
            and self._from_number
        )

    def _get_client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    async def send(self, recipient: str, body: str) -> bool:
        if not self.is_configured():
            logger.warning("Twilio SMS channel not configured")
            return False

        client = self._get_client()
        message = await asyncio.to_thread(
            client.messages.create,
            from_=self._from_number,
            to=recipient,
            body=body,
        )

        sid = getattr(message, "sid", None)
        if not sid:
            logger.warning(f"Twilio returned no message sid for {mask_phone(recipient)}")
            return False

        logger.info(f"SMS sent: sid={sid[:8]}***, to={mask_phone(recipient)}")
        return True


class PushGatewayChannel(NotificationChannel):
    """Push notifications via an HTTP gateway that fans out to devices."""

    def __init__(self, url: str | None, token: str | None = None) -> None:
        self._url = url
        self._token = token

    @property
    def name(self) -> str:
        return "push"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def send(self, recipient: str, body: str) -> bool:
        if not self.is_configured():
            logger.warning("Push gateway not configured")
            return False

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        session = get_sender_session()
        async with session.post(
            self._url,
            json={"to": recipient, "body": body},
            headers=headers,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                logger.warning(f"Push gateway rejected message: status={resp.status} body={text[:200]}")
                return False

        logger.info(f"Push sent: to={recipient}")
        return True
