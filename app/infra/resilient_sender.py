# app/infra/resilient_sender.py
"""
Resilient delivery around a notification channel.

Each attempt is raced against a local deadline (``asyncio.wait_for``);
failed attempts are retried with linear backoff.  A call whose attempts
are all exhausted counts as one circuit-breaker failure.  Anything that
is not delivered ends up in the outbox:

    breaker open      -> outbox queued, error="breaker_open", no provider call
    not configured    -> outbox queued, error="not_configured"
    all attempts fail -> outbox failed, error=<last error>

``send`` never raises; the return value says what happened.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

from app.core.dispatch.domain import OutboxEntry, OutboxStatus, utcnow
from app.core.dispatch.ports import OutboxRepository
from app.infra.circuit_breaker import CircuitBreaker
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import DispatchMetrics
from app.infra.notification_channels import NotificationChannel

logger = get_logger(__name__)

SENT = "sent"
QUEUED = "queued"
FAILED = "failed"
DROPPED = "dropped"

BREAKER_OPEN = "breaker_open"
NOT_CONFIGURED = "not_configured"


class ResilientChannelSender:
    def __init__(
        self,
        channel: NotificationChannel,
        outbox: OutboxRepository,
        breaker: CircuitBreaker,
        timeout_seconds: float = 4.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channel = channel
        self.outbox = outbox
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.channel.name

    async def send(self, recipient: str, body: str, job_id: Optional[str] = None) -> str:
        if not recipient or not body:
            logger.warning(f"Skipping {self.name} notification with empty recipient or body", extra=_ctx(job_id))
            return DROPPED

        if not self.breaker.is_available():
            DispatchMetrics.breaker_rejected(self.name)
            logger.warning(f"{self.name} breaker open, queueing message", extra=_ctx(job_id))
            return await self._to_outbox(recipient, body, job_id, OutboxStatus.QUEUED, BREAKER_OPEN)

        if not self.channel.is_configured():
            return await self._to_outbox(recipient, body, job_id, OutboxStatus.QUEUED, NOT_CONFIGURED)

        last_error = "unknown error"
        with DispatchMetrics.track_notification_time(self.name):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    delivered = await asyncio.wait_for(
                        self.channel.send(recipient, body),
                        timeout=self.timeout_seconds,
                    )
                    if delivered:
                        self.breaker.record_success()
                        DispatchMetrics.notification(self.name, SENT)
                        return SENT
                    last_error = "provider refused message"
                except asyncio.TimeoutError:
                    last_error = f"timeout after {self.timeout_seconds:g}s"
                except Exception as exc:
                    last_error = str(exc) or exc.__class__.__name__

                logger.warning(
                    f"{self.name} send attempt {attempt}/{self.max_attempts} to "
                    f"{mask_phone(recipient)} failed: {last_error}",
                    extra=_ctx(job_id),
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_seconds * attempt)

        self.breaker.record_failure()
        return await self._to_outbox(recipient, body, job_id, OutboxStatus.FAILED, last_error)

    async def _to_outbox(
        self,
        recipient: str,
        body: str,
        job_id: Optional[str],
        status: OutboxStatus,
        error: str,
    ) -> str:
        entry = OutboxEntry(
            id=str(uuid.uuid4()),
            kind=self.name,
            recipient=recipient,
            body=body,
            job_id=job_id,
            status=status,
            error=error,
            created_at=utcnow(),
        )
        try:
            await self.outbox.append(entry)
        except Exception:
            logger.error(
                f"Outbox write failed, {self.name} message dropped (reason={error})",
                extra=_ctx(job_id),
                exc_info=True,
            )
            DispatchMetrics.notification(self.name, DROPPED)
            return DROPPED

        result = QUEUED if status == OutboxStatus.QUEUED else FAILED
        DispatchMetrics.notification(self.name, result)
        return result


def _ctx(job_id: Optional[str]) -> dict:
    return {"job_id": job_id} if job_id else {}
