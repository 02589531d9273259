"""Outbox worker — delivers queued emails and webhooks with bounded retry.

Each due message is claimed with a conditional UPDATE (pending → sending) so
two workers never deliver the same message. The claim is a lease: a message
left in ``sending`` past its lease (worker died mid-send) is claimable again.
A failed attempt is rescheduled with exponential backoff
(base * 2^(attempt-1) seconds) until ``max_attempts`` is reached, after which
the message is dead-lettered and its trigger-log row is settled as ``failed``.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.config import get_settings
from churnpilot.exceptions import DispatchError
from churnpilot.models import PlaybookTriggerLog
from churnpilot.models.outbox import OutboxMessage
from churnpilot.services.email import send_email
from churnpilot.services.webhook_client import post_json

logger = logging.getLogger(__name__)
settings = get_settings()


def backoff_delay(attempt: int, base_seconds: Optional[int] = None) -> timedelta:
    base = settings.outbox_backoff_base_seconds if base_seconds is None else base_seconds
    return timedelta(seconds=base * 2 ** max(0, attempt - 1))


def claim_lease() -> timedelta:
    return timedelta(seconds=settings.dispatch_timeout_seconds * 2)


def _claimable(now: datetime):
    # pending rows wait for their retry time, sending rows for their lease to lapse
    return (
        OutboxMessage.status.in_(("pending", "sending"))
        & (OutboxMessage.next_attempt_at <= now)
    )


class OutboxWorker:
    """Drains due outbox messages through the mail sender and webhook client."""

    def __init__(self, db: AsyncSession, mail_sender=None, http_post=None):
        self.db = db
        self.mail_sender = mail_sender or send_email
        self.http_post = http_post or post_json

    async def due_messages(self, limit: int) -> list[OutboxMessage]:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(OutboxMessage)
            .where(_claimable(now))
            .order_by(OutboxMessage.next_attempt_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, message: OutboxMessage) -> bool:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message.id, _claimable(now))
            .values(status="sending", next_attempt_at=now + claim_lease())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return False
        await self.db.refresh(message)
        return True

    async def deliver_due(self, limit: Optional[int] = None) -> dict:
        """Attempt every due message once. Returns counts per resulting status."""
        counts = {"delivered": 0, "retrying": 0, "dead": 0}
        for message in await self.due_messages(limit or settings.outbox_batch_size):
            if not await self.claim(message):
                continue
            status = await self.deliver(message)
            counts[status] += 1
        if any(counts.values()):
            logger.info(f"Outbox run: {counts}")
        return counts

    async def _send(self, message: OutboxMessage, attempt: int) -> tuple[Optional[str], Optional[int]]:
        payload = json.loads(message.payload or "{}")
        timeout = settings.dispatch_timeout_seconds
        if message.channel == "email":
            result = await asyncio.wait_for(
                self.mail_sender(payload["to"], payload["subject"], payload["body"]), timeout
            )
            return result.provider_message_id, None
        if message.channel == "webhook":
            status = await asyncio.wait_for(
                self.http_post(payload["url"], payload["body"], payload.get("secret"), attempt), timeout
            )
            return None, status
        raise DispatchError(f"Unknown outbox channel: {message.channel}")

    async def deliver(self, message: OutboxMessage) -> str:
        """One delivery attempt for a claimed message: delivered | retrying | dead."""
        attempt = (message.attempts or 0) + 1
        message.attempts = attempt

        try:
            provider_id, status_code = await self._send(message, attempt)
        except (DispatchError, asyncio.TimeoutError, KeyError, json.JSONDecodeError) as exc:
            return await self._fail(message, attempt, exc)
        except Exception as exc:
            logger.exception(f"Outbox {message.id} ({message.channel}) attempt {attempt} raised")
            return await self._fail(message, attempt, exc)

        message.status = "delivered"
        message.delivered_at = datetime.now(timezone.utc)
        message.last_error = ""
        await self._settle_log(
            message.trigger_log_id,
            outcome="success",
            detail=f"{message.channel} delivered on attempt {attempt}",
            provider_message_id=provider_id,
            response_status=status_code,
        )
        await self.db.commit()
        return "delivered"

    async def _fail(self, message: OutboxMessage, attempt: int, exc: Exception) -> str:
        error = str(exc) or exc.__class__.__name__
        message.last_error = error[:2000]

        if attempt >= (message.max_attempts or settings.outbox_max_attempts):
            message.status = "dead"
            await self._settle_log(
                message.trigger_log_id,
                outcome="failed",
                detail=f"Gave up after {attempt} attempts: {error}",
                response_status=getattr(exc, "status_code", None),
            )
            logger.error(f"Outbox {message.id} ({message.channel}) dead after {attempt} attempts: {error}")
            await self.db.commit()
            return "dead"

        message.status = "pending"
        message.next_attempt_at = datetime.now(timezone.utc) + backoff_delay(attempt)
        logger.warning(
            f"Outbox {message.id} ({message.channel}) attempt {attempt} failed, "
            f"retrying at {message.next_attempt_at.isoformat()}: {error}"
        )
        await self.db.commit()
        return "retrying"

    async def _settle_log(self, log_id: str, **values) -> None:
        await self.db.execute(
            update(PlaybookTriggerLog)
            .where(PlaybookTriggerLog.id == log_id)
            .values(completed_at=datetime.now(timezone.utc), **values)
        )
