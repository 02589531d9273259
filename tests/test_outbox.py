"""Tests for outbox delivery with retry and dead-lettering."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select

from churnpilot.exceptions import DispatchError
from churnpilot.models import PlaybookTriggerLog
from churnpilot.models.outbox import OutboxMessage
from churnpilot.services.email import SendResult
from churnpilot.services.outbox import OutboxWorker, backoff_delay


async def _queued(db, channel="webhook", payload=None, max_attempts=3):
    log = PlaybookTriggerLog(
        playbook_id="pb-1",
        customer_id="cus_1",
        action_type="webhook" if channel == "webhook" else "send_email",
        dedupe_bucket=1,
        outcome="queued",
    )
    db.add(log)
    await db.flush()
    if payload is None:
        payload = (
            {"url": "https://hooks.example.com/x", "secret": None, "body": {"event": "churn.playbook_action"}}
            if channel == "webhook"
            else {"to": "jane@example.com", "subject": "Hi", "body": "<p>Hello</p>", "template": None}
        )
    message = OutboxMessage(
        trigger_log_id=log.id,
        channel=channel,
        payload=json.dumps(payload),
        max_attempts=max_attempts,
    )
    db.add(message)
    await db.commit()
    return log, message


async def _log(db, log_id):
    result = await db.execute(
        select(PlaybookTriggerLog).where(PlaybookTriggerLog.id == log_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def test_backoff_doubles():
    assert backoff_delay(1, 30) == timedelta(seconds=30)
    assert backoff_delay(2, 30) == timedelta(seconds=60)
    assert backoff_delay(4, 30) == timedelta(seconds=240)


@pytest.mark.asyncio
async def test_webhook_delivered(db):
    log, message = await _queued(db)
    http_post = AsyncMock(return_value=204)

    counts = await OutboxWorker(db, http_post=http_post).deliver_due()

    assert counts == {"delivered": 1, "retrying": 0, "dead": 0}
    http_post.assert_awaited_once_with(
        "https://hooks.example.com/x", {"event": "churn.playbook_action"}, None, 1
    )
    assert message.status == "delivered"
    settled = await _log(db, log.id)
    assert settled.outcome == "success"
    assert settled.response_status == 204
    assert settled.completed_at is not None


@pytest.mark.asyncio
async def test_email_delivered_records_provider_id(db):
    log, _ = await _queued(db, channel="email")
    mail_sender = AsyncMock(return_value=SendResult(success=True, provider_message_id="<abc@mail>"))

    await OutboxWorker(db, mail_sender=mail_sender).deliver_due()

    mail_sender.assert_awaited_once_with("jane@example.com", "Hi", "<p>Hello</p>")
    assert (await _log(db, log.id)).provider_message_id == "<abc@mail>"


@pytest.mark.asyncio
async def test_failure_schedules_retry_with_backoff(db):
    log, message = await _queued(db)
    http_post = AsyncMock(side_effect=DispatchError("Webhook returned HTTP 500", status_code=500))
    before = datetime.now(timezone.utc)

    counts = await OutboxWorker(db, http_post=http_post).deliver_due()

    assert counts["retrying"] == 1
    assert message.status == "pending"
    assert message.attempts == 1
    assert "HTTP 500" in message.last_error
    assert message.next_attempt_at >= before + timedelta(seconds=30)
    # Not due yet
    assert await OutboxWorker(db, http_post=http_post).deliver_due() == {"delivered": 0, "retrying": 0, "dead": 0}
    assert (await _log(db, log.id)).outcome == "queued"


@pytest.mark.asyncio
async def test_dead_letter_after_max_attempts(db):
    log, message = await _queued(db, max_attempts=2)
    http_post = AsyncMock(side_effect=DispatchError("Webhook returned HTTP 503", status_code=503))
    worker = OutboxWorker(db, http_post=http_post)

    await worker.deliver_due()
    message.next_attempt_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db.commit()
    counts = await worker.deliver_due()

    assert counts["dead"] == 1
    assert message.status == "dead"
    assert http_post.await_count == 2
    settled = await _log(db, log.id)
    assert settled.outcome == "failed"
    assert settled.response_status == 503
    assert "Gave up after 2 attempts" in settled.detail


@pytest.mark.asyncio
async def test_retry_then_success(db):
    log, message = await _queued(db)
    http_post = AsyncMock(side_effect=[DispatchError("timeout"), 200])
    worker = OutboxWorker(db, http_post=http_post)

    await worker.deliver_due()
    message.next_attempt_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db.commit()
    await worker.deliver_due()

    assert message.status == "delivered"
    assert message.attempts == 2
    assert http_post.await_args.args[3] == 2
    assert (await _log(db, log.id)).outcome == "success"


@pytest.mark.asyncio
async def test_claimed_message_not_delivered_twice(db):
    _, message = await _queued(db)
    worker = OutboxWorker(db, http_post=AsyncMock(return_value=200))
    assert await worker.claim(message) is True
    assert await worker.claim(message) is False


@pytest.mark.asyncio
async def test_malformed_payload_counts_as_failure(db):
    _, message = await _queued(db, payload={"body": {}}, max_attempts=1)
    counts = await OutboxWorker(db, http_post=AsyncMock(return_value=200)).deliver_due()
    assert counts["dead"] == 1
    assert message.status == "dead"


@pytest.mark.asyncio
async def test_unexpected_error_reschedules_and_siblings_still_deliver(db):
    bad_log, bad = await _queued(db, payload={"url": "http://[::1", "secret": None, "body": {"event": "e"}})
    good_log, good = await _queued(db)

    async def http_post(url, body, secret, attempt):
        if url == "http://[::1":
            raise httpx.InvalidURL("Invalid port: ':1'")
        return 200

    counts = await OutboxWorker(db, http_post=AsyncMock(side_effect=http_post)).deliver_due()

    assert counts == {"delivered": 1, "retrying": 1, "dead": 0}
    assert good.status == "delivered"
    assert (await _log(db, good_log.id)).outcome == "success"
    assert bad.status == "pending"
    assert bad.attempts == 1
    assert "Invalid port" in bad.last_error
    assert (await _log(db, bad_log.id)).outcome == "queued"


@pytest.mark.asyncio
async def test_unexpected_error_dead_letters_at_max_attempts(db):
    log, message = await _queued(db, max_attempts=1)
    http_post = AsyncMock(side_effect=RuntimeError("driver exploded"))

    counts = await OutboxWorker(db, http_post=http_post).deliver_due()

    assert counts["dead"] == 1
    assert message.status == "dead"
    assert (await _log(db, log.id)).outcome == "failed"


@pytest.mark.asyncio
async def test_stale_sending_message_is_reclaimed(db):
    log, message = await _queued(db)
    message.status = "sending"
    message.next_attempt_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db.commit()

    counts = await OutboxWorker(db, http_post=AsyncMock(return_value=200)).deliver_due()

    assert counts["delivered"] == 1
    assert (await _log(db, log.id)).outcome == "success"


@pytest.mark.asyncio
async def test_leased_message_is_not_due(db):
    _, message = await _queued(db)
    worker = OutboxWorker(db, http_post=AsyncMock(return_value=200))
    assert await worker.claim(message) is True
    assert message.status == "sending"
    assert await worker.due_messages(10) == []
