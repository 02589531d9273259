"""Tests for the ingestion paths (single event, bulk rows, reprocessing)."""

import json
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from churnpilot.exceptions import PersistenceError, ValidationError
from churnpilot.models import CustomerRecord, Playbook, PlaybookTriggerLog
from churnpilot.services.ingestion import (
    get_customer,
    ingest_event,
    ingest_rows,
    record_to_row,
    reprocess_owner,
    save_scored_record,
)

AT_RISK = {
    "Customer_ID": "cus_1",
    "Email": "Jane@Example.com",
    "last_login_days_ago": "95",
    "logins": "2",
    "tickets": "6",
    "plan": "Free",
    "MRR": "$120.50",
    "days_since_signup": "200",
}


async def _tag_playbook(db, owner_id="acme"):
    pb = Playbook(
        owner_id=owner_id,
        name="Tag risky",
        conditions=json.dumps([{"field": "risk_level", "operator": "equals", "value": "high"}]),
        actions=json.dumps([{"type": "tag", "config": {"tag": "at-risk"}}]),
    )
    db.add(pb)
    await db.commit()
    return pb


async def _count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar()


# ── Single event ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_ingest_event_scores_and_persists(db):
    result = await ingest_event(db, AT_RISK, owner_id="acme")

    out = result.to_dict()
    assert out["customer_id"] == "cus_1"
    assert out["risk_level"] == "high"
    assert out["churn_reason"].startswith("inactive_over_90_days")
    assert out["actions"] == []

    record = await get_customer(db, "acme", "cus_1")
    assert record.email == "jane@example.com"
    assert record.monthly_revenue == 120.5
    assert record.risk_level == "high"
    assert record.user_stage == "mature_user"
    assert record.scored_at is not None


@pytest.mark.asyncio
async def test_new_event_overwrites_current_state(db):
    await ingest_event(db, AT_RISK, owner_id="acme")
    await ingest_event(db, {**AT_RISK, "last_login_days_ago": "1", "logins": "30", "tickets": "0"}, owner_id="acme")

    assert await _count(db, CustomerRecord) == 1
    record = await get_customer(db, "acme", "cus_1")
    assert record.last_login_days_ago == 1
    assert record.risk_level != "high"


@pytest.mark.asyncio
async def test_upsert_keeps_tags(db):
    await _tag_playbook(db)
    await ingest_event(db, AT_RISK, owner_id="acme")
    await ingest_event(db, {**AT_RISK, "logins": "3"}, owner_id="acme")

    record = await get_customer(db, "acme", "cus_1")
    assert json.loads(record.tags) == ["at-risk"]


@pytest.mark.asyncio
async def test_ingest_event_runs_playbooks(db):
    await _tag_playbook(db)
    result = await ingest_event(db, AT_RISK, owner_id="acme")
    assert [a.outcome for a in result.actions] == ["success"]

    again = await ingest_event(db, AT_RISK, owner_id="acme")
    assert [a.outcome for a in again.actions] == ["skipped_cooldown"]
    assert await _count(db, PlaybookTriggerLog) == 1


@pytest.mark.asyncio
async def test_ingest_event_without_identity(db):
    with pytest.raises(ValidationError):
        await ingest_event(db, {"email": "x@y.com"}, owner_id="acme")
    assert await _count(db, CustomerRecord) == 0


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_persistence_error(db):
    from sqlalchemy.exc import OperationalError

    with patch.object(db, "execute", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
        with pytest.raises(PersistenceError):
            await ingest_event(db, AT_RISK, owner_id="acme")


# ── Bulk ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_bulk_reports_per_row_failures(db):
    rows = [
        {"customer_id": f"c{i}", "last_login_days_ago": i * 10, "logins": 3} for i in range(7)
    ]
    rows.insert(3, {"email": "orphan@example.com"})

    report = await ingest_rows(rows, owner_id="acme", batch_size=3, delay_seconds=0, first_row_number=2)

    assert report.total_rows == 8
    assert report.succeeded == 7
    assert report.failed == 1
    assert report.errors[0]["row"] == 5
    assert report.errors[0]["fields"] == ["customer_id"]
    assert await _count(db, CustomerRecord) == 7


@pytest.mark.asyncio
async def test_bulk_error_sample_capped(db):
    rows = [{"email": f"user{i}@example.com"} for i in range(60)]
    report = await ingest_rows(rows, owner_id="acme", batch_size=10, delay_seconds=0)
    out = report.to_dict()
    assert out["failed"] == 60
    assert len(out["errors"]) == 50


@pytest.mark.asyncio
async def test_bulk_pauses_between_groups(db):
    rows = [{"customer_id": f"c{i}"} for i in range(5)]
    with patch("churnpilot.services.ingestion.asyncio.sleep") as sleep:
        await ingest_rows(rows, owner_id="acme", batch_size=2, delay_seconds=0.5)
    pauses = [c for c in sleep.await_args_list if c.args == (0.5,)]
    assert len(pauses) == 2


# ── Reprocess ────────────────────────────────────────────
@pytest.mark.asyncio
async def test_record_to_row_round_trips_features(db):
    await ingest_event(db, AT_RISK, owner_id="acme")
    row = record_to_row(await get_customer(db, "acme", "cus_1"))
    assert row["customer_id"] == "cus_1"
    assert row["subscription_plan"] == "Free"
    assert row["monthly_revenue"] == 120.5


@pytest.mark.asyncio
async def test_reprocess_rescores_and_runs_new_playbooks(db):
    await ingest_event(db, AT_RISK, owner_id="acme")
    await ingest_event(db, {"customer_id": "cus_2", "logins": 20, "features": 5}, owner_id="acme")
    await ingest_event(db, AT_RISK, owner_id="globex")
    await _tag_playbook(db)

    report = await reprocess_owner(db, "acme", delay_seconds=0)

    assert report.total_rows == 2
    assert report.succeeded == 2
    assert await _count(db, PlaybookTriggerLog) == 1


@pytest.mark.asyncio
async def test_save_scored_record_direct(db):
    from churnpilot.services.normalizer import normalize_record
    from churnpilot.services.risk_scoring import score_record

    await save_scored_record(db, score_record(normalize_record({"id": "z", "owner_id": "acme"})))
    record = await get_customer(db, "acme", "z")
    assert record.churn_reason == "no_recent_logins; no_feature_adoption"
    assert record.tags == "[]"


# ── Row isolation ────────────────────────────────────────
@pytest.mark.asyncio
async def test_bulk_non_finite_values_degrade_to_defaults(db):
    rows = [{"customer_id": "ok1"}, {"customer_id": "big", "logins": "inf", "mrr": "1e999"}, {"customer_id": "ok2"}]

    report = await ingest_rows(rows, owner_id="acme", delay_seconds=0)

    assert (report.succeeded, report.failed) == (3, 0)
    record = await get_customer(db, "acme", "big")
    assert record.logins_last_30_days == 0
    assert record.monthly_revenue == 0.0


@pytest.mark.asyncio
async def test_bulk_unexpected_row_error_is_reported(db):
    from churnpilot.services.risk_scoring import score_record

    def flaky_score(features):
        if features.customer_id == "bad":
            raise RuntimeError("boom")
        return score_record(features)

    rows = [{"customer_id": "ok1"}, {"customer_id": "bad"}, {"customer_id": "ok2"}]
    with patch("churnpilot.services.ingestion.score_record", side_effect=flaky_score):
        report = await ingest_rows(rows, owner_id="acme", batch_size=3, delay_seconds=0)

    assert report.succeeded == 2
    assert report.failed == 1
    assert report.errors[0]["row"] == 2
    assert "boom" in report.errors[0]["error"]
    assert await _count(db, CustomerRecord) == 2
