"""Ingestion paths — live events, bulk rows and reprocessing share one pipeline.

normalize → score → upsert current state → run playbooks
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.config import get_settings
from churnpilot.database import async_session, upsert_insert
from churnpilot.exceptions import PersistenceError, ScoringError, ValidationError
from churnpilot.models import CustomerRecord, new_uuid
from churnpilot.services.normalizer import CustomerFeatureRecord, normalize_record
from churnpilot.services.playbook_dispatcher import ActionResult, PlaybookDispatcher
from churnpilot.services.risk_scoring import ScoredRecord, score_record

logger = logging.getLogger(__name__)
settings = get_settings()

FEATURE_COLUMNS = [f for f in CustomerFeatureRecord.__dataclass_fields__ if f not in ("customer_id", "owner_id")]


@dataclass
class IngestionResult:
    scored: ScoredRecord
    actions: list[ActionResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {**self.scored.to_output(), "actions": [a.to_dict() for a in self.actions]}


@dataclass
class BulkIngestionReport:
    total_rows: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    truncated: int = 0

    def to_dict(self) -> dict:
        return {
            "total_rows": self.total_rows,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors[: settings.error_sample_size],
            "truncated": self.truncated,
        }


async def save_scored_record(db: AsyncSession, scored: ScoredRecord) -> None:
    """Upsert the customer's current state keyed by (owner_id, customer_id)."""
    features = scored.features
    now = datetime.now(timezone.utc)
    values = {name: getattr(features, name) for name in FEATURE_COLUMNS}
    values.update(
        churn_score=scored.churn_score,
        risk_level=scored.risk_tier,
        churn_reason=scored.churn_reason,
        understanding_score=scored.understanding_score,
        maturity_flag=scored.maturity_flag,
        user_stage=scored.user_stage,
        days_until_mature=scored.days_until_mature,
        action_recommended=scored.action_recommended,
        scored_at=now,
        updated_at=now,
    )
    stmt = upsert_insert(db, CustomerRecord.__table__).values(
        id=new_uuid(),
        owner_id=features.owner_id,
        customer_id=features.customer_id,
        tags="[]",
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(index_elements=["owner_id", "customer_id"], set_=values)
    try:
        await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Failed to save customer {features.customer_id}: {exc}") from exc


async def ingest_event(
    db: AsyncSession,
    raw: dict,
    owner_id: Optional[str] = None,
    run_playbooks: bool = True,
) -> IngestionResult:
    """Process one customer event end to end.

    Raises ValidationError (bad identity), ScoringError (engine defect) or
    PersistenceError (store write rejected); playbook action failures never raise.
    """
    features = normalize_record(raw, owner_id=owner_id)
    scored = score_record(features)
    await save_scored_record(db, scored)

    actions = []
    if run_playbooks:
        actions = await PlaybookDispatcher(db).run_playbooks(scored)
    return IngestionResult(scored=scored, actions=actions)


async def _ingest_row(session_factory, row: dict, owner_id: Optional[str], row_number: int) -> Optional[dict]:
    async with session_factory() as db:
        try:
            await ingest_event(db, row, owner_id=owner_id)
        except ValidationError as exc:
            return {"row": row_number, "error": str(exc), "fields": exc.fields}
        except (ScoringError, PersistenceError) as exc:
            logger.error(f"Row {row_number} failed: {exc}")
            return {"row": row_number, "error": str(exc)}
        except Exception as exc:
            logger.exception(f"Row {row_number} failed unexpectedly")
            return {"row": row_number, "error": f"Unexpected error: {exc}"}
    return None


async def ingest_rows(
    rows: Iterable[dict],
    owner_id: Optional[str] = None,
    session_factory=async_session,
    batch_size: Optional[int] = None,
    delay_seconds: Optional[float] = None,
    first_row_number: int = 1,
) -> BulkIngestionReport:
    """Ingest many rows in bounded concurrent groups with a pause between groups.

    Each row runs in its own session; a bad row is counted and reported, it
    never aborts the batch. Rows already stored stay stored if the job dies.
    """
    rows = list(rows)
    batch_size = max(1, batch_size or settings.bulk_batch_size)
    delay = settings.bulk_batch_delay_seconds if delay_seconds is None else delay_seconds
    report = BulkIngestionReport(total_rows=len(rows))

    for start in range(0, len(rows), batch_size):
        group = rows[start:start + batch_size]
        outcomes = await asyncio.gather(
            *(
                _ingest_row(session_factory, row, owner_id, first_row_number + start + offset)
                for offset, row in enumerate(group)
            )
        )
        for error in outcomes:
            if error is None:
                report.succeeded += 1
            else:
                report.failed += 1
                report.errors.append(error)
        if start + batch_size < len(rows) and delay > 0:
            await asyncio.sleep(delay)

    logger.info(
        f"Bulk ingestion for owner {owner_id!r}: {report.succeeded}/{report.total_rows} ok, "
        f"{report.failed} failed"
    )
    return report


def record_to_row(record: CustomerRecord) -> dict:
    """Stored state back into a raw row, for reprocessing."""
    row = {"customer_id": record.customer_id, "owner_id": record.owner_id}
    row.update({name: getattr(record, name) for name in FEATURE_COLUMNS})
    return row


async def reprocess_owner(
    db: AsyncSession,
    owner_id: str,
    session_factory=async_session,
    **kwargs,
) -> BulkIngestionReport:
    """Re-score every stored customer of an owner and re-run playbooks."""
    result = await db.execute(
        select(CustomerRecord).where(CustomerRecord.owner_id == owner_id).order_by(CustomerRecord.created_at)
    )
    rows = [record_to_row(record) for record in result.scalars().all()]
    return await ingest_rows(rows, owner_id=owner_id, session_factory=session_factory, **kwargs)


async def get_customer(db: AsyncSession, owner_id: str, customer_id: str) -> Optional[CustomerRecord]:
    result = await db.execute(
        select(CustomerRecord).where(
            CustomerRecord.owner_id == owner_id, CustomerRecord.customer_id == customer_id
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
