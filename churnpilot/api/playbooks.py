"""Playbook CRUD, dry-run preview, stats and trigger logs."""

import json

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.database import get_db
from churnpilot.models import Playbook, PlaybookTriggerLog
from churnpilot.schemas import (
    PlaybookCreate,
    PlaybookOut,
    PlaybookPreview,
    PlaybookStats,
    PlaybookUpdate,
    TriggerLogOut,
)
from churnpilot.services.ingestion import get_customer, record_to_row
from churnpilot.services.normalizer import normalize_record
from churnpilot.services.playbook_dispatcher import PlaybookDispatcher, parse_actions
from churnpilot.services.playbook_evaluator import evaluate_condition, parse_conditions
from churnpilot.services.risk_scoring import score_record

router = APIRouter(prefix="/playbooks", tags=["playbooks"])


async def _get_playbook(db: AsyncSession, playbook_id: str) -> Playbook:
    result = await db.execute(select(Playbook).where(Playbook.id == playbook_id))
    playbook = result.scalar_one_or_none()
    if not playbook:
        raise HTTPException(404, "Playbook not found")
    return playbook


@router.get("/", response_model=list[PlaybookOut])
async def list_playbooks(
    owner_id: str | None = None,
    active: bool | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Playbook)
    if owner_id is not None:
        stmt = stmt.where(Playbook.owner_id == owner_id)
    if active is not None:
        stmt = stmt.where(Playbook.active.is_(active))
    stmt = stmt.order_by(Playbook.priority.desc(), Playbook.created_at).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [PlaybookOut.from_model(pb) for pb in result.scalars().all()]


@router.post("/", response_model=PlaybookOut, status_code=201)
async def create_playbook(data: PlaybookCreate, db: AsyncSession = Depends(get_db)):
    playbook = Playbook(
        owner_id=data.owner_id,
        name=data.name,
        description=data.description,
        active=data.active,
        priority=data.priority,
        conditions=json.dumps([c.model_dump() for c in data.conditions]),
        actions=json.dumps([a.model_dump() for a in data.actions]),
        cooldown_minutes=data.cooldown_minutes,
    )
    db.add(playbook)
    await db.commit()
    await db.refresh(playbook)
    return PlaybookOut.from_model(playbook)


@router.get("/{playbook_id}", response_model=PlaybookOut)
async def get_playbook(playbook_id: str, db: AsyncSession = Depends(get_db)):
    return PlaybookOut.from_model(await _get_playbook(db, playbook_id))


@router.patch("/{playbook_id}", response_model=PlaybookOut)
async def update_playbook(playbook_id: str, data: PlaybookUpdate, db: AsyncSession = Depends(get_db)):
    playbook = await _get_playbook(db, playbook_id)
    for key, val in data.model_dump(exclude_unset=True).items():
        if key in ("conditions", "actions"):
            val = json.dumps(val or [])
        setattr(playbook, key, val)
    await db.commit()
    await db.refresh(playbook)
    return PlaybookOut.from_model(playbook)


@router.delete("/{playbook_id}", status_code=204)
async def delete_playbook(playbook_id: str, db: AsyncSession = Depends(get_db)):
    playbook = await _get_playbook(db, playbook_id)
    await db.delete(playbook)
    await db.commit()


@router.post("/{playbook_id}/preview/{customer_id}", response_model=PlaybookPreview)
async def preview_playbook(playbook_id: str, customer_id: str, db: AsyncSession = Depends(get_db)):
    """Dry run: evaluate conditions against a stored customer without dispatching."""
    playbook = await _get_playbook(db, playbook_id)
    record = await get_customer(db, playbook.owner_id or "", customer_id)
    if not record:
        raise HTTPException(404, "Customer not found")

    context = score_record(normalize_record(record_to_row(record))).as_context()
    conditions = parse_conditions(playbook.conditions, playbook.id)
    if conditions is None:
        return PlaybookPreview(playbook_id=playbook.id, customer_id=customer_id, matched=False)

    checks = [
        {**cond, "actual": context.get(cond.get("field")), "matched": evaluate_condition(cond, context, playbook.id)}
        for cond in conditions
    ]
    matched = all(c["matched"] for c in checks)
    return PlaybookPreview(
        playbook_id=playbook.id,
        customer_id=customer_id,
        matched=matched,
        conditions=checks,
        would_run=[a["type"] for a in parse_actions(playbook)] if matched else [],
    )


@router.get("/{playbook_id}/stats", response_model=PlaybookStats)
async def playbook_stats(playbook_id: str, db: AsyncSession = Depends(get_db)):
    await _get_playbook(db, playbook_id)
    return await PlaybookDispatcher(db).get_playbook_stats(playbook_id)


@router.get("/{playbook_id}/logs", response_model=list[TriggerLogOut])
async def playbook_logs(
    playbook_id: str,
    outcome: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Most recent trigger-log rows for a playbook."""
    await _get_playbook(db, playbook_id)
    stmt = select(PlaybookTriggerLog).where(PlaybookTriggerLog.playbook_id == playbook_id)
    if outcome:
        stmt = stmt.where(PlaybookTriggerLog.outcome == outcome)
    stmt = stmt.order_by(PlaybookTriggerLog.attempted_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()
