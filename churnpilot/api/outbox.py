"""Outbox API — manual drain of due email/webhook deliveries."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.database import get_db
from churnpilot.models.outbox import OutboxMessage
from churnpilot.schemas import OutboxRunOut
from churnpilot.services.outbox import OutboxWorker

router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.post("/deliver", response_model=OutboxRunOut)
async def deliver_outbox(limit: int = Query(50, ge=1, le=500), db: AsyncSession = Depends(get_db)):
    """Drain due outbox messages now instead of waiting for the beat schedule."""
    return await OutboxWorker(db).deliver_due(limit)


@router.get("/status")
async def outbox_status(db: AsyncSession = Depends(get_db)):
    """Message counts per delivery status."""
    result = await db.execute(
        select(OutboxMessage.status, func.count(OutboxMessage.id)).group_by(OutboxMessage.status)
    )
    return {status: count for status, count in result.all()}
