"""Analytics API — churn reason rollup and revenue at risk."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.database import get_db
from churnpilot.schemas import ReasonSummaryOut
from churnpilot.services.reason_aggregator import summarize_owner

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/reasons", response_model=ReasonSummaryOut)
async def reason_summary(
    owner_id: str = Query(...),
    top_n: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Reason-code counts, risk distribution and revenue at risk for one owner."""
    summary = await summarize_owner(db, owner_id, top_n=top_n)
    return summary.to_dict()
