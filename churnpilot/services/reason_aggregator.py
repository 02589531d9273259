"""Reason aggregation — population-level view of why customers are at risk.

Counts every reason code across a set of scored customers (a customer with
three reasons contributes to three counts), plus tier distribution and the
revenue carried by high-risk customers.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.models import CustomerRecord
from churnpilot.services.risk_scoring import REASON_LABELS, REASON_SEPARATOR, ScoredRecord

RISK_TIERS = ("high", "medium", "low")


@dataclass
class ReasonSummary:
    total_customers: int = 0
    reason_counts: list[dict] = field(default_factory=list)
    risk_distribution: dict = field(default_factory=dict)
    avg_churn_score: float = 0.0
    total_revenue: float = 0.0
    revenue_at_risk: float = 0.0
    top_reasons_by_tier: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_customers": self.total_customers,
            "reason_counts": self.reason_counts,
            "risk_distribution": self.risk_distribution,
            "avg_churn_score": self.avg_churn_score,
            "total_revenue": self.total_revenue,
            "revenue_at_risk": self.revenue_at_risk,
            "top_reasons_by_tier": self.top_reasons_by_tier,
        }


def _split_reasons(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [part.strip() for part in str(value).split(REASON_SEPARATOR.strip()) if part.strip()]


def _extract(record) -> tuple[list[str], str, float, float]:
    """(reasons, tier, score, revenue) from a ScoredRecord, a dict or a stored row."""
    if isinstance(record, ScoredRecord):
        return list(record.reasons), record.risk_tier, record.churn_score, record.features.monthly_revenue
    if isinstance(record, dict):
        reasons = record.get("reasons") or record.get("churn_reason")
        tier = record.get("risk_level") or record.get("risk_tier") or "low"
        return _split_reasons(reasons), tier, float(record.get("churn_score") or 0), float(record.get("monthly_revenue") or 0)
    return (
        _split_reasons(record.churn_reason),
        record.risk_level or "low",
        float(record.churn_score or 0),
        float(record.monthly_revenue or 0),
    )


def _ranked(counter: Counter, total: int, top_n: int) -> list[dict]:
    # Ties broken by reason code so the order is stable across runs
    items = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
    return [
        {
            "reason": reason,
            "label": REASON_LABELS.get(reason, reason),
            "count": count,
            "share": round(count / total, 4) if total else 0.0,
        }
        for reason, count in items
    ]


def aggregate_reasons(records: Iterable, top_n: int = 10) -> ReasonSummary:
    """Summarize reasons and risk over a population of scored customers."""
    overall = Counter()
    by_tier = {tier: Counter() for tier in RISK_TIERS}
    distribution = {tier: 0 for tier in RISK_TIERS}
    total = 0
    score_sum = 0.0
    revenue = 0.0
    revenue_at_risk = 0.0

    for record in records:
        reasons, tier, score, mrr = _extract(record)
        total += 1
        score_sum += score
        revenue += mrr
        distribution[tier] = distribution.get(tier, 0) + 1
        if tier == "high":
            revenue_at_risk += mrr
        overall.update(reasons)
        by_tier.setdefault(tier, Counter()).update(reasons)

    return ReasonSummary(
        total_customers=total,
        reason_counts=_ranked(overall, total, top_n),
        risk_distribution=distribution,
        avg_churn_score=round(score_sum / total, 4) if total else 0.0,
        total_revenue=round(revenue, 2),
        revenue_at_risk=round(revenue_at_risk, 2),
        top_reasons_by_tier={
            tier: _ranked(counter, distribution.get(tier, 0), 3) for tier, counter in by_tier.items()
        },
    )


async def summarize_owner(db: AsyncSession, owner_id: str, top_n: int = 10) -> ReasonSummary:
    result = await db.execute(select(CustomerRecord).where(CustomerRecord.owner_id == owner_id))
    return aggregate_reasons(result.scalars().all(), top_n=top_n)
