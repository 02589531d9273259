"""Risk scoring engine — deterministic, rule-based churn score on a 0-1 scale.

This is the single weight table used by every ingestion path. Each rule
family contributes at most its family weight; the families sum to 1.0:

    inactivity (days since last login)   0.40
    login frequency (last 30 days)       0.25
    support ticket burden                0.20
    feature adoption breadth             0.10
    plan type / billing health           0.05

Tier thresholds are inclusive on their lower bound.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from churnpilot.exceptions import ScoringError
from churnpilot.services.normalizer import CustomerFeatureRecord

logger = logging.getLogger(__name__)

HIGH_RISK_THRESHOLD = 0.70
MEDIUM_RISK_THRESHOLD = 0.40

HEALTHY_REASON = "healthy_engagement"
REASON_SEPARATOR = "; "

# ── Canonical weight table ──────────────────────────────
# (threshold, weight, reason_code); the first matching tier of a family wins.
INACTIVITY_TIERS = [
    (90, 0.40, "inactive_over_90_days"),
    (60, 0.30, "inactive_over_60_days"),
    (30, 0.15, "inactive_over_30_days"),
]
# logins strictly below the threshold
LOGIN_TIERS = [
    (1, 0.25, "no_recent_logins"),
    (5, 0.15, "low_engagement"),
]
# tickets strictly above the threshold
SUPPORT_TIERS = [
    (5, 0.20, "high_support_burden"),
    (2, 0.10, "support_burden"),
]
# features strictly below the threshold
ADOPTION_TIERS = [
    (1, 0.10, "no_feature_adoption"),
    (2, 0.05, "low_feature_adoption"),
]
BILLING_ISSUE_WEIGHT = 0.03
FREE_PLAN_WEIGHT = 0.02

FREE_PLANS = {"Free", "Trial"}
PAYMENT_PROBLEM_STATUSES = {"Failed", "Overdue"}

REASON_LABELS = {
    "inactive_over_90_days": "Inactive for over 90 days",
    "inactive_over_60_days": "Inactive for over 60 days",
    "inactive_over_30_days": "Inactive for over 30 days",
    "no_recent_logins": "Zero logins in last 30 days",
    "low_engagement": "Very low login frequency",
    "high_support_burden": "High support ticket volume",
    "support_burden": "Multiple support requests",
    "no_feature_adoption": "No feature adoption",
    "low_feature_adoption": "Low feature usage",
    "billing_issues": "Payment issues detected",
    "free_plan": "Free tier user with no paid commitment",
    HEALTHY_REASON: "Healthy engagement, no risk signals",
}

# ── User stage ──────────────────────────────────────────
NEW_USER_DAYS = 7
GROWING_USER_DAYS = 15


@dataclass(frozen=True)
class ScoredRecord:
    """Result of one scoring computation. Never mutated after creation."""

    features: CustomerFeatureRecord
    churn_score: float
    risk_tier: str
    reasons: tuple = field(default_factory=tuple)
    understanding_score: int = 0
    maturity_flag: bool = False
    user_stage: str = "new_user"
    days_until_mature: int = 0
    action_recommended: str = ""

    @property
    def churn_reason(self) -> str:
        return REASON_SEPARATOR.join(self.reasons)

    def to_output(self) -> dict:
        """Public scoring response."""
        return {
            "customer_id": self.features.customer_id,
            "churn_score": self.churn_score,
            "risk_level": self.risk_tier,
            "churn_reason": self.churn_reason,
            "understanding_score": self.understanding_score,
            "action_recommended": self.action_recommended,
        }

    def as_context(self) -> dict:
        """Flat view of feature + score fields, used for playbook conditions and templates."""
        context = self.features.to_dict()
        context.update(
            churn_score=self.churn_score,
            risk_level=self.risk_tier,
            risk_tier=self.risk_tier,
            churn_reason=self.churn_reason,
            reasons=list(self.reasons),
            understanding_score=self.understanding_score,
            maturity_flag=self.maturity_flag,
            user_stage=self.user_stage,
            days_until_mature=self.days_until_mature,
            action_recommended=self.action_recommended,
        )
        return context


def risk_tier(score: float) -> str:
    if score >= HIGH_RISK_THRESHOLD:
        return "high"
    if score >= MEDIUM_RISK_THRESHOLD:
        return "medium"
    return "low"


def analyze_user_stage(days_since_signup: int) -> dict:
    """Confidence in the score grows with account age; under a week it is a guess."""
    days = max(0, days_since_signup)
    if days < NEW_USER_DAYS:
        return {
            "user_stage": "new_user",
            "understanding_score": min(40, days * 5 + 10),
            "days_until_mature": NEW_USER_DAYS - days,
            "maturity_flag": True,
        }
    if days < GROWING_USER_DAYS:
        return {
            "user_stage": "growing_user",
            "understanding_score": round(40 + (days - NEW_USER_DAYS) * 2.5),
            "days_until_mature": 0,
            "maturity_flag": False,
        }
    return {
        "user_stage": "mature_user",
        "understanding_score": round(min(100, 70 + (days - GROWING_USER_DAYS) * 0.5)),
        "days_until_mature": 0,
        "maturity_flag": False,
    }


def recommend_action(score: float, stage: dict) -> str:
    if stage["maturity_flag"]:
        return f"Wait {stage['days_until_mature']} more days for full prediction"
    if score < 0.30:
        return "Low risk. Consider upsell or referral opportunities."
    if score >= 0.50:
        return "High risk. Send win-back email or offer discount."
    return "Monitor closely. Consider engagement campaigns."


def _first_tier(value: float, tiers: list, above: bool) -> Optional[tuple]:
    for threshold, weight, reason in tiers:
        if (value > threshold) if above else (value < threshold):
            return weight, reason
    return None


def evaluate_rules(record: CustomerFeatureRecord) -> list[tuple[float, str]]:
    """All triggered (weight, reason_code) contributions, in rule order."""
    hits = []
    for value, tiers, above in (
        (record.last_login_days_ago, INACTIVITY_TIERS, True),
        (record.logins_last_30_days, LOGIN_TIERS, False),
        (record.support_tickets_opened, SUPPORT_TIERS, True),
        (record.active_features_used, ADOPTION_TIERS, False),
    ):
        hit = _first_tier(value, tiers, above)
        if hit:
            hits.append(hit)

    if record.billing_issue_count > 0 or record.payment_status in PAYMENT_PROBLEM_STATUSES:
        hits.append((BILLING_ISSUE_WEIGHT, "billing_issues"))
    if record.subscription_plan in FREE_PLANS:
        hits.append((FREE_PLAN_WEIGHT, "free_plan"))
    return hits


def rank_reasons(hits: list[tuple[float, str]]) -> tuple:
    """Reason codes by contributed weight, descending; ties keep rule order."""
    ranked = sorted(enumerate(hits), key=lambda item: (-item[1][0], item[0]))
    reasons = []
    for _, (_, reason) in ranked:
        if reason not in reasons:
            reasons.append(reason)
    return tuple(reasons) or (HEALTHY_REASON,)


def score_record(record: CustomerFeatureRecord) -> ScoredRecord:
    """Score one canonical record. Pure; the caller persists the result."""
    try:
        hits = evaluate_rules(record)
        score = round(min(1.0, max(0.0, sum(weight for weight, _ in hits))), 4)
        stage = analyze_user_stage(record.days_since_signup)
        return ScoredRecord(
            features=record,
            churn_score=score,
            risk_tier=risk_tier(score),
            reasons=rank_reasons(hits),
            understanding_score=int(stage["understanding_score"]),
            maturity_flag=stage["maturity_flag"],
            user_stage=stage["user_stage"],
            days_until_mature=stage["days_until_mature"],
            action_recommended=recommend_action(score, stage),
        )
    except Exception as exc:
        logger.exception(f"Scoring defect for customer {record.customer_id}: {record.to_dict()}")
        raise ScoringError(record.customer_id, exc) from exc


def reason_labels(reasons) -> list[str]:
    return [REASON_LABELS.get(code, code) for code in reasons]
