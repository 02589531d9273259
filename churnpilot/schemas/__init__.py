"""Pydantic schemas for API request/response."""

import json
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def _load_json(value, default):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return default
    return value if value is not None else default


# ── Scoring ──────────────────────────────────────────────
class ActionResultOut(BaseModel):
    playbook_id: str
    action_type: str
    outcome: str
    detail: str = ""
    trigger_log_id: Optional[str] = None
    coupon_code: Optional[str] = None


class ScoringOut(BaseModel):
    customer_id: str
    churn_score: float
    risk_level: str
    churn_reason: str
    understanding_score: int
    action_recommended: str
    actions: list[ActionResultOut] = Field(default_factory=list)


class BulkIngestionOut(BaseModel):
    total_rows: int
    succeeded: int
    failed: int
    errors: list[dict] = Field(default_factory=list)
    truncated: int = 0  # rows past the upload limit, not ingested


class CustomerOut(BaseModel):
    id: str
    owner_id: str
    customer_id: str
    email: str
    days_since_signup: int
    monthly_revenue: float
    logins_last_30_days: int
    active_features_used: int
    support_tickets_opened: int
    email_opens_last_30_days: int
    last_login_days_ago: int
    billing_issue_count: int
    subscription_plan: str
    payment_status: str
    churn_score: float
    risk_level: str
    churn_reason: str
    understanding_score: int
    maturity_flag: bool
    user_stage: str
    days_until_mature: int
    action_recommended: str
    tags: list[str] = Field(default_factory=list)
    scored_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, record):
        data = {name: getattr(record, name) for name in cls.model_fields if name != "tags"}
        data["email"] = record.email or ""
        data["churn_reason"] = record.churn_reason or ""
        data["action_recommended"] = record.action_recommended or ""
        data["maturity_flag"] = bool(record.maturity_flag)
        return cls(tags=_load_json(record.tags, []), **data)


# ── Playbook ─────────────────────────────────────────────
class Condition(BaseModel):
    field: str
    operator: Literal["equals", "not_equals", "greater_than", "less_than", "contains"]
    value: Any = None


class Action(BaseModel):
    type: Literal["send_email", "webhook", "create_coupon", "tag"]
    config: dict = Field(default_factory=dict)


class PlaybookCreate(BaseModel):
    owner_id: str = ""
    name: str
    description: str = ""
    active: bool = True
    priority: int = 0
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    cooldown_minutes: int = Field(1440, ge=1)


class PlaybookUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    active: Optional[bool] = None
    priority: Optional[int] = None
    conditions: Optional[list[Condition]] = None
    actions: Optional[list[Action]] = None
    cooldown_minutes: Optional[int] = Field(None, ge=1)


class PlaybookOut(BaseModel):
    id: str
    owner_id: str
    name: str
    description: str
    active: bool
    priority: int
    conditions: list
    actions: list
    cooldown_minutes: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, playbook):
        return cls(
            id=playbook.id,
            owner_id=playbook.owner_id or "",
            name=playbook.name,
            description=playbook.description or "",
            active=bool(playbook.active),
            priority=playbook.priority or 0,
            conditions=_load_json(playbook.conditions, []),
            actions=_load_json(playbook.actions, []),
            cooldown_minutes=playbook.cooldown_minutes or 0,
            created_at=playbook.created_at,
            updated_at=playbook.updated_at,
        )


class PlaybookPreview(BaseModel):
    playbook_id: str
    customer_id: str
    matched: bool
    conditions: list[dict] = Field(default_factory=list)
    would_run: list[str] = Field(default_factory=list)


class PlaybookStats(BaseModel):
    playbook_id: str
    total: int
    by_outcome: dict[str, int]
    success: int
    failed: int
    success_rate: float


class TriggerLogOut(BaseModel):
    id: str
    playbook_id: str
    customer_id: str
    action_type: str
    dedupe_bucket: int
    attempted_at: datetime
    outcome: str
    detail: str = ""
    provider_message_id: Optional[str] = None
    response_status: Optional[int] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Template ─────────────────────────────────────────────
class TemplateCreate(BaseModel):
    name: str
    subject: str
    body: str
    category: str = "retention"


class TemplateOut(TemplateCreate):
    id: str
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Coupon ───────────────────────────────────────────────
class CouponOut(BaseModel):
    code: str
    customer_id: str
    discount_percent: int
    expires_at: datetime
    times_used: int
    max_uses: int
    redeemed_at: Optional[datetime] = None
    valid: bool = False
    status: str = ""

    model_config = {"from_attributes": True}


class RedeemOut(BaseModel):
    code: str
    redeemed: bool
    status: str


# ── Analytics ────────────────────────────────────────────
class ReasonCount(BaseModel):
    reason: str
    label: str
    count: int
    share: float


class ReasonSummaryOut(BaseModel):
    total_customers: int
    reason_counts: list[ReasonCount]
    risk_distribution: dict[str, int]
    avg_churn_score: float
    total_revenue: float
    revenue_at_risk: float
    top_reasons_by_tier: dict[str, list[ReasonCount]]


class OutboxRunOut(BaseModel):
    delivered: int
    retrying: int
    dead: int
