"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from churnpilot.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Customer (current scored state) ─────────────────────
class CustomerRecord(Base):
    """Latest feature snapshot and score for one customer of one owner."""

    __tablename__ = "customer_records"
    __table_args__ = (UniqueConstraint("owner_id", "customer_id", name="uq_customer_owner"),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    owner_id = Column(String(100), nullable=False, default="", index=True)
    customer_id = Column(String(200), nullable=False)
    email = Column(String(320), default="")

    # Features
    days_since_signup = Column(Integer, default=0)
    monthly_revenue = Column(Float, default=0.0)
    logins_last_30_days = Column(Integer, default=0)
    active_features_used = Column(Integer, default=0)
    support_tickets_opened = Column(Integer, default=0)
    email_opens_last_30_days = Column(Integer, default=0)
    last_login_days_ago = Column(Integer, default=0)
    billing_issue_count = Column(Integer, default=0)
    subscription_plan = Column(String(50), default="Unknown")
    payment_status = Column(String(50), default="Unknown")

    # Score
    churn_score = Column(Float, default=0.0)
    risk_level = Column(String(10), default="low")  # low|medium|high
    churn_reason = Column(Text, default="")  # reason codes joined with "; "
    understanding_score = Column(Integer, default=0)
    maturity_flag = Column(Boolean, default=False)
    user_stage = Column(String(20), default="new_user")
    days_until_mature = Column(Integer, default=0)
    action_recommended = Column(Text, default="")

    tags = Column(Text, default="[]")  # JSON list of labels
    scored_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ── Playbook ────────────────────────────────────────────
class Playbook(Base):
    """Operator-authored retention rule: conditions (all must match) → actions."""

    __tablename__ = "playbooks"

    id = Column(String(36), primary_key=True, default=new_uuid)
    owner_id = Column(String(100), nullable=False, default="", index=True)
    name = Column(String(300), nullable=False)
    description = Column(Text, default="")
    active = Column(Boolean, default=True)
    priority = Column(Integer, default=0)  # Higher = runs first

    conditions = Column(Text, default="[]")
    # JSON: [{"field": "churn_score", "operator": "greater_than", "value": 0.7}, ...]
    actions = Column(Text, default="[]")
    # JSON: [{"type": "send_email", "config": {"template": "win_back"}}, ...]
    # Types: send_email|webhook|create_coupon|tag

    cooldown_minutes = Column(Integer, default=1440)  # dedupe window per (customer, action)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ── Playbook Trigger Log ────────────────────────────────
class PlaybookTriggerLog(Base):
    """One row per attempted playbook action; the unique key is the idempotency gate."""

    __tablename__ = "playbook_trigger_logs"
    __table_args__ = (
        UniqueConstraint(
            "playbook_id", "customer_id", "action_type", "dedupe_bucket",
            name="uq_trigger_dedupe",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    playbook_id = Column(String(36), nullable=False, index=True)
    owner_id = Column(String(100), default="")
    customer_id = Column(String(200), nullable=False)
    action_type = Column(String(30), nullable=False)
    dedupe_bucket = Column(Integer, nullable=False)
    attempted_at = Column(DateTime(timezone=True), default=utcnow)
    outcome = Column(String(20), default="in_progress")  # in_progress|queued|success|failed
    detail = Column(Text, default="")
    provider_message_id = Column(String(300), nullable=True)
    response_status = Column(Integer, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


# ── Email Template ──────────────────────────────────────
class EmailTemplate(Base):
    """Named retention email with {{variable}} placeholders."""

    __tablename__ = "email_templates"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(300), nullable=False, unique=True)
    subject = Column(String(500), nullable=False)
    body = Column(Text, default="")
    category = Column(String(100), default="retention")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


from churnpilot.models.outbox import Coupon, OutboxMessage  # noqa: E402,F401
