"""Outbox and coupon models for playbook side effects."""

from sqlalchemy import Column, DateTime, Integer, String, Text

from churnpilot.database import Base
from churnpilot.models import new_uuid, utcnow


class OutboxMessage(Base):
    """Durably enqueued email/webhook delivery, drained by the outbox worker."""

    __tablename__ = "outbox_messages"

    id = Column(String(36), primary_key=True, default=new_uuid)
    trigger_log_id = Column(String(36), nullable=False, index=True)
    channel = Column(String(20), nullable=False)  # email|webhook
    payload = Column(Text, default="{}")
    status = Column(String(20), default="pending", index=True)  # pending|sending|delivered|dead
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_attempt_at = Column(DateTime(timezone=True), default=utcnow)
    last_error = Column(Text, default="")
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Coupon(Base):
    """Single-use, time-bounded retention discount code."""

    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_uuid)
    code = Column(String(40), unique=True, nullable=False, index=True)
    owner_id = Column(String(100), default="")
    customer_id = Column(String(200), nullable=False)
    playbook_id = Column(String(36), nullable=True)
    discount_percent = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    max_uses = Column(Integer, default=1)
    times_used = Column(Integer, default=0)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
