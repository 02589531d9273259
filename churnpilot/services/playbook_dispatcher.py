"""Playbook action dispatcher — idempotency gate + per-action execution.

For every action of a matched playbook the dispatcher first claims the
(playbook, customer, action type, cooldown bucket) slot with a single
INSERT ... ON CONFLICT DO NOTHING on the trigger log. The insert either lands
(this caller owns the attempt) or hits the unique key (someone already
attempted inside the window → ``skipped_cooldown``); there is no separate read.

Email and webhook actions are not delivered inline: their payload is written
to the outbox in the same transaction that settles the trigger-log row, and the
outbox worker delivers them with retry. Coupons and tags are local writes and
complete immediately.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.config import get_settings
from churnpilot.database import upsert_insert
from churnpilot.exceptions import DispatchError, EvaluationError, PersistenceError
from churnpilot.models import CustomerRecord, Playbook, PlaybookTriggerLog, new_uuid
from churnpilot.models.outbox import OutboxMessage
from churnpilot.services.coupons import create_coupon
from churnpilot.services.playbook_evaluator import evaluate_conditions
from churnpilot.services.risk_scoring import ScoredRecord
from churnpilot.services.templates import build_variables, get_template_by_name, render_template_string

logger = logging.getLogger(__name__)
settings = get_settings()

ACTION_TYPES = ("send_email", "webhook", "create_coupon", "tag")

SKIPPED_COOLDOWN = "skipped_cooldown"


@dataclass
class ActionResult:
    playbook_id: str
    action_type: str
    outcome: str  # queued|success|failed|skipped_cooldown
    detail: str = ""
    trigger_log_id: Optional[str] = None
    coupon_code: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def dedupe_bucket(moment: datetime, cooldown_minutes: int) -> int:
    """Index of the fixed cooldown window containing ``moment``."""
    return int(moment.timestamp() // (cooldown_minutes * 60))


def config_str(config: dict, key: str) -> Optional[str]:
    """A string config value, or None when unset. Any other type is a malformed action."""
    value = config.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise DispatchError(f"config.{key} must be a string, got {type(value).__name__}")
    return value


def config_dict(config: dict, key: str) -> dict:
    value = config.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DispatchError(f"config.{key} must be an object, got {type(value).__name__}")
    return value


def parse_actions(playbook: Playbook) -> list[dict]:
    raw = playbook.actions
    try:
        actions = json.loads(raw) if isinstance(raw, str) else raw
    except (json.JSONDecodeError, TypeError):
        actions = None
    if not isinstance(actions, list):
        logger.warning(str(EvaluationError(playbook.id, "actions must be a JSON list")))
        return []
    valid = []
    for action in actions:
        if isinstance(action, dict) and action.get("type"):
            valid.append(action)
        else:
            logger.warning(str(EvaluationError(playbook.id, f"malformed action {action!r}")))
    return valid


class PlaybookDispatcher:
    """Matches active playbooks against a scored customer and executes their actions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_playbooks(self, owner_id: str) -> list[Playbook]:
        result = await self.db.execute(
            select(Playbook)
            .where(Playbook.active.is_(True), Playbook.owner_id == owner_id)
            .order_by(Playbook.priority.desc(), Playbook.created_at)
        )
        return list(result.scalars().all())

    def cooldown_minutes(self, playbook: Playbook) -> int:
        if playbook.cooldown_minutes and playbook.cooldown_minutes > 0:
            return int(playbook.cooldown_minutes)
        return settings.default_cooldown_minutes

    async def run_playbooks(self, scored: ScoredRecord) -> list[ActionResult]:
        """Evaluate every active playbook of the record's owner and dispatch the matches."""
        context = scored.as_context()
        results = []
        for playbook in await self.get_active_playbooks(scored.features.owner_id):
            if evaluate_conditions(context, playbook.conditions, playbook.id):
                results.extend(await self.dispatch_playbook(playbook, scored))
        return results

    async def dispatch_playbook(
        self,
        playbook: Playbook,
        scored: ScoredRecord,
        now: Optional[datetime] = None,
    ) -> list[ActionResult]:
        """Attempt every action of an already-matched playbook."""
        now = now or datetime.now(timezone.utc)
        playbook_id = playbook.id
        bucket = dedupe_bucket(now, self.cooldown_minutes(playbook))
        customer_id = scored.features.customer_id
        results = []

        for action in parse_actions(playbook):
            action_type = str(action["type"])
            config = action.get("config") or {}
            if not isinstance(config, dict):
                config = {"value": config}

            log_id = await self.claim_attempt(
                playbook_id, scored.features.owner_id, customer_id, action_type, bucket, now
            )
            if log_id is None:
                logger.info(
                    f"Playbook {playbook_id}: {action_type} for {customer_id} skipped (cooldown)"
                )
                results.append(ActionResult(playbook_id, action_type, SKIPPED_COOLDOWN))
                continue

            coupon_code = None
            try:
                outcome, detail, coupon_code = await self._execute_action(
                    action_type, config, playbook, scored, log_id, now
                )
            except SQLAlchemyError as exc:
                await self.db.rollback()
                await self._settle(log_id, "failed", f"Store error: {exc}")
                raise PersistenceError(f"Failed to execute {action_type}: {exc}") from exc
            except (DispatchError, ValueError, TypeError) as exc:
                outcome, detail = "failed", str(exc)
                logger.warning(
                    f"Playbook {playbook_id}: {action_type} for {customer_id} failed: {exc}"
                )

            await self._settle(log_id, outcome, detail)
            logger.info(f"Playbook {playbook_id}: {action_type} for {customer_id} → {outcome}")
            results.append(
                ActionResult(playbook_id, action_type, outcome, detail, log_id, coupon_code)
            )

        return results

    async def claim_attempt(
        self,
        playbook_id: str,
        owner_id: str,
        customer_id: str,
        action_type: str,
        bucket: int,
        now: datetime,
    ) -> Optional[str]:
        """Atomically record an attempt; None when the slot is already taken."""
        log_id = new_uuid()
        stmt = (
            upsert_insert(self.db, PlaybookTriggerLog.__table__)
            .values(
                id=log_id,
                playbook_id=playbook_id,
                owner_id=owner_id,
                customer_id=customer_id,
                action_type=action_type,
                dedupe_bucket=bucket,
                attempted_at=now,
                outcome="in_progress",
                detail="",
            )
            .on_conflict_do_nothing()
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(f"Trigger log write failed: {exc}") from exc
        return log_id if result.rowcount == 1 else None

    async def _settle(self, log_id: str, outcome: str, detail: str) -> None:
        values = {"outcome": outcome, "detail": detail[:2000]}
        if outcome in ("success", "failed"):
            values["completed_at"] = datetime.now(timezone.utc)
        try:
            await self.db.execute(
                update(PlaybookTriggerLog).where(PlaybookTriggerLog.id == log_id).values(**values)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(f"Trigger log update failed: {exc}") from exc

    async def _execute_action(
        self,
        action_type: str,
        config: dict,
        playbook: Playbook,
        scored: ScoredRecord,
        log_id: str,
        now: datetime,
    ) -> tuple[str, str, Optional[str]]:
        """Execute one action. Returns (outcome, detail, coupon_code)."""
        features = scored.features

        if action_type == "send_email":
            recipient = config_str(config, "to") or features.email
            if not recipient:
                raise DispatchError(f"No email address for customer {features.customer_id}")
            subject, body = config_str(config, "subject"), config_str(config, "body")
            template_name = config_str(config, "template")
            if template_name:
                template = await get_template_by_name(self.db, template_name)
                if template is None:
                    raise DispatchError(f"Email template {template_name!r} not found")
                subject, body = template.subject, template.body
            if not subject or not body:
                raise DispatchError("send_email needs a template or a subject and body")
            variables = build_variables(scored.as_context(), config_dict(config, "variables"))
            payload = {
                "to": recipient,
                "subject": render_template_string(subject, variables),
                "body": render_template_string(body, variables),
                "template": template_name,
            }
            self._enqueue(log_id, "email", payload)
            return "queued", f"Email to {recipient} queued", None

        elif action_type == "webhook":
            url = config_str(config, "url")
            if not url:
                raise DispatchError("Webhook URL is required")
            event = {
                "event": config_str(config, "event") or settings.webhook_event_name,
                "customer_id": features.customer_id,
                "owner_id": features.owner_id,
                "playbook_id": playbook.id,
                "playbook_name": playbook.name,
                "churn_score": scored.churn_score,
                "risk_level": scored.risk_tier,
                "action": {
                    "type": "webhook",
                    "offer": config.get("offer"),
                    "metadata": config_dict(config, "metadata"),
                },
                "timestamp": now.isoformat(),
            }
            self._enqueue(log_id, "webhook", {"url": url, "secret": config_str(config, "secret"), "body": event})
            return "queued", f"Webhook to {url} queued", None

        elif action_type == "create_coupon":
            coupon = await create_coupon(
                self.db,
                customer_id=features.customer_id,
                owner_id=features.owner_id,
                playbook_id=playbook.id,
                discount_percent=config.get("discount_percent"),
                valid_days=config.get("valid_days"),
            )
            return "success", f"Coupon {coupon.code} created", coupon.code

        elif action_type == "tag":
            label = config_str(config, "tag") or config_str(config, "value")
            if not label:
                raise DispatchError("tag action needs a 'tag' label")
            result = await self.db.execute(
                select(CustomerRecord).where(
                    CustomerRecord.owner_id == features.owner_id,
                    CustomerRecord.customer_id == features.customer_id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise DispatchError(f"Customer {features.customer_id} not found")
            tags = json.loads(record.tags or "[]")
            if label not in tags:
                tags.append(label)
                record.tags = json.dumps(tags)
            return "success", f"Tagged {label}", None

        raise DispatchError(f"Unknown action type: {action_type}")

    def _enqueue(self, log_id: str, channel: str, payload: dict) -> None:
        self.db.add(
            OutboxMessage(
                trigger_log_id=log_id,
                channel=channel,
                payload=json.dumps(payload, default=str),
                max_attempts=settings.outbox_max_attempts,
            )
        )

    async def get_playbook_stats(self, playbook_id: str) -> dict:
        """Trigger-log counts per outcome for a playbook."""
        result = await self.db.execute(
            select(PlaybookTriggerLog.outcome, func.count(PlaybookTriggerLog.id))
            .where(PlaybookTriggerLog.playbook_id == playbook_id)
            .group_by(PlaybookTriggerLog.outcome)
        )
        by_outcome = {outcome: count for outcome, count in result.all()}
        total = sum(by_outcome.values())
        success = by_outcome.get("success", 0)
        return {
            "playbook_id": playbook_id,
            "total": total,
            "by_outcome": by_outcome,
            "success": success,
            "failed": by_outcome.get("failed", 0),
            "success_rate": round(success / total * 100, 2) if total > 0 else 0.0,
        }
