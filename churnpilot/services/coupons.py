"""Retention coupons — generation, validation and single-use redemption."""

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.config import get_settings
from churnpilot.models import Coupon, as_utc

logger = logging.getLogger(__name__)
settings = get_settings()

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 8


def generate_code(discount_percent: int, prefix: Optional[str] = None) -> str:
    """e.g. CP20-7K3QX9MB"""
    token = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))
    return f"{prefix or settings.coupon_prefix}{discount_percent}-{token}"


async def create_coupon(
    db: AsyncSession,
    customer_id: str,
    owner_id: str = "",
    playbook_id: Optional[str] = None,
    discount_percent: Optional[int] = None,
    valid_days: Optional[int] = None,
) -> Coupon:
    """Add a new single-use coupon to the session. The caller commits."""
    percent = int(discount_percent if discount_percent is not None else settings.coupon_default_percent)
    if not 0 < percent <= 100:
        raise ValueError(f"discount_percent must be within 1-100, got {percent}")
    days = int(valid_days if valid_days is not None else settings.coupon_default_valid_days)
    if days <= 0:
        raise ValueError(f"valid_days must be positive, got {days}")

    coupon = Coupon(
        code=generate_code(percent),
        owner_id=owner_id,
        customer_id=customer_id,
        playbook_id=playbook_id,
        discount_percent=percent,
        expires_at=datetime.now(timezone.utc) + timedelta(days=days),
        max_uses=1,
        times_used=0,
    )
    db.add(coupon)
    return coupon


async def get_coupon(db: AsyncSession, code: str) -> Optional[Coupon]:
    result = await db.execute(select(Coupon).where(Coupon.code == code.strip().upper()))
    return result.scalar_one_or_none()


def check_coupon(coupon: Optional[Coupon], now: Optional[datetime] = None) -> tuple[bool, str]:
    """(valid, reason) for a coupon about to be redeemed."""
    if coupon is None:
        return False, "not_found"
    now = now or datetime.now(timezone.utc)
    if as_utc(coupon.expires_at) <= now:
        return False, "expired"
    if (coupon.times_used or 0) >= (coupon.max_uses or 1):
        return False, "already_redeemed"
    return True, "valid"


async def redeem_coupon(db: AsyncSession, code: str) -> tuple[bool, str]:
    """Redeem a coupon exactly once, even under concurrent redemption attempts."""
    coupon = await get_coupon(db, code)
    valid, reason = check_coupon(coupon)
    if not valid:
        return False, reason

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            Coupon.times_used < Coupon.max_uses,
            Coupon.expires_at > now,
        )
        .values(times_used=Coupon.times_used + 1, redeemed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        return False, "already_redeemed"
    await db.refresh(coupon)
    logger.info(f"Coupon {coupon.code} redeemed by customer {coupon.customer_id}")
    return True, "redeemed"
