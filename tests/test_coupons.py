"""Tests for retention coupons."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from churnpilot.models import Coupon
from churnpilot.services.coupons import check_coupon, create_coupon, generate_code, get_coupon, redeem_coupon


def test_code_format():
    code = generate_code(20)
    assert re.fullmatch(r"CP20-[A-Z0-9]{8}", code)
    assert generate_code(20) != code


def test_check_coupon_states():
    now = datetime.now(timezone.utc)
    fresh = Coupon(code="X", customer_id="c", discount_percent=10, expires_at=now + timedelta(days=1))
    assert check_coupon(fresh, now) == (True, "valid")
    assert check_coupon(None, now) == (False, "not_found")
    expired = Coupon(code="Y", customer_id="c", discount_percent=10, expires_at=now - timedelta(seconds=1))
    assert check_coupon(expired, now) == (False, "expired")
    used = Coupon(code="Z", customer_id="c", discount_percent=10, expires_at=now + timedelta(days=1), times_used=1)
    assert check_coupon(used, now) == (False, "already_redeemed")


@pytest.mark.asyncio
async def test_create_uses_defaults(db):
    coupon = await create_coupon(db, customer_id="cus_1", owner_id="acme")
    await db.commit()
    assert coupon.discount_percent == 20
    remaining = coupon.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=29) < remaining <= timedelta(days=30)


@pytest.mark.asyncio
async def test_create_rejects_bad_config(db):
    with pytest.raises(ValueError):
        await create_coupon(db, customer_id="cus_1", discount_percent=0)
    with pytest.raises(ValueError):
        await create_coupon(db, customer_id="cus_1", valid_days=-1)


@pytest.mark.asyncio
async def test_redeem_exactly_once(db):
    coupon = await create_coupon(db, customer_id="cus_1", discount_percent=15)
    await db.commit()

    assert await redeem_coupon(db, coupon.code.lower()) == (True, "redeemed")
    assert await redeem_coupon(db, coupon.code) == (False, "already_redeemed")
    stored = await get_coupon(db, coupon.code)
    assert stored.times_used == 1
    assert stored.redeemed_at is not None


@pytest.mark.asyncio
async def test_redeem_expired_and_unknown(db):
    coupon = await create_coupon(db, customer_id="cus_1", valid_days=1)
    coupon.expires_at = datetime.now(timezone.utc) - timedelta(minutes=5)
    await db.commit()

    assert await redeem_coupon(db, coupon.code) == (False, "expired")
    assert await redeem_coupon(db, "CP10-NOPE0000") == (False, "not_found")
