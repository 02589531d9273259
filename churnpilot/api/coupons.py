"""Coupon lookup and single-use redemption."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.database import get_db
from churnpilot.schemas import CouponOut, RedeemOut
from churnpilot.services.coupons import check_coupon, get_coupon, redeem_coupon

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.get("/{code}", response_model=CouponOut)
async def read_coupon(code: str, db: AsyncSession = Depends(get_db)):
    coupon = await get_coupon(db, code)
    if not coupon:
        raise HTTPException(404, "Coupon not found")
    valid, status = check_coupon(coupon)
    out = CouponOut.model_validate(coupon)
    out.valid, out.status = valid, status
    return out


@router.post("/{code}/redeem", response_model=RedeemOut)
async def redeem(code: str, db: AsyncSession = Depends(get_db)):
    redeemed, status = await redeem_coupon(db, code)
    if status == "not_found":
        raise HTTPException(404, "Coupon not found")
    if not redeemed:
        raise HTTPException(409, f"Coupon cannot be redeemed: {status}")
    return RedeemOut(code=code.strip().upper(), redeemed=True, status=status)
