from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.db.session import get_session
from snapcart.schemas.coupon import AvailableCouponRead, AvailableCouponsRequest
from snapcart.services import coupons as coupon_service

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/available", response_model=list[AvailableCouponRead])
async def available_coupons(
    payload: AvailableCouponsRequest,
    session: AsyncSession = Depends(get_session),
) -> list[AvailableCouponRead]:
    return await coupon_service.list_available_coupons(session, payload)
