from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.api.v1.guest_cart import clear_guest_cookies, guest_cart_cookie
from snapcart.core.dependencies import get_current_user
from snapcart.db.session import get_session
from snapcart.models.user import User
from snapcart.schemas.cart import CartItemAdd, CartItemUpdate, CartRead, MergeCartResult
from snapcart.schemas.coupon import ApplyCouponRequest
from snapcart.services import cart as cart_service
from snapcart.services import guest_cart as guest_cart_service

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartRead)
async def get_cart(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.get_cart(session, current_user.id)


@router.post("/items", response_model=CartRead, status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: CartItemAdd,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.add_item(session, current_user.id, payload)


@router.patch("/items/{item_id}", response_model=CartRead)
async def update_item(
    item_id: UUID,
    payload: CartItemUpdate,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.update_item(session, current_user.id, item_id, payload.quantity)


@router.delete("/items/{item_id}", response_model=CartRead)
async def remove_item(
    item_id: UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.remove_item(session, current_user.id, item_id)


@router.delete("", response_model=CartRead)
async def clear_cart(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.clear_cart(session, current_user.id)


@router.post("/coupon", response_model=CartRead)
async def apply_coupon(
    payload: ApplyCouponRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.apply_coupon(session, current_user.id, payload.code)


@router.delete("/coupon", response_model=CartRead)
async def remove_coupon(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> CartRead:
    return await cart_service.remove_coupon(session, current_user.id)


@router.post("/merge", response_model=MergeCartResult)
async def merge_guest_cart(
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> MergeCartResult:
    lines = guest_cart_service.load_lines(raw_cart)
    result = await cart_service.merge_guest_lines(session, current_user.id, lines)
    clear_guest_cookies(response)
    return result
