from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core.config import settings
from snapcart.core.dependencies import get_current_user_optional
from snapcart.db.session import get_session
from snapcart.models.user import User
from snapcart.schemas.cart import GuestCartItemAdd, GuestCartItemUpdate, GuestCartLine, GuestCartRead, GuestCoupon
from snapcart.schemas.coupon import ApplyCouponRequest
from snapcart.services import guest_cart as guest_cart_service

router = APIRouter(prefix="/guest-cart", tags=["guest-cart"])


def _set_cookie(response: Response, name: str, value: str) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite.lower(),
        max_age=settings.guest_cart_max_age_seconds,
        path="/",
    )


def _clear_cookie(response: Response, name: str) -> None:
    response.delete_cookie(
        name,
        path="/",
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite.lower(),
    )


def clear_guest_cookies(response: Response) -> None:
    _clear_cookie(response, settings.guest_cart_cookie_name)
    _clear_cookie(response, settings.guest_coupon_cookie_name)


def write_guest_cookies(response: Response, lines: list[GuestCartLine], coupon: GuestCoupon | None) -> None:
    if lines:
        _set_cookie(response, settings.guest_cart_cookie_name, guest_cart_service.encode_lines(lines))
    else:
        _clear_cookie(response, settings.guest_cart_cookie_name)
    if coupon is not None and lines:
        _set_cookie(response, settings.guest_coupon_cookie_name, guest_cart_service.encode_coupon(coupon))
    else:
        _clear_cookie(response, settings.guest_coupon_cookie_name)


def guest_cart_cookie(request: Request) -> str | None:
    return request.cookies.get(settings.guest_cart_cookie_name)


def guest_coupon_cookie(request: Request) -> str | None:
    return request.cookies.get(settings.guest_coupon_cookie_name)


async def guest_only(current_user: User | None = Depends(get_current_user_optional)) -> None:
    if current_user is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Guest cart disabled for logged-in users")


async def _respond(
    session: AsyncSession, response: Response, lines: list[GuestCartLine], coupon: GuestCoupon | None
) -> GuestCartRead:
    view, coupon = await guest_cart_service.build_view(session, lines, coupon)
    write_guest_cookies(response, lines, coupon)
    return view


@router.get("", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def get_guest_cart(
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    raw_coupon: str | None = Depends(guest_coupon_cookie),
    session: AsyncSession = Depends(get_session),
) -> GuestCartRead:
    lines = guest_cart_service.load_lines(raw_cart)
    return await _respond(session, response, lines, guest_cart_service.load_coupon(raw_coupon))


@router.post("", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def add_guest_item(
    payload: GuestCartItemAdd,
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    raw_coupon: str | None = Depends(guest_coupon_cookie),
    session: AsyncSession = Depends(get_session),
) -> GuestCartRead:
    lines = await guest_cart_service.add_line(session, guest_cart_service.load_lines(raw_cart), payload)
    return await _respond(session, response, lines, guest_cart_service.load_coupon(raw_coupon))


@router.patch("", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def update_guest_item(
    payload: GuestCartItemUpdate,
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    raw_coupon: str | None = Depends(guest_coupon_cookie),
    session: AsyncSession = Depends(get_session),
) -> GuestCartRead:
    lines = await guest_cart_service.update_line(session, guest_cart_service.load_lines(raw_cart), payload)
    return await _respond(session, response, lines, guest_cart_service.load_coupon(raw_coupon))


@router.delete("", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def clear_guest_cart(response: Response, session: AsyncSession = Depends(get_session)) -> GuestCartRead:
    view, _ = await guest_cart_service.build_view(session, [], None)
    clear_guest_cookies(response)
    return view


@router.post("/coupon", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def apply_guest_coupon(
    payload: ApplyCouponRequest,
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    session: AsyncSession = Depends(get_session),
) -> GuestCartRead:
    lines = guest_cart_service.load_lines(raw_cart)
    coupon = await guest_cart_service.apply_coupon(session, lines, payload.code)
    return await _respond(session, response, lines, coupon)


@router.delete("/coupon", response_model=GuestCartRead, dependencies=[Depends(guest_only)])
async def remove_guest_coupon(
    response: Response,
    raw_cart: str | None = Depends(guest_cart_cookie),
    session: AsyncSession = Depends(get_session),
) -> GuestCartRead:
    return await _respond(session, response, guest_cart_service.load_lines(raw_cart), None)
