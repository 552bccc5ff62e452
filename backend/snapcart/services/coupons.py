from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.models.coupon import Coupon, CouponUsage, DiscountType
from snapcart.models.order import Order
from snapcart.schemas.coupon import (
    AvailableCouponRead,
    AvailableCouponsRequest,
    CouponCreate,
    CouponSnapshot,
    CouponTerms,
    CouponUpdate,
)
from snapcart.services.pricing import ZERO, quantize_money, whole_units

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


# Evaluation (pure)


def evaluate_discount(subtotal: Decimal, terms: CouponTerms) -> Decimal | None:
    """Discount for `subtotal` under `terms`, or None when the coupon does not apply.

    FLAT discounts never exceed the subtotal; PERCENTAGE discounts are floored to
    a whole unit and capped at `max_discount_amount` when one is set.
    """
    subtotal = Decimal(subtotal)
    if terms.min_cart_value and subtotal < terms.min_cart_value:
        return None
    if terms.discount_type == DiscountType.flat:
        discount = min(Decimal(terms.discount_value), subtotal)
    else:
        discount = (subtotal * Decimal(terms.discount_value) / 100).to_integral_value(rounding=ROUND_FLOOR)
        if terms.max_discount_amount:
            discount = min(discount, Decimal(terms.max_discount_amount))
    return quantize_money(max(discount, ZERO))


def display_discount(amount: Decimal) -> Decimal:
    return whole_units(amount)


def terms_of(coupon: Coupon) -> CouponTerms:
    return CouponTerms(
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        min_cart_value=coupon.min_cart_value,
        max_discount_amount=coupon.max_discount_amount if coupon.discount_type == DiscountType.percentage else None,
    )


def snapshot_of(coupon: Coupon, discount_amount: Decimal) -> CouponSnapshot:
    terms = terms_of(coupon)
    return CouponSnapshot(
        coupon_id=coupon.id,
        code=coupon.code,
        discount_amount=discount_amount,
        **terms.model_dump(),
    )


def load_snapshot(raw: dict | None) -> CouponSnapshot | None:
    if not raw:
        return None
    try:
        return CouponSnapshot.model_validate(raw)
    except ValidationError:
        logger.warning("discarding unreadable coupon snapshot", extra={"snapshot": raw})
        return None


def dump_snapshot(snapshot: CouponSnapshot | None) -> dict | None:
    return snapshot.model_dump(mode="json") if snapshot is not None else None


def revalidate_snapshot(snapshot: CouponSnapshot | None, subtotal: Decimal) -> CouponSnapshot | None:
    """Re-run the evaluator for a frozen snapshot; None means the coupon must be detached."""
    if snapshot is None:
        return None
    discount = evaluate_discount(subtotal, snapshot)
    if discount is None:
        return None
    return snapshot.model_copy(update={"discount_amount": discount})


# Eligibility (database)


async def get_coupon_by_code(session: AsyncSession, code: str) -> Coupon | None:
    normalized = (code or "").strip().upper()
    if not normalized:
        return None
    return (await session.execute(select(Coupon).where(Coupon.code == normalized))).scalar_one_or_none()


async def lock_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon | None:
    result = await session.execute(select(Coupon).where(Coupon.id == coupon_id).with_for_update())
    return result.scalar_one_or_none()


async def count_usages(session: AsyncSession, coupon_id: UUID) -> int:
    total = await session.scalar(select(func.count()).select_from(CouponUsage).where(CouponUsage.coupon_id == coupon_id))
    return int(total or 0)


async def count_user_usages(session: AsyncSession, coupon_id: UUID, user_id: UUID) -> int:
    total = await session.scalar(
        select(func.count())
        .select_from(CouponUsage)
        .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
    )
    return int(total or 0)


def _within_window(coupon: Coupon, now: datetime) -> bool:
    return as_utc(coupon.start_date) <= now <= as_utc(coupon.end_date)


def applies_to(coupon: Coupon, *, category_ids: Iterable[UUID | None], product_ids: Iterable[UUID]) -> bool:
    """At least one cart line must match each restriction the coupon carries."""
    allowed_categories = {str(v) for v in (coupon.applicable_category_ids or [])}
    if allowed_categories and not allowed_categories.intersection(str(c) for c in category_ids if c):
        return False
    allowed_products = {str(v) for v in (coupon.applicable_product_ids or [])}
    if allowed_products and not allowed_products.intersection(str(p) for p in product_ids):
        return False
    return True


async def usage_cap_reason(session: AsyncSession, coupon: Coupon, user_id: UUID | None) -> str | None:
    if coupon.usage_limit is not None and await count_usages(session, coupon.id) >= coupon.usage_limit:
        return "Coupon usage limit reached"
    if (
        user_id is not None
        and coupon.usage_per_user is not None
        and await count_user_usages(session, coupon.id, user_id) >= coupon.usage_per_user
    ):
        return "Coupon already used by user"
    return None


async def rejection_reason(
    session: AsyncSession,
    coupon: Coupon | None,
    *,
    user_id: UUID | None,
    category_ids: Iterable[UUID | None] = (),
    product_ids: Iterable[UUID] = (),
    now: datetime | None = None,
) -> str | None:
    """Why `coupon` cannot be redeemed right now, ignoring the cart value."""
    if coupon is None or not coupon.is_active:
        return "Invalid coupon"
    now = now or datetime.now(timezone.utc)
    if not _within_window(coupon, now):
        return "Coupon expired or inactive"
    cap = await usage_cap_reason(session, coupon, user_id)
    if cap:
        return cap
    if not applies_to(coupon, category_ids=category_ids, product_ids=product_ids):
        return "Coupon not applicable to cart items"
    return None


def minimum_cart_message(coupon: Coupon | CouponTerms) -> str:
    return f"Minimum cart value {whole_units(Decimal(coupon.min_cart_value or 0))}"


async def resolve_coupon_for_cart(
    session: AsyncSession,
    code: str,
    *,
    user_id: UUID | None,
    subtotal: Decimal,
    category_ids: Iterable[UUID | None],
    product_ids: Iterable[UUID],
) -> CouponSnapshot:
    """Validate `code` against a cart and return the snapshot to attach, or raise 400."""
    coupon = await get_coupon_by_code(session, code)
    reason = await rejection_reason(
        session, coupon, user_id=user_id, category_ids=category_ids, product_ids=product_ids
    )
    if reason or coupon is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=reason or "Invalid coupon")
    discount = evaluate_discount(subtotal, terms_of(coupon))
    if discount is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=minimum_cart_message(coupon))
    return snapshot_of(coupon, discount)


async def record_coupon_usage(session: AsyncSession, order: Order) -> bool:
    """Append the ledger row for `order` and bump the coupon counter, at most once per order.

    Must run inside the transaction that finalizes the order. Returns False when
    nothing was recorded (no coupon, already recorded, or caps exhausted).
    """
    snapshot = load_snapshot(order.coupon)
    if snapshot is None:
        return False
    coupon = await lock_coupon(session, snapshot.coupon_id)
    if coupon is None:
        logger.warning("coupon missing at redemption", extra={"order_id": str(order.id), "coupon_id": str(snapshot.coupon_id)})
        return False
    already = await session.scalar(select(CouponUsage.id).where(CouponUsage.order_id == order.id))
    if already is not None:
        return False
    cap = await usage_cap_reason(session, coupon, order.user_id)
    if cap:
        metrics.record_coupon_cap_exhausted()
        logger.warning(
            "coupon cap reached before redemption could be recorded",
            extra={"order_id": str(order.id), "coupon_code": coupon.code, "reason": cap},
        )
        return False
    session.add(
        CouponUsage(
            coupon_id=coupon.id,
            user_id=order.user_id,
            order_id=order.id,
            discount_amount=quantize_money(order.coupon_discount or ZERO),
        )
    )
    coupon.usage_count = int(coupon.usage_count or 0) + 1
    await session.flush()
    return True


async def release_coupon_usage(session: AsyncSession, order: Order) -> bool:
    """Undo the ledger row and counter bump for a cancelled order.

    Returns False when the order never consumed its coupon (online orders
    cancelled before payment, or orders without a coupon).
    """
    snapshot = load_snapshot(order.coupon)
    if snapshot is None:
        return False
    coupon = await lock_coupon(session, snapshot.coupon_id)
    usage = await session.scalar(select(CouponUsage).where(CouponUsage.order_id == order.id))
    if usage is None:
        return False
    await session.delete(usage)
    if coupon is not None:
        coupon.usage_count = max(int(coupon.usage_count or 0) - 1, 0)
    await session.flush()
    logger.info("coupon usage released", extra={"order_id": str(order.id), "coupon_code": snapshot.code})
    return True


# Discovery


def _describe(coupon: Coupon) -> str:
    if coupon.discount_type == DiscountType.percentage:
        text = f"Get {whole_units(coupon.discount_value)}% off"
        if coupon.max_discount_amount:
            text += f" (max {whole_units(coupon.max_discount_amount)})"
        return text
    return f"Get {whole_units(coupon.discount_value)} off"


async def list_available_coupons(session: AsyncSession, payload: AvailableCouponsRequest) -> list[AvailableCouponRead]:
    now = datetime.now(timezone.utc)
    query = (
        select(Coupon)
        .where(Coupon.is_active.is_(True), Coupon.start_date <= now, Coupon.end_date >= now)
        .order_by(Coupon.discount_value.desc())
    )
    coupons = (await session.execute(query)).scalars().all()
    available: list[AvailableCouponRead] = []
    for coupon in coupons:
        if payload.cart_total is not None and coupon.min_cart_value and coupon.min_cart_value > payload.cart_total:
            continue
        if not applies_to(coupon, category_ids=payload.category_ids, product_ids=payload.product_ids):
            continue
        remaining = (as_utc(coupon.end_date) - now).total_seconds()
        available.append(
            AvailableCouponRead(
                id=coupon.id,
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
                max_discount_amount=coupon.max_discount_amount,
                min_cart_value=coupon.min_cart_value or ZERO,
                end_date=coupon.end_date,
                event_tag=coupon.event_tag,
                description=_describe(coupon),
                days_left=max(0, math.ceil(remaining / 86400)),
            )
        )
    return available


# Administration


def _id_list(values: list[UUID] | None) -> list[str] | None:
    return [str(v) for v in values] if values else None


async def list_coupons(session: AsyncSession, *, include_inactive: bool = True) -> list[Coupon]:
    query = select(Coupon).order_by(Coupon.created_at.desc())
    if not include_inactive:
        query = query.where(Coupon.is_active.is_(True))
    return list((await session.execute(query)).scalars().all())


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if not coupon:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


def _check_window(start: datetime, end: datetime) -> None:
    if as_utc(start) >= as_utc(end):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must be after start date")
    if as_utc(end) < datetime.now(timezone.utc):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date cannot be in the past")


async def create_coupon(session: AsyncSession, payload: CouponCreate, *, created_by_id: UUID | None) -> Coupon:
    code = payload.code.strip().upper()
    if await get_coupon_by_code(session, code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon code already exists")
    _check_window(payload.start_date, payload.end_date)
    coupon = Coupon(
        code=code,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        max_discount_amount=payload.max_discount_amount if payload.discount_type == DiscountType.percentage else None,
        min_cart_value=payload.min_cart_value,
        start_date=payload.start_date,
        end_date=payload.end_date,
        usage_limit=payload.usage_limit,
        usage_per_user=payload.usage_per_user,
        applicable_category_ids=_id_list(payload.applicable_category_ids),
        applicable_product_ids=_id_list(payload.applicable_product_ids),
        event_tag=payload.event_tag,
        is_active=True,
        created_by_id=created_by_id,
    )
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon created", extra={"coupon_code": code})
    return coupon


async def update_coupon(session: AsyncSession, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    data = payload.model_dump(exclude_unset=True)
    for key in ("applicable_category_ids", "applicable_product_ids"):
        if key in data:
            data[key] = _id_list(data[key])
    if "max_discount_amount" in data and coupon.discount_type != DiscountType.percentage:
        data["max_discount_amount"] = None
    if coupon.discount_type == DiscountType.percentage and (data.get("discount_value") or 0) > 100:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage discount cannot exceed 100%")
    if "start_date" in data or "end_date" in data:
        _check_window(data.get("start_date") or coupon.start_date, data.get("end_date") or coupon.end_date)
    for key, value in data.items():
        setattr(coupon, key, value)
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def deactivate_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    """Coupons are never deleted: the redemption ledger keeps pointing at them."""
    coupon = await get_coupon(session, coupon_id)
    coupon.is_active = False
    await session.commit()
    await session.refresh(coupon)
    return coupon
