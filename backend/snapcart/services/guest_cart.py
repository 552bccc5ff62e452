from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core.config import settings
from snapcart.core.security import read_cookie_payload, sign_cookie_payload
from snapcart.models.catalog import GroceryVariant
from snapcart.schemas.cart import (
    CartTotals,
    GuestCartItemAdd,
    GuestCartItemRead,
    GuestCartItemUpdate,
    GuestCartLine,
    GuestCartRead,
    GuestCoupon,
    PriceAtAdd,
)
from snapcart.services import coupons as coupon_service
from snapcart.services.pricing import ZERO, PricedLine, compute_breakdown, line_subtotal

logger = logging.getLogger(__name__)

CART_COOKIE_KIND = "guest_cart"
COUPON_COOKIE_KIND = "guest_coupon"

_lines_adapter = TypeAdapter(list[GuestCartLine])


def load_lines(raw_cookie: str | None) -> list[GuestCartLine]:
    data = read_cookie_payload(CART_COOKIE_KIND, raw_cookie)
    if not data:
        return []
    try:
        return _lines_adapter.validate_python(data)
    except ValidationError:
        logger.info("discarding unreadable guest cart cookie")
        return []


def load_coupon(raw_cookie: str | None) -> GuestCoupon | None:
    data = read_cookie_payload(COUPON_COOKIE_KIND, raw_cookie)
    if not data:
        return None
    try:
        return GuestCoupon.model_validate(data)
    except ValidationError:
        return None


def encode_lines(lines: list[GuestCartLine]) -> str:
    return sign_cookie_payload(
        CART_COOKIE_KIND,
        _lines_adapter.dump_python(lines, mode="json"),
        max_age_seconds=settings.guest_cart_max_age_seconds,
    )


def encode_coupon(coupon: GuestCoupon) -> str:
    return sign_cookie_payload(
        COUPON_COOKIE_KIND,
        coupon.model_dump(mode="json"),
        max_age_seconds=settings.guest_cart_max_age_seconds,
    )


async def _variants_by_id(session: AsyncSession, variant_ids: list[UUID]) -> dict[UUID, GroceryVariant]:
    if not variant_ids:
        return {}
    result = await session.execute(select(GroceryVariant).where(GroceryVariant.id.in_(variant_ids)))
    return {v.id: v for v in result.scalars().all()}


def _priced(lines: list[GuestCartLine]) -> list[PricedLine]:
    return [
        PricedLine(quantity=line.quantity, mrp=line.price_at_add.mrp, selling=line.price_at_add.selling)
        for line in lines
    ]


def _guest_discount(lines: list[GuestCartLine], coupon: GuestCoupon | None) -> Decimal | None:
    if coupon is None:
        return None
    return coupon_service.evaluate_discount(line_subtotal(_priced(lines)), coupon)


async def build_view(
    session: AsyncSession, lines: list[GuestCartLine], coupon: GuestCoupon | None
) -> tuple[GuestCartRead, GuestCoupon | None]:
    """Render the guest cart; the returned coupon is None when it no longer applies."""
    variants = await _variants_by_id(session, [line.variant_id for line in lines])
    discount = _guest_discount(lines, coupon)
    if discount is None:
        coupon = None
    breakdown = compute_breakdown(_priced(lines), discount or ZERO)
    items = []
    for line in lines:
        variant = variants.get(line.variant_id)
        items.append(
            GuestCartItemRead(
                variant_id=line.variant_id,
                quantity=line.quantity,
                price_at_add=line.price_at_add,
                grocery_name=variant.grocery.name if variant is not None and variant.grocery is not None else None,
                variant_label=variant.label if variant is not None else None,
                count_in_stock=variant.count_in_stock if variant is not None else None,
            )
        )
    view = GuestCartRead(
        items=items,
        cart_count=breakdown.total_items,
        coupon=coupon,
        totals=CartTotals(
            subtotal=breakdown.subtotal,
            total_mrp=breakdown.total_mrp,
            savings=breakdown.savings,
            total_items=breakdown.total_items,
            delivery_fee=breakdown.delivery_fee,
            coupon_discount=coupon_service.display_discount(breakdown.coupon_discount),
            total=breakdown.total,
        ),
    )
    return view, coupon


async def _sellable_variant(session: AsyncSession, variant_id: UUID) -> GroceryVariant:
    variant = await session.get(GroceryVariant, variant_id)
    if variant is None or variant.grocery is None or not variant.grocery.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant unavailable")
    return variant


async def add_line(session: AsyncSession, lines: list[GuestCartLine], payload: GuestCartItemAdd) -> list[GuestCartLine]:
    variant = await _sellable_variant(session, payload.variant_id)
    updated = list(lines)
    for idx, line in enumerate(updated):
        if line.variant_id == variant.id:
            quantity = line.quantity + payload.quantity
            if quantity > variant.count_in_stock or quantity > settings.cart_max_item_quantity:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stock exceeded")
            updated[idx] = line.model_copy(update={"quantity": quantity})
            return updated
    if payload.quantity > variant.count_in_stock:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stock exceeded")
    updated.append(
        GuestCartLine(
            variant_id=variant.id,
            quantity=payload.quantity,
            price_at_add=PriceAtAdd(mrp=variant.mrp, selling=variant.selling_price),
        )
    )
    return updated


async def update_line(
    session: AsyncSession, lines: list[GuestCartLine], payload: GuestCartItemUpdate
) -> list[GuestCartLine]:
    if payload.quantity <= 0:
        return remove_line(lines, payload.variant_id)
    if not any(line.variant_id == payload.variant_id for line in lines):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart item not found")
    variant = await _sellable_variant(session, payload.variant_id)
    if payload.quantity > variant.count_in_stock:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stock exceeded")
    return [
        line.model_copy(update={"quantity": payload.quantity}) if line.variant_id == payload.variant_id else line
        for line in lines
    ]


def remove_line(lines: list[GuestCartLine], variant_id: UUID) -> list[GuestCartLine]:
    return [line for line in lines if line.variant_id != variant_id]


async def apply_coupon(session: AsyncSession, lines: list[GuestCartLine], code: str) -> GuestCoupon:
    if not lines:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart is empty")
    variants = await _variants_by_id(session, [line.variant_id for line in lines])
    snapshot = await coupon_service.resolve_coupon_for_cart(
        session,
        code,
        user_id=None,
        subtotal=line_subtotal(_priced(lines)),
        category_ids=[v.grocery.category_id for v in variants.values() if v.grocery is not None],
        product_ids=[v.grocery_id for v in variants.values()],
    )
    return GuestCoupon(
        coupon_id=snapshot.coupon_id,
        code=snapshot.code,
        discount_type=snapshot.discount_type,
        discount_value=snapshot.discount_value,
        min_cart_value=snapshot.min_cart_value,
        max_discount_amount=snapshot.max_discount_amount,
    )
