from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from snapcart.core.config import settings
from snapcart.models.cart import Cart, CartItem
from snapcart.models.catalog import GroceryVariant
from snapcart.models.order import OrderItem
from snapcart.schemas.cart import (
    CartItemAdd,
    CartItemRead,
    CartRead,
    CartTotals,
    GuestCartLine,
    MergeCartResult,
    PriceAtAdd,
)
from snapcart.services import coupons as coupon_service
from snapcart.services.pricing import PricedLine, compute_breakdown, line_subtotal

logger = logging.getLogger(__name__)


def _cart_query(user_id: UUID):
    return (
        select(Cart)
        .options(selectinload(Cart.items).selectinload(CartItem.variant).selectinload(GroceryVariant.grocery))
        .where(Cart.user_id == user_id)
        .execution_options(populate_existing=True)
    )


async def load_cart(session: AsyncSession, user_id: UUID, *, for_update: bool = False) -> Cart | None:
    query = _cart_query(user_id)
    if for_update:
        query = query.with_for_update(of=Cart)
    return (await session.execute(query)).scalar_one_or_none()


async def get_or_create_cart(session: AsyncSession, user_id: UUID) -> Cart:
    cart = await load_cart(session, user_id)
    if cart:
        return cart
    session.add(Cart(user_id=user_id))
    try:
        await session.commit()
    except IntegrityError:
        # another request created it first
        await session.rollback()
    cart = await load_cart(session, user_id)
    if cart is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Cart could not be created")
    return cart


def priced_lines(items: list[CartItem]) -> list[PricedLine]:
    return [PricedLine(quantity=i.quantity, mrp=Decimal(i.mrp_at_add), selling=Decimal(i.selling_at_add)) for i in items]


def cart_subtotal(cart: Cart) -> Decimal:
    return line_subtotal(priced_lines(list(cart.items)))


def line_scope(items: list[CartItem]) -> tuple[list[UUID | None], list[UUID]]:
    """Category and product ids present in the cart, for coupon applicability."""
    categories: list[UUID | None] = []
    products: list[UUID] = []
    for item in items:
        variant = item.variant
        if variant is None or variant.grocery is None:
            continue
        categories.append(variant.grocery.category_id)
        products.append(variant.grocery_id)
    return categories, products


def refresh_cart_coupon(cart: Cart) -> bool:
    """Recompute the attached coupon against the current items; returns True if it had to be dropped."""
    snapshot = coupon_service.load_snapshot(cart.coupon)
    if snapshot is None:
        cart.coupon = None
        return False
    updated = coupon_service.revalidate_snapshot(snapshot, cart_subtotal(cart))
    cart.coupon = coupon_service.dump_snapshot(updated)
    if updated is None:
        logger.info("coupon detached from cart", extra={"cart_id": str(cart.id), "coupon_code": snapshot.code})
        return True
    return False


def _item_read(item: CartItem) -> CartItemRead:
    variant = item.variant
    return CartItemRead(
        id=item.id,
        variant_id=item.variant_id,
        quantity=item.quantity,
        price_at_add=PriceAtAdd(mrp=item.mrp_at_add, selling=item.selling_at_add),
        grocery_name=variant.grocery.name if variant is not None and variant.grocery is not None else None,
        variant_label=variant.label if variant is not None else None,
        count_in_stock=variant.count_in_stock if variant is not None else None,
    )


def serialize_cart(cart: Cart | None, *, coupon_removed: bool = False) -> CartRead:
    items = list(cart.items) if cart else []
    snapshot = coupon_service.load_snapshot(cart.coupon) if cart else None
    discount = snapshot.discount_amount if snapshot else Decimal("0")
    breakdown = compute_breakdown(priced_lines(items), discount)
    totals = CartTotals(
        subtotal=breakdown.subtotal,
        total_mrp=breakdown.total_mrp,
        savings=breakdown.savings,
        total_items=breakdown.total_items,
        delivery_fee=breakdown.delivery_fee,
        coupon_discount=coupon_service.display_discount(breakdown.coupon_discount),
        total=breakdown.total,
    )
    return CartRead(
        id=cart.id if cart else None,
        items=[_item_read(i) for i in items],
        coupon=snapshot,
        coupon_removed=coupon_removed,
        totals=totals,
    )


async def _commit_and_reload(session: AsyncSession, user_id: UUID, *, coupon_removed: bool = False) -> CartRead:
    await session.commit()
    return serialize_cart(await load_cart(session, user_id), coupon_removed=coupon_removed)


async def get_cart(session: AsyncSession, user_id: UUID) -> CartRead:
    cart = await load_cart(session, user_id)
    if cart is None:
        return serialize_cart(None)
    removed = refresh_cart_coupon(cart)
    return await _commit_and_reload(session, user_id, coupon_removed=removed)


async def _available_variant(session: AsyncSession, variant_id: UUID) -> GroceryVariant | None:
    variant = await session.get(GroceryVariant, variant_id, populate_existing=True)
    if variant is None or variant.grocery is None or not variant.grocery.is_active:
        return None
    return variant


def _find_item(cart: Cart, *, item_id: UUID | None = None, variant_id: UUID | None = None) -> CartItem | None:
    for item in cart.items:
        if item_id is not None and item.id == item_id:
            return item
        if variant_id is not None and item.variant_id == variant_id:
            return item
    return None


async def add_item(session: AsyncSession, user_id: UUID, payload: CartItemAdd) -> CartRead:
    cart = await get_or_create_cart(session, user_id)
    variant = await _available_variant(session, payload.variant_id)
    if variant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant unavailable")

    existing = _find_item(cart, variant_id=variant.id)
    new_quantity = (existing.quantity if existing else 0) + payload.quantity
    if new_quantity > variant.count_in_stock:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only {variant.count_in_stock} items available",
        )
    if new_quantity > settings.cart_max_item_quantity:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {settings.cart_max_item_quantity} per item",
        )

    if existing:
        existing.quantity = new_quantity
    else:
        cart.items.append(
            CartItem(
                variant_id=variant.id,
                variant=variant,
                quantity=new_quantity,
                mrp_at_add=variant.mrp,
                selling_at_add=variant.selling_price,
            )
        )
    refresh_cart_coupon(cart)
    try:
        return await _commit_and_reload(session, user_id)
    except IntegrityError as exc:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cart changed, please retry") from exc


async def update_item(session: AsyncSession, user_id: UUID, item_id: UUID, quantity: int) -> CartRead:
    cart = await load_cart(session, user_id)
    item = _find_item(cart, item_id=item_id) if cart else None
    if cart is None or item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart item not found")

    if quantity <= 0:
        cart.items.remove(item)
    else:
        variant = await _available_variant(session, item.variant_id)
        if variant is None or quantity > variant.count_in_stock:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Stock exceeded or item unavailable")
        item.quantity = quantity
    removed = refresh_cart_coupon(cart)
    return await _commit_and_reload(session, user_id, coupon_removed=removed)


async def remove_item(session: AsyncSession, user_id: UUID, item_id: UUID) -> CartRead:
    cart = await load_cart(session, user_id)
    if cart is None:
        return serialize_cart(None)
    item = _find_item(cart, item_id=item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart item not found")
    cart.items.remove(item)
    removed = refresh_cart_coupon(cart)
    return await _commit_and_reload(session, user_id, coupon_removed=removed)


def empty_cart(cart: Cart) -> None:
    cart.items.clear()
    cart.coupon = None


async def clear_cart(session: AsyncSession, user_id: UUID) -> CartRead:
    cart = await load_cart(session, user_id)
    if cart is None:
        return serialize_cart(None)
    empty_cart(cart)
    return await _commit_and_reload(session, user_id)


async def apply_coupon(session: AsyncSession, user_id: UUID, code: str) -> CartRead:
    cart = await load_cart(session, user_id)
    if cart is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart not found")
    if not cart.items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart is empty")
    category_ids, product_ids = line_scope(list(cart.items))
    snapshot = await coupon_service.resolve_coupon_for_cart(
        session,
        code,
        user_id=user_id,
        subtotal=cart_subtotal(cart),
        category_ids=category_ids,
        product_ids=product_ids,
    )
    cart.coupon = coupon_service.dump_snapshot(snapshot)
    logger.info("coupon applied", extra={"cart_id": str(cart.id), "coupon_code": snapshot.code})
    return await _commit_and_reload(session, user_id)


async def remove_coupon(session: AsyncSession, user_id: UUID) -> CartRead:
    cart = await load_cart(session, user_id)
    if cart is None:
        return serialize_cart(None)
    cart.coupon = None
    return await _commit_and_reload(session, user_id)


async def merge_guest_lines(session: AsyncSession, user_id: UUID, lines: list[GuestCartLine]) -> MergeCartResult:
    """Fold guest lines into the user's cart, truncating each to what stock still allows."""
    cart = await get_or_create_cart(session, user_id)
    merged = skipped = 0
    for line in lines:
        variant = await _available_variant(session, line.variant_id)
        if variant is None or variant.count_in_stock <= 0:
            skipped += 1
            continue
        existing = _find_item(cart, variant_id=variant.id)
        current = existing.quantity if existing else 0
        allowed = min(
            line.quantity,
            variant.count_in_stock - current,
            settings.cart_max_item_quantity - current,
        )
        if allowed <= 0:
            skipped += 1
            continue
        if existing:
            existing.quantity = current + allowed
        else:
            cart.items.append(
                CartItem(
                    variant_id=variant.id,
                    variant=variant,
                    quantity=allowed,
                    mrp_at_add=variant.mrp,
                    selling_at_add=variant.selling_price,
                )
            )
        merged += 1
    refresh_cart_coupon(cart)
    cart_read = await _commit_and_reload(session, user_id)
    logger.info("guest cart merged", extra={"user_id": str(user_id), "merged": merged, "skipped": skipped})
    return MergeCartResult(merged_lines=merged, skipped_lines=skipped, cart=cart_read)


async def load_cart_in_transaction(session: AsyncSession, user_id: UUID) -> Cart:
    """Locked cart for use inside an open unit of work; staged, not committed, when missing."""
    cart = await load_cart(session, user_id, for_update=True)
    if cart is None:
        cart = Cart(user_id=user_id, items=[])
        session.add(cart)
    return cart


async def restore_order_items(session: AsyncSession, cart: Cart, items: list[OrderItem]) -> int:
    """Put an order's lines back into `cart` at their purchase prices; returns lines restored."""
    restored = 0
    for order_item in items:
        variant = await session.get(GroceryVariant, order_item.variant_id)
        if variant is None:
            continue
        existing = _find_item(cart, variant_id=variant.id)
        if existing:
            existing.quantity = min(existing.quantity + order_item.quantity, settings.cart_max_item_quantity)
        else:
            cart.items.append(
                CartItem(
                    variant_id=variant.id,
                    variant=variant,
                    quantity=min(order_item.quantity, settings.cart_max_item_quantity),
                    mrp_at_add=order_item.mrp_price,
                    selling_at_add=order_item.selling_price,
                )
            )
        restored += 1
    refresh_cart_coupon(cart)
    return restored
