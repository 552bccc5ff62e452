from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.models.catalog import GroceryVariant
from snapcart.models.order import Order, OrderItem

logger = logging.getLogger(__name__)


def _quantities_by_variant(items: list[OrderItem]) -> dict[UUID, int]:
    quantities: dict[UUID, int] = defaultdict(int)
    for item in items:
        quantities[item.variant_id] += int(item.quantity)
    return dict(quantities)


async def lock_variants(session: AsyncSession, variant_ids: list[UUID]) -> dict[UUID, GroceryVariant]:
    """Fetch fresh variant rows with a write lock, in id order so concurrent checkouts lock alike."""
    if not variant_ids:
        return {}
    result = await session.execute(
        select(GroceryVariant)
        .where(GroceryVariant.id.in_(sorted(set(variant_ids))))
        .order_by(GroceryVariant.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {variant.id: variant for variant in result.scalars().all()}


async def decrement_stock(session: AsyncSession, order: Order) -> int:
    """Take the order's quantities out of stock, once.

    Runs inside the caller's transaction. Each row update only applies while
    enough stock remains, so `count_in_stock` never goes negative; a shortfall
    between modified rows and order lines is logged as a consistency anomaly.
    Returns the number of variants modified.
    """
    if order.stock_decremented_at is not None:
        logger.info("stock already decremented", extra={"order_id": str(order.id)})
        return 0
    quantities = _quantities_by_variant(list(order.items))
    modified = 0
    for variant_id, quantity in quantities.items():
        result = await session.execute(
            update(GroceryVariant)
            .where(GroceryVariant.id == variant_id, GroceryVariant.count_in_stock >= quantity)
            .values(count_in_stock=GroceryVariant.count_in_stock - quantity)
            .execution_options(synchronize_session=False)
        )
        modified += int(result.rowcount or 0)
    if modified != len(quantities):
        metrics.record_stock_anomaly()
        logger.warning(
            "stock decrement modified fewer variants than ordered",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "expected": len(quantities),
                "modified": modified,
            },
        )
    order.stock_decremented_at = datetime.now(timezone.utc)
    return modified


async def restock_order(session: AsyncSession, order: Order) -> int:
    """Put back what `decrement_stock` took for `order`; no-op if nothing was taken or already returned."""
    if order.stock_decremented_at is None or order.stock_restored_at is not None:
        return 0
    restored = 0
    for variant_id, quantity in _quantities_by_variant(list(order.items)).items():
        result = await session.execute(
            update(GroceryVariant)
            .where(GroceryVariant.id == variant_id)
            .values(count_in_stock=GroceryVariant.count_in_stock + quantity)
            .execution_options(synchronize_session=False)
        )
        restored += int(result.rowcount or 0)
    order.stock_restored_at = datetime.now(timezone.utc)
    return restored
