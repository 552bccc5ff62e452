from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from snapcart.core import metrics
from snapcart.core.config import settings
from snapcart.db.transaction import run_atomic
from snapcart.models.cart import Cart
from snapcart.models.coupon import Coupon
from snapcart.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentDetail,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
)
from snapcart.models.user import User, UserRole
from snapcart.schemas.coupon import CouponSnapshot
from snapcart.schemas.order import OrderActionResult, OrderCreate, OrderTimeline, TimelineEntry
from snapcart.schemas.payment import PaymentConfirmation, PaymentConfirmationResult
from snapcart.services import cart as cart_service
from snapcart.services import coupons as coupon_service
from snapcart.services import inventory
from snapcart.services import notifications as notification_service
from snapcart.services.pricing import ZERO, compute_breakdown, line_subtotal, quantize_money

logger = logging.getLogger(__name__)

PROGRESSION = [
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.packed,
    OrderStatus.shipped,
    OrderStatus.out_for_delivery,
    OrderStatus.delivered,
]
ADMIN_TARGETS = set(PROGRESSION[1:])
CANCELLABLE_STATUSES = {OrderStatus.pending, OrderStatus.confirmed}

STAGE_TIMESTAMPS = {
    OrderStatus.confirmed: "confirmed_at",
    OrderStatus.packed: "packed_at",
    OrderStatus.shipped: "shipped_at",
    OrderStatus.out_for_delivery: "out_for_delivery_at",
    OrderStatus.delivered: "delivered_at",
    OrderStatus.cancelled: "cancelled_at",
}

STAGE_LABELS = {
    OrderStatus.pending: "Order placed",
    OrderStatus.confirmed: "Order confirmed",
    OrderStatus.packed: "Packed",
    OrderStatus.shipped: "Shipped",
    OrderStatus.out_for_delivery: "Out for delivery",
    OrderStatus.delivered: "Delivered",
    OrderStatus.cancelled: "Cancelled",
}


def generate_order_number(order_id: UUID, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"ORD-{stamp}-{order_id.hex[-5:].upper()}"


def _order_query():
    return (
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.payments), selectinload(Order.user))
        .execution_options(populate_existing=True)
    )


async def get_order_by_id(session: AsyncSession, order_id: UUID) -> Order | None:
    return (await session.execute(_order_query().where(Order.id == order_id))).scalar_one_or_none()


async def reload_order(session: AsyncSession, order_id: UUID) -> Order:
    """Fetch an order committed by this request; a miss raises NoResultFound."""
    return (await session.execute(_order_query().where(Order.id == order_id))).scalar_one()


async def lock_order(session: AsyncSession, order_id: UUID) -> Order | None:
    query = _order_query().where(Order.id == order_id).with_for_update(of=Order)
    return (await session.execute(query)).scalar_one_or_none()


# Creation


async def _checkout_coupon(
    session: AsyncSession,
    cart: Cart,
    *,
    user_id: UUID,
    subtotal: Decimal,
    category_ids: list[UUID | None],
    product_ids: list[UUID],
    lock: bool = False,
) -> CouponSnapshot | None:
    """Re-check the cart's coupon at checkout; anything no longer redeemable is dropped.

    With `lock` the coupon row is held until commit, so the cap check and the
    ledger insert cannot interleave with another redemption.
    """
    snapshot = coupon_service.load_snapshot(cart.coupon)
    if snapshot is None:
        return None
    if lock:
        coupon = await coupon_service.lock_coupon(session, snapshot.coupon_id)
    else:
        coupon = await session.get(Coupon, snapshot.coupon_id)
    reason = await coupon_service.rejection_reason(
        session, coupon, user_id=user_id, category_ids=category_ids, product_ids=product_ids
    )
    revalidated = None if reason else coupon_service.revalidate_snapshot(snapshot, subtotal)
    if revalidated is None:
        logger.info(
            "coupon dropped at checkout",
            extra={"user_id": str(user_id), "coupon_code": snapshot.code, "reason": reason or "minimum cart value"},
        )
    return revalidated


async def create_order_from_cart(session: AsyncSession, user: User, payload: OrderCreate) -> Order:
    """Drain the user's cart into a new order in one transaction."""

    async def _create() -> UUID:
        cart = await cart_service.load_cart(session, user.id, for_update=True)
        if cart is None or not cart.items:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart is empty")
        items = list(cart.items)

        variants = await inventory.lock_variants(session, [item.variant_id for item in items])
        for item in items:
            variant = variants.get(item.variant_id)
            grocery = variant.grocery if variant is not None else None
            if variant is None or grocery is None or not grocery.is_active or variant.count_in_stock < item.quantity:
                name = grocery.name if grocery is not None else str(item.variant_id)
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Insufficient or invalid stock for {name}",
                )

        lines = cart_service.priced_lines(items)
        category_ids, product_ids = cart_service.line_scope(items)
        snapshot = await _checkout_coupon(
            session,
            cart,
            user_id=user.id,
            subtotal=line_subtotal(lines),
            category_ids=category_ids,
            product_ids=product_ids,
            lock=payload.payment_method == PaymentMethod.cod,
        )
        breakdown = compute_breakdown(lines, snapshot.discount_amount if snapshot else ZERO)

        order_id = uuid.uuid4()
        order = Order(
            id=order_id,
            user_id=user.id,
            order_number=generate_order_number(order_id),
            sub_total=breakdown.subtotal,
            total_mrp=breakdown.total_mrp,
            savings=breakdown.savings,
            delivery_fee=breakdown.delivery_fee,
            coupon_discount=breakdown.coupon_discount,
            final_total=breakdown.total,
            coupon=coupon_service.dump_snapshot(snapshot),
            delivery_address=payload.delivery_address.model_dump(mode="json"),
            payment_method=payload.payment_method,
            online_payment_type=payload.online_payment_type,
            payment_status=PaymentStatus.pending,
            order_status=OrderStatus.pending,
            currency=settings.currency,
            stock_decremented_at=None,
            stock_restored_at=None,
            items=[
                OrderItem(
                    grocery_id=variants[item.variant_id].grocery_id,
                    grocery_name=variants[item.variant_id].grocery.name,
                    variant_id=item.variant_id,
                    variant_label=variants[item.variant_id].label,
                    variant_unit=variants[item.variant_id].unit,
                    variant_value=variants[item.variant_id].value,
                    mrp_price=item.mrp_at_add,
                    selling_price=item.selling_at_add,
                    quantity=item.quantity,
                )
                for item in items
            ],
        )
        session.add(order)
        await session.flush()

        if payload.payment_method == PaymentMethod.cod:
            await inventory.decrement_stock(session, order)
            order.order_status = OrderStatus.confirmed
            order.confirmed_at = datetime.now(timezone.utc)
            await coupon_service.record_coupon_usage(session, order)

        cart_service.empty_cart(cart)
        return order_id

    order_id = await run_atomic(session, _create, label="create_order")
    order = await reload_order(session, order_id)
    metrics.record_order_created(order.payment_method.value)
    logger.info(
        "order created",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "payment_method": order.payment_method.value,
            "final_total": str(order.final_total),
        },
    )
    await notify_order_placed(session, order)
    return order


async def notify_order_placed(session: AsyncSession, order: Order) -> None:
    try:
        await notification_service.notify_admins(
            session,
            type="order",
            message=f"New order {order.order_number} placed ({order.final_total} {order.currency})",
            link=f"/admin/orders/{order.id}",
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("admin order notification failed", extra={"order_id": str(order.id), "error": str(exc)})


# Payment confirmation


def _paid_at(confirmation: PaymentConfirmation) -> datetime:
    if confirmation.paid_at_epoch:
        return datetime.fromtimestamp(confirmation.paid_at_epoch, tz=timezone.utc)
    return datetime.now(timezone.utc)


async def confirm_order_payment(
    session: AsyncSession, order_id: UUID, confirmation: PaymentConfirmation
) -> PaymentConfirmationResult:
    """Mark an order paid exactly once.

    The order row is locked and the paid check happens in the same transaction
    as every mutation, so replayed or concurrent callbacks for the same order
    see `paid` and do nothing. Stock and coupon usage are finalized here for
    online orders.
    """

    async def _confirm() -> PaymentConfirmationResult:
        order = await lock_order(session, order_id)
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        if order.payment_status == PaymentStatus.paid:
            return PaymentConfirmationResult(
                message="Payment already processed", order_id=order.id, already_processed=True
            )

        amount = quantize_money(confirmation.amount)
        if amount != quantize_money(order.final_total):
            logger.warning(
                "paid amount differs from order total",
                extra={"order_id": str(order.id), "paid": str(amount), "expected": str(order.final_total)},
            )

        order.payment_status = PaymentStatus.paid
        order.payments.append(
            PaymentDetail(
                provider=PaymentProvider(confirmation.provider),
                transaction_id=confirmation.transaction_id,
                payment_method=confirmation.payment_method,
                amount=amount,
                currency=(confirmation.currency or order.currency).upper(),
                status=confirmation.status,
                paid_at=_paid_at(confirmation),
            )
        )
        if order.order_status == OrderStatus.cancelled:
            logger.warning(
                "payment captured for a cancelled order, refund required",
                extra={"order_id": str(order.id), "order_number": order.order_number},
            )
            return PaymentConfirmationResult(message="Payment recorded for cancelled order", order_id=order.id)

        if order.order_status == OrderStatus.pending:
            order.order_status = OrderStatus.confirmed
            order.confirmed_at = datetime.now(timezone.utc)
        await inventory.decrement_stock(session, order)
        await coupon_service.record_coupon_usage(session, order)
        return PaymentConfirmationResult(message="Payment confirmed", order_id=order.id)

    result = await run_atomic(session, _confirm, label="confirm_order_payment")
    if result.already_processed:
        metrics.record_duplicate_payment()
        logger.info("payment already processed", extra={"order_id": str(order_id), "provider": confirmation.provider})
    else:
        metrics.record_payment_confirmed(confirmation.provider)
        logger.info(
            "payment confirmed",
            extra={"order_id": str(order_id), "provider": confirmation.provider, "transaction_id": confirmation.transaction_id},
        )
    return result


# Cancellation


async def cancel_order(session: AsyncSession, user: User, order_id: UUID) -> OrderActionResult:
    async def _cancel() -> OrderActionResult:
        order = await lock_order(session, order_id)
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        if order.user_id != user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to cancel this order")
        if order.payment_status == PaymentStatus.paid:
            return OrderActionResult(message="Order already paid", order_id=order.id, changed=False)
        if order.order_status == OrderStatus.cancelled:
            return OrderActionResult(message="Order already cancelled", order_id=order.id, changed=False)
        if order.order_status not in CANCELLABLE_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order can no longer be cancelled")

        cart = await cart_service.load_cart_in_transaction(session, user.id)
        await cart_service.restore_order_items(session, cart, list(order.items))
        await inventory.restock_order(session, order)
        await coupon_service.release_coupon_usage(session, order)
        order.order_status = OrderStatus.cancelled
        order.cancelled_at = datetime.now(timezone.utc)
        return OrderActionResult(message="Order cancelled", order_id=order.id, changed=True)

    result = await run_atomic(session, _cancel, label="cancel_order")
    if result.changed:
        logger.info("order cancelled", extra={"order_id": str(order_id), "user_id": str(user.id)})
    return result


# Admin status workflow


def _parse_target(value: str) -> OrderStatus:
    try:
        target = OrderStatus(value)
    except ValueError:
        target = None
    if target not in ADMIN_TARGETS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid order status")
    return target


async def update_order_status(session: AsyncSession, order_id: UUID, requested: str) -> Order:
    target = _parse_target(requested)

    async def _update() -> None:
        order = await lock_order(session, order_id)
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        current = order.order_status
        if current == OrderStatus.cancelled or PROGRESSION.index(target) <= PROGRESSION.index(current):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid order status transition")
        if order.payment_method == PaymentMethod.online and order.payment_status != PaymentStatus.paid:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order payment is pending")

        now = datetime.now(timezone.utc)
        order.order_status = target
        setattr(order, STAGE_TIMESTAMPS[target], now)
        if target == OrderStatus.delivered and order.payment_method == PaymentMethod.cod:
            order.payment_status = PaymentStatus.paid
        logger.info(
            "order status changed",
            extra={"order_id": str(order.id), "from_status": current.value, "to_status": target.value},
        )

    await run_atomic(session, _update, label="update_order_status")
    order = await reload_order(session, order_id)
    return order


# Queries


async def list_user_orders(session: AsyncSession, user_id: UUID) -> list[Order]:
    result = await session.execute(_order_query().where(Order.user_id == user_id).order_by(Order.created_at.desc()))
    return list(result.scalars().all())


async def list_orders(session: AsyncSession, order_status: OrderStatus | None = None) -> list[Order]:
    query = _order_query().order_by(Order.created_at.desc())
    if order_status:
        query = query.where(Order.order_status == order_status)
    return list((await session.execute(query)).scalars().all())


async def get_order_for_user(session: AsyncSession, user: User, order_id: UUID) -> Order:
    order = await get_order_by_id(session, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.user_id != user.id and user.role != UserRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view this order")
    return order


def build_timeline(order: Order) -> OrderTimeline:
    cancelled = order.order_status == OrderStatus.cancelled
    reached = -1 if cancelled else PROGRESSION.index(order.order_status)
    entries = []
    for idx, stage in enumerate(PROGRESSION):
        when = order.created_at if stage == OrderStatus.pending else getattr(order, STAGE_TIMESTAMPS[stage])
        completed = when is not None if cancelled else idx <= reached
        entries.append(TimelineEntry(status=stage, label=STAGE_LABELS[stage], time=when, completed=completed))
    if cancelled:
        entries.append(
            TimelineEntry(
                status=OrderStatus.cancelled,
                label=STAGE_LABELS[OrderStatus.cancelled],
                time=order.cancelled_at,
                completed=True,
            )
        )
    return OrderTimeline(order_status=order.order_status, timeline=entries)
