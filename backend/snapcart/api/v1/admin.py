from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.core.dependencies import require_admin
from snapcart.db.session import get_session
from snapcart.models.order import OrderStatus
from snapcart.models.user import User
from snapcart.schemas.coupon import CouponCreate, CouponRead, CouponUpdate
from snapcart.schemas.order import OrderRead, OrderStatusUpdate
from snapcart.services import coupons as coupon_service
from snapcart.services import email as email_service
from snapcart.services import order as order_service

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/orders", response_model=list[OrderRead])
async def list_orders(
    order_status: OrderStatus | None = Query(default=None),
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> list[OrderRead]:
    orders = await order_service.list_orders(session, order_status)
    return [OrderRead.model_validate(order) for order in orders]


@router.patch("/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: UUID,
    payload: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    order = await order_service.update_order_status(session, order_id, payload.order_status)
    if order.user and order.user.email:
        background_tasks.add_task(email_service.send_order_status_update, order.user.email, order)
    return OrderRead.model_validate(order)


@router.get("/coupons", response_model=list[CouponRead])
async def list_coupons(
    include_inactive: bool = Query(default=True),
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> list[CouponRead]:
    coupons = await coupon_service.list_coupons(session, include_inactive=include_inactive)
    return [CouponRead.model_validate(coupon) for coupon in coupons]


@router.post("/coupons", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    payload: CouponCreate,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    return CouponRead.model_validate(await coupon_service.create_coupon(session, payload, created_by_id=admin.id))


@router.get("/coupons/{coupon_id}", response_model=CouponRead)
async def get_coupon(
    coupon_id: UUID,
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    return CouponRead.model_validate(await coupon_service.get_coupon(session, coupon_id))


@router.patch("/coupons/{coupon_id}", response_model=CouponRead)
async def update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    return CouponRead.model_validate(await coupon_service.update_coupon(session, coupon_id, payload))


@router.delete("/coupons/{coupon_id}", response_model=CouponRead)
async def delete_coupon(
    coupon_id: UUID,
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    return CouponRead.model_validate(await coupon_service.deactivate_coupon(session, coupon_id))


@router.get("/metrics")
async def get_metrics(_: User = Depends(require_admin)) -> dict[str, int]:
    return metrics.snapshot()
