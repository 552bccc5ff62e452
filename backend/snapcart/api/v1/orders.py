from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core.dependencies import get_current_user
from snapcart.db.session import get_session
from snapcart.models.order import PaymentMethod
from snapcart.models.user import User
from snapcart.schemas.order import OrderActionResult, OrderCreate, OrderCreateResponse, OrderRead, OrderTimeline
from snapcart.services import email as email_service
from snapcart.services import order as order_service

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> OrderCreateResponse:
    order = await order_service.create_order_from_cart(session, current_user, payload)
    if current_user.email:
        background_tasks.add_task(email_service.send_order_confirmation, current_user.email, order)
    return OrderCreateResponse(
        order_id=order.id,
        order_number=order.order_number,
        payment_required=order.payment_method == PaymentMethod.online,
        order=OrderRead.model_validate(order),
    )


@router.get("", response_model=list[OrderRead])
async def list_my_orders(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> list[OrderRead]:
    orders = await order_service.list_user_orders(session, current_user.id)
    return [OrderRead.model_validate(order) for order in orders]


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    return OrderRead.model_validate(await order_service.get_order_for_user(session, current_user, order_id))


@router.get("/{order_id}/timeline", response_model=OrderTimeline)
async def get_order_timeline(
    order_id: UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> OrderTimeline:
    order = await order_service.get_order_for_user(session, current_user, order_id)
    return order_service.build_timeline(order)


@router.post("/{order_id}/cancel", response_model=OrderActionResult)
async def cancel_order(
    order_id: UUID,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> OrderActionResult:
    return await order_service.cancel_order(session, current_user, order_id)
