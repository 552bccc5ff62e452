from fastapi import APIRouter, Body, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core.dependencies import get_current_user
from snapcart.db.session import get_session
from snapcart.models.user import User
from snapcart.schemas.payment import (
    PaymentCallback,
    PaymentConfirmationResult,
    RazorpayOrderRequest,
    RazorpayOrderResponse,
    StripeSessionRequest,
    StripeSessionResponse,
    StripeVerifyRequest,
    WebhookAck,
)
from snapcart.services import order as order_service
from snapcart.services import payments as payments_service
from snapcart.services import razorpay_payments
from snapcart.services import webhook_handlers

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/stripe/session", response_model=StripeSessionResponse)
async def create_stripe_session(
    payload: StripeSessionRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> StripeSessionResponse:
    order = await order_service.get_order_for_user(session, current_user, payload.order_id)
    result = await payments_service.create_checkout_session(session, order, customer_email=current_user.email)
    return StripeSessionResponse(**result)


@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
) -> WebhookAck:
    payload = await request.body()
    return await webhook_handlers.handle_stripe_webhook(session, payload, stripe_signature)


@router.post("/stripe/verify", response_model=PaymentConfirmationResult)
async def verify_stripe_session(
    payload: StripeVerifyRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> PaymentConfirmationResult:
    return await webhook_handlers.verify_stripe_session(session, current_user, payload.session_id)


@router.post("/razorpay/order", response_model=RazorpayOrderResponse)
async def create_razorpay_order(
    payload: RazorpayOrderRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> RazorpayOrderResponse:
    order = await order_service.get_order_for_user(session, current_user, payload.order_id)
    return RazorpayOrderResponse(**await razorpay_payments.create_razorpay_order(session, order))


@router.post("/razorpay/webhook", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    razorpay_signature: str | None = Header(default=None, alias="X-Razorpay-Signature"),
    razorpay_event_id: str | None = Header(default=None, alias="X-Razorpay-Event-Id"),
    session: AsyncSession = Depends(get_session),
) -> WebhookAck:
    body = await request.body()
    return await webhook_handlers.handle_razorpay_webhook(session, body, razorpay_signature, razorpay_event_id)


@router.post("/callback", response_model=PaymentConfirmationResult)
async def payment_callback(
    payload: PaymentCallback = Body(...),
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> PaymentConfirmationResult:
    return await webhook_handlers.handle_payment_callback(session, current_user, payload)
