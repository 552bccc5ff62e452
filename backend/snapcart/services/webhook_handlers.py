from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.models.order import Order, PaymentProvider
from snapcart.models.user import User
from snapcart.models.webhook import PaymentWebhookEvent
from snapcart.schemas.payment import (
    PaymentConfirmationResult,
    RazorpayCallback,
    RazorpayPaymentEntity,
    RazorpayPaymentNotes,
    RazorpayWebhookEvent,
    StripeCallback,
    WebhookAck,
)
from snapcart.services import order as order_service
from snapcart.services import payments as stripe_service
from snapcart.services import razorpay_payments

logger = logging.getLogger(__name__)

CAPTURED_RAZORPAY_STATUSES = {"captured", "authorized"}


# Event ledger


async def record_webhook_event(
    session: AsyncSession,
    *,
    provider: PaymentProvider,
    event_id: str,
    event_type: str | None,
    payload_summary: dict[str, Any],
) -> PaymentWebhookEvent:
    """Insert the delivery, or bump `attempts` when the provider redelivers the same event."""
    now = datetime.now(timezone.utc)
    record = PaymentWebhookEvent(
        provider=provider.value,
        event_id=event_id,
        event_type=event_type,
        attempts=1,
        last_attempt_at=now,
        payload=payload_summary,
        processed_at=None,
        last_error=None,
    )
    session.add(record)
    try:
        await session.commit()
        return record
    except IntegrityError:
        await session.rollback()

    existing = (
        await session.execute(
            select(PaymentWebhookEvent).where(
                PaymentWebhookEvent.provider == provider.value, PaymentWebhookEvent.event_id == event_id
            )
        )
    ).scalar_one()
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    existing.event_type = event_type or existing.event_type
    await session.commit()
    return existing


async def _finish_webhook_event(session: AsyncSession, record_id: UUID, *, error: str | None = None) -> None:
    record = await session.get(PaymentWebhookEvent, record_id, populate_existing=True)
    if record is None:
        return
    if error:
        record.last_error = error[:500]
    else:
        record.processed_at = datetime.now(timezone.utc)
        record.last_error = None
    await session.commit()


async def _process_recorded(session: AsyncSession, record: PaymentWebhookEvent, handler) -> WebhookAck:
    if record.processed_at is not None:
        logger.info(
            "webhook event already processed",
            extra={"provider": record.provider, "event_id": record.event_id, "attempts": record.attempts},
        )
        return WebhookAck(type=record.event_type, message="Event already processed")
    record_id = record.id
    try:
        message = await handler()
    except HTTPException as exc:
        await _finish_webhook_event(session, record_id, error=str(exc.detail))
        if exc.status_code >= 500:
            raise
        logger.warning(
            "webhook event rejected",
            extra={"provider": record.provider, "event_id": record.event_id, "reason": exc.detail},
        )
        return WebhookAck(type=record.event_type, message=str(exc.detail))
    await _finish_webhook_event(session, record_id)
    return WebhookAck(type=record.event_type, message=message)


async def _confirm(session: AsyncSession, order_id: UUID, confirmation) -> str:
    result = await order_service.confirm_order_payment(session, order_id, confirmation)
    return result.message


# Stripe


async def handle_stripe_webhook(session: AsyncSession, payload: bytes, sig_header: str | None) -> WebhookAck:
    event = stripe_service.construct_event(payload, sig_header)
    event_id = str(stripe_service.obj_get(event, "id") or "").strip()
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
    event_type = str(stripe_service.obj_get(event, "type") or "") or None
    record = await record_webhook_event(
        session,
        provider=PaymentProvider.stripe,
        event_id=event_id,
        event_type=event_type,
        payload_summary=stripe_service.event_payload_summary(event),
    )

    async def _handle() -> str:
        if event_type != "checkout.session.completed":
            return "Event acknowledged"
        checkout = stripe_service.obj_get(stripe_service.obj_get(event, "data"), "object")
        order_id = stripe_service.order_id_from_checkout_session(checkout)
        if order_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order reference missing")
        if stripe_service.obj_get(checkout, "payment_status") != "paid":
            return "Payment not completed"
        return await _confirm(session, order_id, stripe_service.confirmation_from_checkout_session(checkout))

    return await _process_recorded(session, record, _handle)


async def verify_stripe_session(session: AsyncSession, user: User, session_id: str) -> PaymentConfirmationResult:
    checkout = stripe_service.retrieve_checkout_session(session_id)
    order_id = stripe_service.order_id_from_checkout_session(checkout)
    if order_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order reference missing")
    if stripe_service.obj_get(checkout, "payment_status") != "paid":
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment not completed")
    await order_service.get_order_for_user(session, user, order_id)
    return await order_service.confirm_order_payment(
        session, order_id, stripe_service.confirmation_from_checkout_session(checkout)
    )


# Razorpay


async def _order_for_razorpay_payment(session: AsyncSession, entity: RazorpayPaymentEntity) -> UUID | None:
    if isinstance(entity.notes, RazorpayPaymentNotes) and entity.notes.order_id:
        try:
            return UUID(entity.notes.order_id)
        except ValueError:
            pass
    if entity.order_id:
        return await session.scalar(select(Order.id).where(Order.razorpay_order_id == entity.order_id))
    return None


async def handle_razorpay_webhook(
    session: AsyncSession, body: bytes, signature: str | None, event_id_header: str | None = None
) -> WebhookAck:
    if not razorpay_payments.verify_webhook_signature(body, signature):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    try:
        event = RazorpayWebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc

    entity = event.payload.payment.entity if event.payload.payment else None
    event_id = (event_id_header or "").strip() or f"{event.event}:{entity.id if entity else event.created_at}"
    summary: dict[str, Any] = {"event": event.event, "created_at": event.created_at}
    if entity:
        summary["payment"] = {"id": entity.id, "order_id": entity.order_id, "amount": entity.amount, "status": entity.status}
    record = await record_webhook_event(
        session,
        provider=PaymentProvider.razorpay,
        event_id=event_id,
        event_type=event.event,
        payload_summary=summary,
    )

    async def _handle() -> str:
        if event.event != "payment.captured" or entity is None:
            return "Event acknowledged"
        order_id = await _order_for_razorpay_payment(session, entity)
        if order_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order reference missing")
        return await _confirm(session, order_id, razorpay_payments.confirmation_from_payment(entity))

    return await _process_recorded(session, record, _handle)


# Client callbacks


async def _razorpay_callback(session: AsyncSession, user: User, callback: RazorpayCallback) -> PaymentConfirmationResult:
    order = await order_service.get_order_for_user(session, user, callback.order_id)
    if callback.payment_status != "success":
        metrics.record_payment_failure()
        logger.info("razorpay payment not completed", extra={"order_id": str(order.id), "status": callback.payment_status})
        return PaymentConfirmationResult(message="Payment not completed", order_id=order.id)
    if not (callback.razorpay_order_id and callback.razorpay_payment_id and callback.razorpay_signature):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Razorpay payment details")
    if order.razorpay_order_id and order.razorpay_order_id != callback.razorpay_order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Razorpay order mismatch")
    if not razorpay_payments.verify_payment_signature(
        callback.razorpay_order_id, callback.razorpay_payment_id, callback.razorpay_signature
    ):
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payment signature")

    payment = razorpay_payments.fetch_payment(callback.razorpay_payment_id)
    if payment.status not in CAPTURED_RAZORPAY_STATUSES:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment not captured")
    return await order_service.confirm_order_payment(
        session, order.id, razorpay_payments.confirmation_from_payment(payment)
    )


async def handle_payment_callback(
    session: AsyncSession, user: User, callback: RazorpayCallback | StripeCallback
) -> PaymentConfirmationResult:
    if isinstance(callback, RazorpayCallback):
        return await _razorpay_callback(session, user, callback)
    if callback.payment_status != "success" or not callback.session_id:
        await order_service.get_order_for_user(session, user, callback.order_id)
        return PaymentConfirmationResult(message="Payment not completed", order_id=callback.order_id)
    return await verify_stripe_session(session, user, callback.session_id)
