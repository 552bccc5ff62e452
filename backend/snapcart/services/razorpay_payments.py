"""Razorpay gateway: order creation, signature checks and payment lookup."""

import hashlib
import hmac
import logging
from functools import lru_cache
from typing import Any

import razorpay
from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.core.config import settings
from snapcart.models.order import Order, PaymentProvider
from snapcart.schemas.payment import PaymentConfirmation, RazorpayPaymentEntity
from snapcart.services.payments import assert_payable_online
from snapcart.services.pricing import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


def is_razorpay_configured() -> bool:
    return bool((settings.razorpay_key_id or "").strip() and (settings.razorpay_key_secret or "").strip())


@lru_cache
def _client(key_id: str, key_secret: str) -> razorpay.Client:
    return razorpay.Client(auth=(key_id, key_secret))


def get_client() -> razorpay.Client:
    if not is_razorpay_configured():
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Razorpay not configured")
    return _client(settings.razorpay_key_id.strip(), settings.razorpay_key_secret.strip())


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> bool:
    """Check the checkout signature Razorpay hands to the client after payment."""
    secret = (settings.razorpay_key_secret or "").strip()
    if not secret or not razorpay_signature:
        return False
    expected = _hmac_hex(secret, f"{razorpay_order_id}|{razorpay_payment_id}".encode("utf-8"))
    is_valid = hmac.compare_digest(expected, razorpay_signature)
    if not is_valid:
        logger.warning("invalid razorpay payment signature", extra={"razorpay_order_id": razorpay_order_id})
    return is_valid


def verify_webhook_signature(body: bytes, signature: str | None) -> bool:
    secret = (settings.razorpay_webhook_secret or "").strip()
    if not secret or not signature:
        return False
    is_valid = hmac.compare_digest(_hmac_hex(secret, body), signature)
    if not is_valid:
        logger.warning("invalid razorpay webhook signature")
    return is_valid


async def create_razorpay_order(session: AsyncSession, order: Order) -> dict[str, Any]:
    assert_payable_online(order, PaymentProvider.razorpay)
    client = get_client()
    data = {
        "amount": to_minor_units(order.final_total),
        "currency": order.currency,
        "receipt": order.order_number,
        "payment_capture": 1,
        "notes": {"orderId": str(order.id)},
    }
    try:
        created = client.order.create(data=data)
    except razorpay.errors.BadRequestError as exc:
        metrics.record_payment_failure()
        logger.warning("razorpay rejected order creation: %s", exc, extra={"order_id": str(order.id)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request to Razorpay") from exc
    except razorpay.errors.ServerError as exc:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Razorpay server error") from exc

    order.razorpay_order_id = str(created.get("id"))
    await session.commit()
    logger.info(
        "razorpay order created",
        extra={"order_id": str(order.id), "razorpay_order_id": order.razorpay_order_id},
    )
    return {
        "razorpay_order_id": order.razorpay_order_id,
        "amount": int(created.get("amount") or data["amount"]),
        "currency": str(created.get("currency") or order.currency),
        "receipt": str(created.get("receipt") or order.order_number),
        "key_id": settings.razorpay_key_id,
    }


def fetch_payment(payment_id: str) -> RazorpayPaymentEntity:
    client = get_client()
    try:
        raw = client.payment.fetch(payment_id)
    except razorpay.errors.BadRequestError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment not found") from exc
    except razorpay.errors.ServerError as exc:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Razorpay server error") from exc
    return RazorpayPaymentEntity.model_validate(raw)


def confirmation_from_payment(payment: RazorpayPaymentEntity) -> PaymentConfirmation:
    return PaymentConfirmation(
        provider=PaymentProvider.razorpay.value,
        transaction_id=payment.id,
        payment_method=payment.method,
        amount=from_minor_units(payment.amount),
        currency=payment.currency,
        status=payment.status,
        paid_at_epoch=payment.created_at,
    )
