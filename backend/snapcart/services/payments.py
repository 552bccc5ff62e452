from typing import Any, cast
from uuid import UUID

import stripe
from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.core.config import settings
from snapcart.models.order import Order, OrderStatus, PaymentMethod, PaymentProvider, PaymentStatus
from snapcart.schemas.payment import PaymentConfirmation
from snapcart.services.pricing import from_minor_units, to_minor_units

stripe = cast(Any, stripe)

_STRIPE_PLACEHOLDER_SUFFIX = "_placeholder"


def _looks_configured(value: str | None) -> bool:
    cleaned = (value or "").strip()
    if not cleaned:
        return False
    return not cleaned.endswith(_STRIPE_PLACEHOLDER_SUFFIX)


def is_stripe_configured() -> bool:
    return _looks_configured(settings.stripe_secret_key)


def init_stripe() -> None:
    stripe.api_key = (settings.stripe_secret_key or "").strip()


def obj_get(source: Any, key: str) -> Any:
    if source is None:
        return None
    getter = getattr(source, "get", None)
    if callable(getter):
        return getter(key)
    return getattr(source, key, None)


def assert_payable_online(order: Order, provider: PaymentProvider) -> None:
    if order.payment_method != PaymentMethod.online or order.online_payment_type != provider:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order is not payable with this provider")
    if order.payment_status == PaymentStatus.paid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order already paid")
    if order.order_status == OrderStatus.cancelled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order is cancelled")


def checkout_line_items(order: Order) -> list[dict[str, Any]]:
    currency = order.currency.lower()
    line_items: list[dict[str, Any]] = [
        {
            "price_data": {
                "currency": currency,
                "unit_amount": to_minor_units(item.selling_price),
                "product_data": {"name": f"{item.grocery_name} ({item.variant_label})"},
            },
            "quantity": int(item.quantity),
        }
        for item in order.items
    ]
    if order.delivery_fee and order.delivery_fee > 0:
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": to_minor_units(order.delivery_fee),
                    "product_data": {"name": "Delivery fee"},
                },
                "quantity": 1,
            }
        )
    return line_items


def _discounts_param(order: Order) -> list[dict[str, str]] | None:
    discount = to_minor_units(order.coupon_discount or 0)
    if discount <= 0:
        return None
    try:
        coupon_obj = stripe.Coupon.create(
            duration="once",
            amount_off=discount,
            currency=order.currency.lower(),
            metadata={"orderId": str(order.id), "coupon_code": str((order.coupon or {}).get("code") or "")},
        )
    except Exception as exc:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe coupon creation failed") from exc
    coupon_id = obj_get(coupon_obj, "id")
    return [{"coupon": str(coupon_id)}] if coupon_id else None


async def create_checkout_session(session: AsyncSession, order: Order, *, customer_email: str | None) -> dict[str, str]:
    """Create a Stripe-hosted checkout for an unpaid online order and remember its id on the order."""
    if not is_stripe_configured():
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe not configured")
    assert_payable_online(order, PaymentProvider.stripe)
    init_stripe()

    base = settings.frontend_origin.rstrip("/")
    metadata = {"orderId": str(order.id), "orderNumber": order.order_number}
    session_kwargs: dict[str, Any] = {
        "mode": "payment",
        "line_items": checkout_line_items(order),
        "success_url": f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base}/payment/cancel?order_id={order.id}",
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
    }
    if customer_email:
        session_kwargs["customer_email"] = customer_email
    discounts = _discounts_param(order)
    if discounts:
        session_kwargs["discounts"] = discounts

    try:
        session_obj = stripe.checkout.Session.create(**session_kwargs)
    except Exception as exc:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe checkout session creation failed") from exc

    session_id = obj_get(session_obj, "id")
    checkout_url = obj_get(session_obj, "url")
    if not session_id or not checkout_url:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe checkout session missing url")
    order.stripe_checkout_session_id = str(session_id)
    await session.commit()
    return {"session_id": str(session_id), "checkout_url": str(checkout_url)}


def construct_event(payload: bytes, sig_header: str | None) -> Any:
    secret = (settings.stripe_webhook_secret or "").strip()
    if not _looks_configured(secret):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not set")
    init_stripe()
    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret)
    except Exception as exc:  # broad for Stripe signature errors
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc


def event_payload_summary(event: Any) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": str(obj_get(event, "id") or ""),
        "type": str(obj_get(event, "type") or ""),
        "created": obj_get(event, "created"),
    }
    obj = obj_get(obj_get(event, "data"), "object")
    obj_summary: dict[str, Any] = {}
    for key in ("id", "payment_intent", "payment_status", "amount_total", "currency"):
        value = obj_get(obj, key)
        if value is not None:
            obj_summary[key] = value if isinstance(value, (str, int, float, bool)) else str(obj_get(value, "id"))
    if obj_summary:
        summary["data"] = {"object": obj_summary}
    return summary


def order_id_from_checkout_session(session_obj: Any) -> UUID | None:
    raw = obj_get(obj_get(session_obj, "metadata"), "orderId")
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        return None


def confirmation_from_checkout_session(session_obj: Any) -> PaymentConfirmation:
    intent = obj_get(session_obj, "payment_intent")
    intent_id = intent if isinstance(intent, str) else obj_get(intent, "id")
    method_types = obj_get(intent, "payment_method_types") if not isinstance(intent, str) else None
    return PaymentConfirmation(
        provider=PaymentProvider.stripe.value,
        transaction_id=str(intent_id or obj_get(session_obj, "id") or "") or None,
        payment_method=str(method_types[0]) if method_types else "card",
        amount=from_minor_units(obj_get(session_obj, "amount_total")),
        currency=str(obj_get(session_obj, "currency") or settings.currency),
        status=str(obj_get(session_obj, "payment_status") or "paid"),
    )


def retrieve_checkout_session(session_id: str) -> Any:
    if not is_stripe_configured():
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe not configured")
    init_stripe()
    try:
        return stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
    except Exception as exc:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe session lookup failed") from exc
