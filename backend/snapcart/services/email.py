import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from snapcart.core.config import settings
from snapcart.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "emails"
env = Environment(loader=FileSystemLoader(TEMPLATE_PATH), autoescape=select_autoescape(["html", "xml"]))

STATUS_LABELS = {
    OrderStatus.pending: "Order placed",
    OrderStatus.confirmed: "Order confirmed",
    OrderStatus.packed: "Packed",
    OrderStatus.shipped: "Shipped",
    OrderStatus.out_for_delivery: "Out for delivery",
    OrderStatus.delivered: "Delivered",
    OrderStatus.cancelled: "Cancelled",
}


def _build_message(to_email: str, subject: str, text_body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@snapcart.local"
    msg["To"] = to_email
    msg.set_content(text_body)
    return msg


async def send_email(to_email: str, subject: str, text_body: str) -> bool:
    if not settings.smtp_enabled:
        return False
    msg = _build_message(to_email, subject, text_body)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(msg)
        return True
    except Exception as exc:
        logger.warning("Email send failed: %s", exc)
        return False


def render_template(template_name: str, context: dict) -> str:
    return env.get_template(template_name).render(**context)


def _order_context(order: Order) -> dict:
    return {
        "order_number": order.order_number,
        "items": list(order.items or []),
        "sub_total": order.sub_total,
        "delivery_fee": order.delivery_fee,
        "coupon_discount": order.coupon_discount,
        "final_total": order.final_total,
        "currency": order.currency,
        "payment_method": order.payment_method.value,
        "order_url": f"{settings.frontend_origin.rstrip('/')}/orders/{order.id}",
    }


async def send_order_confirmation(to_email: str, order: Order) -> bool:
    subject = f"Order confirmation {order.order_number}"
    return await send_email(to_email, subject, render_template("order_confirmation.txt.j2", _order_context(order)))


async def send_order_status_update(to_email: str, order: Order) -> bool:
    label = STATUS_LABELS.get(order.order_status, order.order_status.value)
    subject = f"Order {order.order_number}: {label}"
    context = _order_context(order) | {"status_label": label}
    return await send_email(to_email, subject, render_template("order_status.txt.j2", context))
