from snapcart.db.base import Base  # noqa: F401
from snapcart.models.user import User, UserRole  # noqa: F401
from snapcart.models.catalog import Category, Grocery, GroceryVariant  # noqa: F401
from snapcart.models.cart import Cart, CartItem  # noqa: F401
from snapcart.models.coupon import Coupon, CouponUsage, DiscountType  # noqa: F401
from snapcart.models.order import (  # noqa: F401
    Order,
    OrderItem,
    OrderStatus,
    PaymentDetail,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
)
from snapcart.models.notification import Notification  # noqa: F401
from snapcart.models.webhook import PaymentWebhookEvent  # noqa: F401

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Category",
    "Grocery",
    "GroceryVariant",
    "Cart",
    "CartItem",
    "Coupon",
    "CouponUsage",
    "DiscountType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentDetail",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentStatus",
    "Notification",
    "PaymentWebhookEvent",
]
