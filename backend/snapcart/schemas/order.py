from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from snapcart.models.order import OrderStatus, PaymentMethod, PaymentProvider, PaymentStatus
from snapcart.schemas.coupon import CouponSnapshot


class GeoPoint(BaseModel):
    lat: float
    lng: float


class DeliveryAddress(BaseModel):
    full_name: str = Field(min_length=1, max_length=120)
    mobile: str = Field(min_length=6, max_length=20)
    city: str = Field(min_length=1, max_length=80)
    state: str = Field(min_length=1, max_length=80)
    pincode: str = Field(min_length=4, max_length=12)
    full_address: str = Field(min_length=1, max_length=500)
    location: GeoPoint | None = None


class OrderCreate(BaseModel):
    payment_method: PaymentMethod
    online_payment_type: PaymentProvider | None = None
    delivery_address: DeliveryAddress

    @model_validator(mode="after")
    def _online_needs_provider(self) -> "OrderCreate":
        if self.payment_method == PaymentMethod.online and self.online_payment_type is None:
            raise ValueError("online_payment_type is required for online payments")
        if self.payment_method == PaymentMethod.cod:
            self.online_payment_type = None
        return self


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    grocery_id: UUID
    grocery_name: str
    variant_id: UUID
    variant_label: str
    variant_unit: str
    variant_value: Decimal
    mrp_price: Decimal
    selling_price: Decimal
    quantity: int


class PaymentDetailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: PaymentProvider
    transaction_id: str | None = None
    payment_method: str | None = None
    amount: Decimal
    currency: str
    status: str
    paid_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    order_number: str
    sub_total: Decimal
    total_mrp: Decimal
    savings: Decimal
    delivery_fee: Decimal
    coupon_discount: Decimal
    final_total: Decimal
    coupon: CouponSnapshot | None = None
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod
    online_payment_type: PaymentProvider | None = None
    payment_status: PaymentStatus
    order_status: OrderStatus
    currency: str
    confirmed_at: datetime | None = None
    packed_at: datetime | None = None
    shipped_at: datetime | None = None
    out_for_delivery_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    items: list[OrderItemRead] = []
    payments: list[PaymentDetailRead] = []


class OrderCreateResponse(BaseModel):
    order_id: UUID
    order_number: str
    payment_required: bool
    order: OrderRead


class OrderStatusUpdate(BaseModel):
    order_status: str = Field(min_length=1, max_length=30)


class OrderActionResult(BaseModel):
    message: str
    order_id: UUID
    changed: bool


class TimelineEntry(BaseModel):
    status: OrderStatus
    label: str
    time: datetime | None = None
    completed: bool


class OrderTimeline(BaseModel):
    order_status: OrderStatus
    timeline: list[TimelineEntry]
