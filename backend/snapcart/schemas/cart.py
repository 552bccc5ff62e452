from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from snapcart.schemas.coupon import CouponSnapshot, CouponTerms


class PriceAtAdd(BaseModel):
    mrp: Decimal
    selling: Decimal


class CartTotals(BaseModel):
    subtotal: Decimal
    total_mrp: Decimal
    savings: Decimal
    total_items: int
    delivery_fee: Decimal
    coupon_discount: Decimal
    total: Decimal


class CartItemAdd(BaseModel):
    variant_id: UUID
    quantity: int = Field(default=1, ge=1, le=99)


class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=0, le=99)


class CartItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    variant_id: UUID
    quantity: int
    price_at_add: PriceAtAdd
    grocery_name: str | None = None
    variant_label: str | None = None
    count_in_stock: int | None = None


class CartRead(BaseModel):
    id: UUID | None = None
    items: list[CartItemRead] = []
    coupon: CouponSnapshot | None = None
    coupon_removed: bool = False
    totals: CartTotals


class MergeCartResult(BaseModel):
    merged_lines: int
    skipped_lines: int
    cart: CartRead


class GuestCartLine(BaseModel):
    variant_id: UUID
    quantity: int = Field(ge=1, le=99)
    price_at_add: PriceAtAdd


class GuestCoupon(CouponTerms):
    coupon_id: UUID
    code: str


class GuestCartItemRead(GuestCartLine):
    grocery_name: str | None = None
    variant_label: str | None = None
    count_in_stock: int | None = None


class GuestCartRead(BaseModel):
    items: list[GuestCartItemRead] = []
    cart_count: int = 0
    coupon: GuestCoupon | None = None
    totals: CartTotals


class GuestCartItemAdd(BaseModel):
    variant_id: UUID
    quantity: int = Field(default=1, ge=1, le=99)


class GuestCartItemUpdate(BaseModel):
    variant_id: UUID
    quantity: int = Field(ge=0, le=99)
