from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from snapcart.models.coupon import DiscountType


class CouponTerms(BaseModel):
    """The discount rule a shopper was shown."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_cart_value: Decimal | None = None
    max_discount_amount: Decimal | None = None


class CouponSnapshot(CouponTerms):
    """Coupon terms frozen onto a cart or order, plus the discount computed when frozen."""

    coupon_id: UUID
    code: str
    discount_amount: Decimal = Decimal("0")


class ApplyCouponRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)


class CouponCreate(BaseModel):
    code: str = Field(min_length=2, max_length=40)
    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    min_cart_value: Decimal | None = Field(default=None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: int | None = Field(default=None, ge=1)
    usage_per_user: int | None = Field(default=None, ge=1)
    applicable_category_ids: list[UUID] | None = None
    applicable_product_ids: list[UUID] | None = None
    event_tag: str | None = Field(default=None, max_length=60)

    @model_validator(mode="after")
    def _check_percentage(self) -> "CouponCreate":
        if self.discount_type == DiscountType.percentage and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        return self


class CouponUpdate(BaseModel):
    discount_value: Decimal | None = Field(default=None, gt=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    min_cart_value: Decimal | None = Field(default=None, ge=0)
    start_date: datetime | None = None
    end_date: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    usage_per_user: int | None = Field(default=None, ge=1)
    applicable_category_ids: list[UUID] | None = None
    applicable_product_ids: list[UUID] | None = None
    event_tag: str | None = Field(default=None, max_length=60)
    is_active: bool | None = None


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_cart_value: Decimal | None = None
    start_date: datetime
    end_date: datetime
    usage_limit: int | None = None
    usage_per_user: int | None = None
    usage_count: int
    applicable_category_ids: list[UUID] | None = None
    applicable_product_ids: list[UUID] | None = None
    event_tag: str | None = None
    is_active: bool


class AvailableCouponsRequest(BaseModel):
    cart_total: Decimal | None = Field(default=None, ge=0)
    category_ids: list[UUID] = []
    product_ids: list[UUID] = []


class AvailableCouponRead(BaseModel):
    id: UUID
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_cart_value: Decimal
    end_date: datetime
    event_tag: str | None = None
    description: str
    days_left: int
