from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from snapcart.core.config import settings

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def whole_units(value: Decimal) -> Decimal:
    """Round to a whole currency unit for display."""
    return Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def to_minor_units(value: Decimal) -> int:
    return int((Decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | None) -> Decimal:
    return quantize_money(Decimal(int(value or 0)) / 100)


def delivery_fee_for(subtotal: Decimal) -> Decimal:
    if subtotal <= 0 or subtotal >= settings.free_delivery_threshold:
        return ZERO
    return quantize_money(settings.delivery_fee)


@dataclass(frozen=True)
class PricedLine:
    quantity: int
    mrp: Decimal
    selling: Decimal


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    total_mrp: Decimal
    savings: Decimal
    total_items: int
    delivery_fee: Decimal
    coupon_discount: Decimal
    total: Decimal


def line_subtotal(lines: Iterable[PricedLine]) -> Decimal:
    return quantize_money(sum((Decimal(line.selling) * line.quantity for line in lines), ZERO))


def compute_breakdown(lines: Iterable[PricedLine], coupon_discount: Decimal = ZERO) -> PricingBreakdown:
    lines = list(lines)
    subtotal = line_subtotal(lines)
    total_mrp = quantize_money(sum((Decimal(line.mrp) * line.quantity for line in lines), ZERO))
    fee = delivery_fee_for(subtotal)
    discount = quantize_money(coupon_discount)
    total = max(subtotal + fee - discount, ZERO)
    return PricingBreakdown(
        subtotal=subtotal,
        total_mrp=total_mrp,
        savings=quantize_money(total_mrp - subtotal),
        total_items=sum(line.quantity for line in lines),
        delivery_fee=fee,
        coupon_discount=discount,
        total=quantize_money(total),
    )
