from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, TypedDict

CENT = Decimal("0.01")
GRAM = Decimal("0.001")


class OrderTotals(TypedDict):
    subtotal: Decimal
    items_count: int
    weight_total: Decimal
    refunded_amount: Decimal


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: float | int | str | Decimal | None) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def item_total(unit_price, quantity: int, discount_amount=0, tax_amount=0) -> Decimal:
    """unit_price * quantity - discount + tax"""
    return money(to_decimal(unit_price) * int(quantity) - to_decimal(discount_amount) + to_decimal(tax_amount))


def order_total(subtotal, tax_amount=0, shipping_amount=0, discount_amount=0, coupon_discount=0) -> Decimal:
    """subtotal + tax + shipping - discount - coupon"""
    return money(
        to_decimal(subtotal)
        + to_decimal(tax_amount)
        + to_decimal(shipping_amount)
        - to_decimal(discount_amount)
        - to_decimal(coupon_discount)
    )


def calculate_totals(items: Iterable) -> OrderTotals:
    """Aggregate an order's line items.

    Subtotal is the gross sum of item ``total_price``; refunds are summed
    separately into ``refunded_amount`` and never netted out of the subtotal.
    """
    subtotal = Decimal("0")
    items_count = 0
    weight_total = Decimal("0")
    refunded = Decimal("0")
    for item in items:
        quantity = int(item.quantity or 0)
        subtotal += to_decimal(item.total_price)
        items_count += quantity
        weight_total += to_decimal(item.weight) * quantity
        refunded += to_decimal(item.refunded_amount)
    return {
        "subtotal": money(subtotal),
        "items_count": items_count,
        "weight_total": weight_total.quantize(GRAM, rounding=ROUND_HALF_UP),
        "refunded_amount": money(refunded),
    }
