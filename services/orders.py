"""Order aggregate and order-item ledger.

Every public function is one unit of work: rows are locked, the mutation
and the owning order's total recalculation happen together, and the
session is committed (or rolled back) before returning.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.db import atomic, get_locked
from core.errors import (
    InvalidStateError,
    NotFoundError,
    RefundExceedsAmountError,
    RefundExceedsQuantityError,
    ValidationError,
)
from core.logging import get_logger
from models.order import Order
from models.order_item import OrderItem
from services.identifiers import next_order_number
from services.lifecycle import (
    ITEM_CANCELLED,
    ITEM_PENDING,
    ITEM_REFUNDED,
    ORDER_PENDING,
    apply_updates,
    item_transition,
    order_transition,
)
from services.totals import calculate_totals, item_total, money, order_total, to_decimal

logger = get_logger(__name__)

ORDER_MONEY_FIELDS = ("subtotal", "tax_amount", "shipping_amount", "discount_amount", "coupon_discount")
ITEM_MONEY_FIELDS = ("unit_price", "discount_amount", "tax_amount")
ITEM_PRICED_FIELDS = ("unit_price", "quantity", "discount_amount", "tax_amount")

ORDER_EDITABLE_FIELDS = (
    "tax_amount",
    "shipping_amount",
    "discount_amount",
    "coupon_code",
    "coupon_discount",
    "shipping_method",
    "shipping_tracking_number",
    "shipping_carrier",
    "estimated_delivery",
    "customer_notes",
)
ITEM_EDITABLE_FIELDS = ITEM_PRICED_FIELDS + ("weight", "notes")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------
def _require_non_negative(data: Dict[str, Any], fields: Iterable[str], **context: Any) -> None:
    for field in fields:
        value = data.get(field)
        if value is not None and to_decimal(value) < 0:
            raise ValidationError(f"{field} cannot be negative", field=field, value=str(value), **context)


def _validate_item_data(data: Dict[str, Any], partial: bool = False) -> None:
    if not partial:
        if not data.get("product_name"):
            raise ValidationError("product_name is required")
        if data.get("unit_price") is None:
            raise ValidationError("unit_price is required", product_name=data.get("product_name"))
    quantity = data.get("quantity", None if partial else 1)
    if quantity is not None and int(quantity) < 1:
        raise ValidationError("quantity must be at least 1", quantity=quantity)
    _require_non_negative(data, ITEM_MONEY_FIELDS + ("weight",))


def _order_total_for(order: Order) -> Decimal:
    total = order_total(
        order.subtotal,
        order.tax_amount,
        order.shipping_amount,
        order.discount_amount,
        order.coupon_discount,
    )
    if total < 0:
        raise ValidationError("Order total cannot be negative", order_id=order.id, total_amount=str(total))
    return total


def _item_total_for(item: OrderItem) -> Decimal:
    total = item_total(item.unit_price, item.quantity, item.discount_amount, item.tax_amount)
    if total < 0:
        raise ValidationError("Item total cannot be negative", item_id=item.id, total_price=str(total))
    return total


def _build_item(data: Dict[str, Any]) -> OrderItem:
    item = OrderItem(
        product_id=data.get("product_id"),
        product_name=data["product_name"],
        product_sku=data.get("product_sku"),
        quantity=int(data.get("quantity") or 1),
        unit_price=money(data["unit_price"]),
        discount_amount=money(data.get("discount_amount")),
        tax_amount=money(data.get("tax_amount")),
        weight=to_decimal(data["weight"]) if data.get("weight") is not None else None,
        variant_data=data.get("variant_data"),
        custom_options=data.get("custom_options"),
        notes=data.get("notes"),
        status=ITEM_PENDING,
        refunded_quantity=0,
        refunded_amount=money(0),
    )
    item.total_price = _item_total_for(item)
    return item


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def lock_order(db: Session, order_id: int) -> Order:
    order = get_locked(db, Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    return order


def _lock_item_and_order(db: Session, item_id: int) -> tuple[OrderItem, Order]:
    # Lock order first, then item: the same order every mutation takes
    item = db.get(OrderItem, item_id)
    if not item:
        raise NotFoundError("Order item not found", item_id=item_id)
    order = lock_order(db, item.order_id)
    item = get_locked(db, OrderItem, item_id)
    if not item:
        raise NotFoundError("Order item not found", item_id=item_id)
    return item, order


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = db.query(Order).filter(Order.order_number == order_number).one_or_none()
    if not order:
        raise NotFoundError("Order not found", order_number=order_number)
    return order


def get_order_for_customer(db: Session, order_number: str, email: str) -> Order:
    """Customer-facing lookup; the e-mail on the order must match.

    A wrong e-mail looks exactly like an unknown order number.
    """
    order = db.query(Order).filter(Order.order_number == order_number).one_or_none()
    if not order:
        raise NotFoundError("Order not found", order_number=order_number)
    given = (email or "").strip().lower()
    known = {
        address.strip().lower()
        for address in (order.guest_email, (order.billing_address or {}).get("email"))
        if address
    }
    if not given or given not in known:
        logger.warning("order_lookup_email_mismatch", order_id=order.id, order_number=order_number)
        raise NotFoundError("Order not found", order_number=order_number)
    return order


def get_order_item(db: Session, item_id: int) -> OrderItem:
    item = db.get(OrderItem, item_id)
    if not item:
        raise NotFoundError("Order item not found", item_id=item_id)
    return item


def list_orders(
    db: Session,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    guest_email: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Order]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if guest_email:
        query = query.filter(Order.guest_email == guest_email.lower())
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()


def list_order_items(db: Session, order_id: int) -> List[OrderItem]:
    get_order(db, order_id)
    return db.query(OrderItem).filter(OrderItem.order_id == order_id).order_by(OrderItem.id).all()


def list_refunded_items(db: Session) -> List[OrderItem]:
    return (
        db.query(OrderItem)
        .filter(OrderItem.refunded_quantity > 0)
        .order_by(OrderItem.refunded_at.desc())
        .all()
    )


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------
def _recalculate(db: Session, order: Order) -> Order:
    db.flush()
    items = db.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id).all()
    totals = calculate_totals(items)
    order.subtotal = totals["subtotal"]
    order.items_count = totals["items_count"]
    order.weight_total = totals["weight_total"]
    order.refunded_amount = totals["refunded_amount"]
    order.total_amount = _order_total_for(order)
    return order


def recalculate_totals(db: Session, order_id: int) -> Order:
    with atomic(db):
        order = lock_order(db, order_id)
        _recalculate(db, order)
    logger.debug(
        "order_totals_recalculated",
        order_id=order.id,
        subtotal=str(order.subtotal),
        total_amount=str(order.total_amount),
    )
    return order


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
def create_order(db: Session, data: Dict[str, Any], now: Optional[datetime] = None) -> Order:
    items_data = data.get("items") or []
    _require_non_negative(data, ORDER_MONEY_FIELDS + ("total_amount",))
    if data.get("user_id") is None and not data.get("guest_email"):
        raise ValidationError("Order needs a user_id or a guest_email")
    if not data.get("billing_address") or not data.get("shipping_address"):
        raise ValidationError("Billing and shipping addresses are required")
    for item_data in items_data:
        _validate_item_data(item_data)

    order = Order(
        user_id=data.get("user_id"),
        guest_email=data["guest_email"].lower() if data.get("guest_email") else None,
        status=ORDER_PENDING,
        currency=(data.get("currency") or settings.DEFAULT_CURRENCY).upper(),
        subtotal=money(data.get("subtotal")),
        tax_amount=money(data.get("tax_amount")),
        shipping_amount=money(data.get("shipping_amount")),
        discount_amount=money(data.get("discount_amount")),
        coupon_code=data.get("coupon_code"),
        coupon_discount=money(data.get("coupon_discount")),
        refunded_amount=money(0),
        payment_status="pending",
        payment_method=data.get("payment_method"),
        shipping_method=data.get("shipping_method"),
        billing_address=dict(data["billing_address"]),
        shipping_address=dict(data["shipping_address"]),
        customer_notes=data.get("customer_notes"),
        items_count=0,
        weight_total=Decimal("0"),
    )
    if now is not None:
        order.created_at = now

    if items_data:
        order.items = [_build_item(item_data) for item_data in items_data]
        totals = calculate_totals(order.items)
        order.subtotal = totals["subtotal"]
        order.items_count = totals["items_count"]
        order.weight_total = totals["weight_total"]

    total = _order_total_for(order)
    supplied = data.get("total_amount")
    if supplied is not None and money(supplied) != total:
        raise ValidationError(
            "total_amount does not match subtotal + tax + shipping - discounts",
            total_amount=str(supplied),
            expected=str(total),
        )
    order.total_amount = total

    with atomic(db):
        if data.get("order_number"):
            if db.query(Order.id).filter(Order.order_number == data["order_number"]).first():
                raise ValidationError("Order number already exists", order_number=data["order_number"])
            order.order_number = data["order_number"]
        else:
            order.order_number = next_order_number(db, now)
        db.add(order)
        db.flush()

    logger.info(
        "order_created",
        order_id=order.id,
        order_number=order.order_number,
        items_count=order.items_count,
        total_amount=str(order.total_amount),
        currency=order.currency,
    )
    return order


def update_order(db: Session, order_id: int, data: Dict[str, Any]) -> Order:
    for field in ("billing_address", "shipping_address"):
        if data.get(field) is not None:
            raise ValidationError(f"{field} is fixed at checkout and cannot be changed", order_id=order_id)
    unknown = set(data) - set(ORDER_EDITABLE_FIELDS) - {"billing_address", "shipping_address"}
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}", order_id=order_id)
    _require_non_negative(data, ORDER_MONEY_FIELDS, order_id=order_id)

    with atomic(db):
        order = lock_order(db, order_id)
        for field in ORDER_EDITABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field in ORDER_MONEY_FIELDS:
                value = money(value)
            setattr(order, field, value)
        order.total_amount = _order_total_for(order)

    logger.info("order_updated", order_id=order.id, fields=sorted(data), total_amount=str(order.total_amount))
    return order


def update_order_status(db: Session, order_id: int, new_status: str, notes: Optional[str] = None) -> Order:
    with atomic(db):
        order = lock_order(db, order_id)
        old_status = order.status
        apply_updates(order, order_transition(order, new_status, notes))

    logger.info(
        "order_status_changed",
        order_id=order.id,
        order_number=order.order_number,
        old_status=old_status,
        new_status=new_status,
        notes=notes,
    )
    return order


def delete_order(db: Session, order_id: int) -> None:
    with atomic(db):
        order = lock_order(db, order_id)
        if order.status != ORDER_PENDING:
            raise InvalidStateError(
                "Only pending orders can be deleted", order_id=order_id, status=order.status
            )
        db.delete(order)
    logger.info("order_deleted", order_id=order_id, order_number=order.order_number)


# ---------------------------------------------------------------------------
# Order items
# ---------------------------------------------------------------------------
def add_order_item(db: Session, order_id: int, data: Dict[str, Any]) -> OrderItem:
    _validate_item_data(data)
    with atomic(db):
        order = lock_order(db, order_id)
        if order.status != ORDER_PENDING:
            raise InvalidStateError(
                "Items can only be added to pending orders", order_id=order_id, status=order.status
            )
        item = _build_item(data)
        order.items.append(item)
        _recalculate(db, order)

    logger.info(
        "order_item_added",
        order_id=order.id,
        item_id=item.id,
        quantity=item.quantity,
        total_price=str(item.total_price),
    )
    return item


def update_order_item(db: Session, item_id: int, data: Dict[str, Any]) -> OrderItem:
    unknown = set(data) - set(ITEM_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}", item_id=item_id)
    _validate_item_data(data, partial=True)

    with atomic(db):
        item, order = _lock_item_and_order(db, item_id)
        if item.status != ITEM_PENDING:
            raise InvalidStateError("Only pending order items can be changed", item_id=item_id, status=item.status)
        changes: Dict[str, Any] = {}
        for field in ITEM_EDITABLE_FIELDS:
            if field not in data or (data[field] is None and field in ITEM_PRICED_FIELDS):
                continue
            value = data[field]
            if field in ITEM_MONEY_FIELDS:
                value = money(value)
            elif field == "quantity":
                value = int(value)
            elif field == "weight" and value is not None:
                value = to_decimal(value)
            changes[field] = value

        quantity = changes.get("quantity", item.quantity)
        total_price = item.total_price
        if any(field in changes for field in ITEM_PRICED_FIELDS):
            total_price = item_total(
                changes.get("unit_price", item.unit_price),
                quantity,
                changes.get("discount_amount", item.discount_amount),
                changes.get("tax_amount", item.tax_amount),
            )
            if total_price < 0:
                raise ValidationError("Item total cannot be negative", item_id=item_id, total_price=str(total_price))
        # Already refunded units and money stay covered by the edited line
        if quantity < (item.refunded_quantity or 0):
            raise ValidationError(
                "Quantity cannot drop below the refunded quantity",
                item_id=item_id,
                quantity=quantity,
                refunded_quantity=item.refunded_quantity,
            )
        if total_price < to_decimal(item.refunded_amount):
            raise ValidationError(
                "Item total cannot drop below the refunded amount",
                item_id=item_id,
                total_price=str(total_price),
                refunded_amount=str(item.refunded_amount),
            )

        apply_updates(item, changes)
        item.total_price = total_price
        _recalculate(db, order)

    logger.info("order_item_updated", order_id=order.id, item_id=item.id, total_price=str(item.total_price))
    return item


def update_order_item_status(db: Session, item_id: int, new_status: str, notes: Optional[str] = None) -> OrderItem:
    with atomic(db):
        item, order = _lock_item_and_order(db, item_id)
        old_status = item.status
        apply_updates(item, item_transition(item, new_status, notes))
        _recalculate(db, order)

    logger.info(
        "order_item_status_changed",
        order_id=order.id,
        item_id=item.id,
        product_id=item.product_id,
        old_status=old_status,
        new_status=new_status,
        notes=notes,
    )
    return item


def refund_order_item(
    db: Session,
    item_id: int,
    quantity: int,
    amount,
    reason: Optional[str] = None,
) -> OrderItem:
    """Refund part or all of a line item.

    Both ceilings are checked before anything changes. When the whole
    quantity has been refunded the item moves to ``refunded``. The owning
    order is recalculated in the same transaction.
    """
    quantity = int(quantity)
    amount = money(amount)
    if quantity < 0 or amount < 0:
        raise ValidationError("Refund quantity and amount cannot be negative", item_id=item_id)
    if quantity == 0 and amount == 0:
        raise ValidationError("Refund needs a quantity or an amount", item_id=item_id)

    with atomic(db):
        item, order = _lock_item_and_order(db, item_id)
        if item.status == ITEM_CANCELLED:
            raise InvalidStateError("Cancelled items cannot be refunded", item_id=item_id, status=item.status)
        if quantity > item.remaining_quantity:
            raise RefundExceedsQuantityError(
                "Refund quantity exceeds available quantity",
                item_id=item_id,
                requested_quantity=quantity,
                remaining_quantity=item.remaining_quantity,
            )
        if amount > item.remaining_amount:
            raise RefundExceedsAmountError(
                "Refund amount exceeds item total",
                item_id=item_id,
                requested_amount=str(amount),
                remaining_amount=str(item.remaining_amount),
            )

        now = datetime.utcnow()
        item.refunded_quantity = (item.refunded_quantity or 0) + quantity
        item.refunded_amount = money(to_decimal(item.refunded_amount) + amount)
        item.refunded_at = now
        item.refunded_reason = reason
        if item.refunded_quantity == item.quantity and item.status != ITEM_REFUNDED:
            apply_updates(item, item_transition(item, ITEM_REFUNDED, reason, now))
        _recalculate(db, order)

    logger.info(
        "order_item_refunded",
        order_id=order.id,
        item_id=item.id,
        refund_quantity=quantity,
        refund_amount=str(amount),
        refunded_quantity=item.refunded_quantity,
        refunded_amount=str(item.refunded_amount),
        status=item.status,
        reason=reason,
    )
    return item


def delete_order_item(db: Session, item_id: int) -> Order:
    with atomic(db):
        item, order = _lock_item_and_order(db, item_id)
        if item.status != ITEM_PENDING:
            raise InvalidStateError("Only pending order items can be deleted", item_id=item_id, status=item.status)
        order.items.remove(item)
        _recalculate(db, order)

    logger.info("order_item_deleted", order_id=order.id, item_id=item_id, subtotal=str(order.subtotal))
    return order
