"""State machines for orders, order items and payments.

Each ``*_transition`` function validates the move and returns every field
that changes with it (the status plus derived timestamps, reasons and
notes). Callers apply the result with :func:`apply_updates` inside their
transaction; nothing here touches the database.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from core.errors import InvalidStateError, ValidationError

# Orders
ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"
ORDER_PARTIALLY_REFUNDED = "partially_refunded"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    ORDER_PARTIALLY_REFUNDED,
)

_ORDER_SIDE_BRANCHES = {ORDER_CANCELLED, ORDER_REFUNDED, ORDER_PARTIALLY_REFUNDED}

ORDER_TRANSITIONS: Dict[str, set] = {
    ORDER_PENDING: {ORDER_CONFIRMED} | _ORDER_SIDE_BRANCHES,
    ORDER_CONFIRMED: {ORDER_PROCESSING} | _ORDER_SIDE_BRANCHES,
    ORDER_PROCESSING: {ORDER_SHIPPED} | _ORDER_SIDE_BRANCHES,
    ORDER_SHIPPED: {ORDER_DELIVERED} | _ORDER_SIDE_BRANCHES,
    ORDER_PARTIALLY_REFUNDED: {ORDER_PARTIALLY_REFUNDED, ORDER_REFUNDED, ORDER_CANCELLED},
    ORDER_DELIVERED: set(),  # Terminal
    ORDER_CANCELLED: set(),  # Terminal
    ORDER_REFUNDED: set(),  # Terminal
}

# Order items
ITEM_PENDING = "pending"
ITEM_CONFIRMED = "confirmed"
ITEM_SHIPPED = "shipped"
ITEM_DELIVERED = "delivered"
ITEM_CANCELLED = "cancelled"
ITEM_REFUNDED = "refunded"

ITEM_STATUSES = (ITEM_PENDING, ITEM_CONFIRMED, ITEM_SHIPPED, ITEM_DELIVERED, ITEM_CANCELLED, ITEM_REFUNDED)

ITEM_TRANSITIONS: Dict[str, set] = {
    ITEM_PENDING: {ITEM_CONFIRMED, ITEM_CANCELLED, ITEM_REFUNDED},
    ITEM_CONFIRMED: {ITEM_SHIPPED, ITEM_CANCELLED, ITEM_REFUNDED},
    ITEM_SHIPPED: {ITEM_DELIVERED, ITEM_REFUNDED},
    ITEM_DELIVERED: {ITEM_REFUNDED},
    ITEM_CANCELLED: set(),
    ITEM_REFUNDED: set(),
}

# Payments
PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"
PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_REFUNDED,
    PAYMENT_PARTIALLY_REFUNDED,
)

PAYMENT_REFUND_STATUSES = {PAYMENT_REFUNDED, PAYMENT_PARTIALLY_REFUNDED}

PAYMENT_TRANSITIONS: Dict[str, set] = {
    PAYMENT_PENDING: {PAYMENT_PROCESSING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED},
    PAYMENT_PROCESSING: {PAYMENT_PROCESSING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED},
    # A failed payment only comes back through retry (-> pending) or a late gateway answer
    PAYMENT_FAILED: {PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED},
    PAYMENT_COMPLETED: PAYMENT_REFUND_STATUSES,
    PAYMENT_PARTIALLY_REFUNDED: PAYMENT_REFUND_STATUSES,
    PAYMENT_REFUNDED: set(),
    PAYMENT_CANCELLED: set(),
}


def _check(kind: str, graph: Dict[str, set], known: tuple, current: str, target: str, **context: Any) -> None:
    if target not in known:
        raise ValidationError(f"Unknown {kind} status: {target}", status=target, **context)
    if target not in graph.get(current, set()):
        raise InvalidStateError(
            f"Cannot move {kind} from {current} to {target}",
            current_status=current,
            new_status=target,
            **context,
        )


def append_note(existing: Optional[str], notes: str, now: datetime) -> str:
    line = f"{now.isoformat()}: {notes}"
    return f"{existing}\n{line}" if existing else line


def order_transition(order, new_status: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    _check("order", ORDER_TRANSITIONS, ORDER_STATUSES, order.status, new_status, order_id=order.id)

    updates: Dict[str, Any] = {"status": new_status}
    if new_status == ORDER_SHIPPED:
        updates["shipped_at"] = now
    elif new_status == ORDER_DELIVERED:
        updates["delivered_at"] = now
    elif new_status == ORDER_CANCELLED:
        updates["cancelled_at"] = now
        if notes:
            updates["cancelled_reason"] = notes
    elif new_status in (ORDER_REFUNDED, ORDER_PARTIALLY_REFUNDED):
        updates["refunded_at"] = now
        if notes:
            updates["refunded_reason"] = notes

    if notes:
        updates["admin_notes"] = append_note(order.admin_notes, notes, now)
    return updates


def item_transition(item, new_status: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    _check("order item", ITEM_TRANSITIONS, ITEM_STATUSES, item.status, new_status, item_id=item.id)
    if new_status == ITEM_REFUNDED and (item.refunded_quantity or 0) != item.quantity:
        raise InvalidStateError(
            "Order item can only be refunded once its whole quantity is refunded",
            item_id=item.id, quantity=item.quantity, refunded_quantity=item.refunded_quantity,
        )

    updates: Dict[str, Any] = {"status": new_status}
    if new_status == ITEM_REFUNDED:
        updates["refunded_at"] = now
        if notes:
            updates["refunded_reason"] = notes
    elif notes:
        updates["notes"] = append_note(item.notes, notes, now)
    return updates


def payment_transition(
    payment,
    new_status: str,
    gateway_response: Optional[dict] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
    refunded_amount: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """Field updates for moving ``payment`` to ``new_status``.

    ``refunded_amount`` is the balance the payment will carry after the move
    (defaults to the current one); refund states must agree with it.
    """
    now = now or datetime.utcnow()
    _check("payment", PAYMENT_TRANSITIONS, PAYMENT_STATUSES, payment.status, new_status, payment_id=payment.id)

    refunded = Decimal(payment.refunded_amount or 0) if refunded_amount is None else refunded_amount
    amount = Decimal(payment.amount or 0)
    if new_status == PAYMENT_REFUNDED and refunded != amount:
        raise InvalidStateError(
            "Payment can only be refunded once the full amount is refunded",
            payment_id=payment.id, amount=str(amount), refunded_amount=str(refunded),
        )
    if new_status == PAYMENT_PARTIALLY_REFUNDED and not (0 < refunded < amount):
        raise InvalidStateError(
            "Partial refund status requires a refunded balance below the payment amount",
            payment_id=payment.id, amount=str(amount), refunded_amount=str(refunded),
        )

    updates: Dict[str, Any] = {"status": new_status}
    if new_status == PAYMENT_COMPLETED:
        updates["processed_at"] = now
    elif new_status == PAYMENT_FAILED:
        updates["failed_at"] = now
        if error:
            updates["gateway_error"] = error
    elif new_status in PAYMENT_REFUND_STATUSES:
        updates["refunded_at"] = now

    if gateway_response is not None:
        updates["gateway_response"] = gateway_response
    return updates


def apply_updates(entity, updates: Dict[str, Any]) -> None:
    for field, value in updates.items():
        setattr(entity, field, value)
