"""Payment record: gateway status, retries and refunds.

Every status change on a payment is mirrored onto its order's
``payment_status``/``payment_transaction_id`` in the same transaction.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.db import atomic, get_locked
from core.errors import (
    GatewayError,
    InvalidStateError,
    NotFoundError,
    RefundExceedsAmountError,
    ValidationError,
)
from core.logging import get_logger
from models.order import Order
from models.payment import Payment
from schemas.payment import GatewayResult
from services.gateway import PaymentGateway, transaction_result
from services.identifiers import generate_transaction_id
from services.lifecycle import (
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PARTIALLY_REFUNDED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_TRANSITIONS,
    apply_updates,
    payment_transition,
)
from services.orders import lock_order
from services.retry import can_retry, next_retry_at
from services.totals import money, to_decimal

logger = get_logger(__name__)

# Gateway vocabulary -> payment status
GATEWAY_STATUS_MAP = {
    "success": PAYMENT_COMPLETED,
    "successful": PAYMENT_COMPLETED,
    "completed": PAYMENT_COMPLETED,
    "pending": PAYMENT_PROCESSING,
    "processing": PAYMENT_PROCESSING,
    "ongoing": PAYMENT_PROCESSING,
    "queued": PAYMENT_PROCESSING,
    "failed": PAYMENT_FAILED,
    "abandoned": PAYMENT_FAILED,
    "reversed": PAYMENT_FAILED,
    "cancelled": PAYMENT_CANCELLED,
}

REFUNDABLE_STATUSES = {PAYMENT_COMPLETED, PAYMENT_PARTIALLY_REFUNDED}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def _transaction_exists(db: Session, transaction_id: str) -> bool:
    return db.query(Payment.id).filter(Payment.transaction_id == transaction_id).first() is not None


def _lock_payment_and_order(db: Session, payment_id: int) -> tuple[Payment, Order]:
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    order = lock_order(db, payment.order_id)
    payment = get_locked(db, Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    return payment, order


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    return payment


def get_payment_by_transaction_id(db: Session, transaction_id: str) -> Payment:
    payment = db.query(Payment).filter(Payment.transaction_id == transaction_id).one_or_none()
    if not payment:
        raise NotFoundError("Payment not found", transaction_id=transaction_id)
    return payment


def list_payments(
    db: Session,
    order_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    payment_provider: Optional[str] = None,
) -> List[Payment]:
    query = db.query(Payment)
    if order_id is not None:
        query = query.filter(Payment.order_id == order_id)
    if status:
        query = query.filter(Payment.status == status)
    if user_id is not None:
        query = query.filter(Payment.user_id == user_id)
    if payment_provider:
        query = query.filter(Payment.payment_provider == payment_provider)
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


def list_failed_payments(db: Session, limit: int = 100) -> List[Payment]:
    """Failed payments, most recent failure first."""
    return (
        db.query(Payment)
        .filter(Payment.status == PAYMENT_FAILED)
        .order_by(Payment.failed_at.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )


def get_due_retries(db: Session, now: Optional[datetime] = None, limit: int = 100) -> List[Payment]:
    """Failed payments whose retry time has come and that still have retries left."""
    now = now or datetime.utcnow()
    return (
        db.query(Payment)
        .filter(
            Payment.status == PAYMENT_FAILED,
            Payment.next_retry_at.is_not(None),
            Payment.next_retry_at <= now,
            Payment.retry_count < settings.PAYMENT_MAX_RETRIES,
        )
        .order_by(Payment.next_retry_at.asc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Status plumbing
# ---------------------------------------------------------------------------
def _mirror_onto_order(order: Order, payment: Optional[Payment]) -> None:
    if payment is None:
        order.payment_status = PAYMENT_PENDING
        order.payment_transaction_id = None
        return
    order.payment_status = payment.status
    order.payment_transaction_id = payment.transaction_id


def _set_status(
    order: Order,
    payment: Payment,
    new_status: str,
    gateway_response: Optional[dict] = None,
    error: Optional[str] = None,
    refunded_amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> str:
    old_status = payment.status
    updates = payment_transition(
        payment, new_status, gateway_response=gateway_response, error=error, now=now, refunded_amount=refunded_amount
    )
    apply_updates(payment, updates)
    _mirror_onto_order(order, payment)
    logger.info(
        "payment_status_changed",
        payment_id=payment.id,
        order_id=order.id,
        transaction_id=payment.transaction_id,
        old_status=old_status,
        new_status=new_status,
        amount=str(payment.amount),
        error=error,
    )
    return old_status


def _schedule_retry(payment: Payment, now: Optional[datetime] = None) -> None:
    if can_retry(payment.retry_count or 0):
        payment.next_retry_at = next_retry_at((payment.retry_count or 0) + 1, now)
    else:
        payment.next_retry_at = None
        logger.warning(
            "payment_retries_exhausted",
            payment_id=payment.id,
            order_id=payment.order_id,
            retry_count=payment.retry_count,
        )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
def create_payment(db: Session, data: Dict[str, Any]) -> Payment:
    order = db.get(Order, data.get("order_id"))
    if not order:
        raise NotFoundError("Order not found", order_id=data.get("order_id"))

    amount = money(data["amount"]) if data.get("amount") is not None else money(order.total_amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", order_id=order.id, amount=str(amount))

    with atomic(db):
        transaction_id = data.get("transaction_id")
        if transaction_id:
            if _transaction_exists(db, transaction_id):
                raise ValidationError("Transaction ID already exists", transaction_id=transaction_id)
        else:
            transaction_id = generate_transaction_id(lambda candidate: _transaction_exists(db, candidate))

        payment = Payment(
            order_id=order.id,
            user_id=data.get("user_id") or order.user_id,
            payment_method=data.get("payment_method") or "card",
            payment_provider=data.get("payment_provider") or "paystack",
            transaction_id=transaction_id,
            amount=amount,
            currency=(data.get("currency") or order.currency).upper(),
            status=PAYMENT_PENDING,
            gateway_fee=money(0),
            refunded_amount=money(0),
            retry_count=0,
        )
        order.payments.append(payment)
        db.flush()

    logger.info(
        "payment_created",
        payment_id=payment.id,
        order_id=order.id,
        transaction_id=payment.transaction_id,
        amount=str(payment.amount),
        currency=payment.currency,
    )
    return payment


def update_payment_status(
    db: Session,
    payment_id: int,
    new_status: str,
    gateway_response: Optional[dict] = None,
    error: Optional[str] = None,
) -> Payment:
    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment_id)
        _set_status(order, payment, new_status, gateway_response=gateway_response, error=error)
    return payment


def confirm_payment(db: Session, transaction_id: str, result: GatewayResult) -> Payment:
    """Apply the gateway's answer for ``transaction_id`` to the payment and its order.

    A repeated success for an already completed payment is a no-op, so
    duplicate webhooks are harmless. Failures schedule the next retry.
    """
    payment = get_payment_by_transaction_id(db, transaction_id)
    target = GATEWAY_STATUS_MAP.get((result.status or "").lower(), PAYMENT_FAILED)
    error = result.error
    if target == PAYMENT_FAILED and not error:
        error = f"Gateway reported status: {result.status}"

    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment.id)
        if payment.status == PAYMENT_COMPLETED and target == PAYMENT_COMPLETED:
            logger.info("payment_confirm_duplicate", payment_id=payment.id, transaction_id=transaction_id)
            return payment
        now = datetime.utcnow()
        _set_status(order, payment, target, gateway_response=result.raw or result.model_dump(mode="json"), error=error, now=now)
        if result.fee is not None:
            payment.gateway_fee = money(result.fee)
        if target == PAYMENT_FAILED:
            _schedule_retry(payment, now)
    return payment


def record_gateway_error(db: Session, payment_id: int, exc: GatewayError) -> Payment:
    """Turn a gateway failure into payment state instead of an exception."""
    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment_id)
        logger.warning(
            "payment_gateway_error",
            payment_id=payment.id,
            order_id=order.id,
            transaction_id=payment.transaction_id,
            amount=str(payment.amount),
            status=payment.status,
            error=str(exc),
        )
        if PAYMENT_FAILED not in PAYMENT_TRANSITIONS.get(payment.status, set()):
            return payment
        now = datetime.utcnow()
        _set_status(order, payment, PAYMENT_FAILED, gateway_response=exc.response, error=str(exc), now=now)
        _schedule_retry(payment, now)
    return payment


def initialize_payment(
    db: Session,
    gateway: PaymentGateway,
    order_id: int,
    callback_url: Optional[str] = None,
) -> tuple[Payment, Optional[GatewayResult]]:
    """Create a payment for the order's total and open a gateway transaction for it."""
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    email = order.guest_email or (order.billing_address or {}).get("email")
    if not email:
        raise ValidationError("Order has no e-mail address for the gateway", order_id=order_id)

    payment = create_payment(db, {"order_id": order.id, "payment_provider": gateway.name})
    try:
        result = gateway.initialize(payment, email, callback_url)
    except GatewayError as exc:
        return record_gateway_error(db, payment.id, exc), None

    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment.id)
        _set_status(order, payment, PAYMENT_PROCESSING, gateway_response=result.raw)
    return payment, result


def verify_with_gateway(db: Session, gateway: PaymentGateway, transaction_id: str) -> Payment:
    payment = get_payment_by_transaction_id(db, transaction_id)
    try:
        result = gateway.verify(transaction_id)
    except GatewayError as exc:
        return record_gateway_error(db, payment.id, exc)
    return confirm_payment(db, transaction_id, result)


def apply_paystack_event(db: Session, event: Dict[str, Any]) -> Optional[Payment]:
    """Apply a signature-checked Paystack webhook event.

    Only ``charge.*`` events carry a transaction outcome; anything else
    is logged and ignored.
    """
    name = event.get("event") or ""
    data = event.get("data") or {}
    reference = data.get("reference")
    if not name.startswith("charge.") or not reference:
        logger.info("paystack_event_ignored", paystack_event=name, reference=reference)
        return None
    return confirm_payment(db, reference, transaction_result(data, event, reference))


def refund_payment(db: Session, payment_id: int, amount, reason: Optional[str] = None) -> Payment:
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than 0", payment_id=payment_id)

    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment_id)
        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidStateError(
                "Only completed payments can be refunded", payment_id=payment_id, status=payment.status
            )
        if amount > payment.remaining_amount:
            raise RefundExceedsAmountError(
                "Refund amount exceeds payment amount",
                payment_id=payment_id,
                requested_amount=str(amount),
                remaining_amount=str(payment.remaining_amount),
            )
        refunded = money(to_decimal(payment.refunded_amount) + amount)
        target = PAYMENT_REFUNDED if refunded >= money(payment.amount) else PAYMENT_PARTIALLY_REFUNDED
        _set_status(order, payment, target, refunded_amount=refunded)
        payment.refunded_amount = refunded
        payment.refunded_reason = reason

    logger.info(
        "payment_refunded",
        payment_id=payment.id,
        order_id=payment.order_id,
        transaction_id=payment.transaction_id,
        refund_amount=str(amount),
        total_refunded=str(payment.refunded_amount),
        reason=reason,
    )
    return payment


def retry_payment(db: Session, payment_id: int, now: Optional[datetime] = None) -> Payment:
    """Put a failed payment back to ``pending`` for another attempt.

    The n-th retry is stamped ``next_retry_at = now + n * interval``.
    """
    now = now or datetime.utcnow()
    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment_id)
        if payment.status != PAYMENT_FAILED:
            raise InvalidStateError("Only failed payments can be retried", payment_id=payment_id, status=payment.status)
        if not can_retry(payment.retry_count or 0):
            raise InvalidStateError(
                "Payment has no retries left", payment_id=payment_id, retry_count=payment.retry_count
            )
        payment.retry_count = (payment.retry_count or 0) + 1
        payment.next_retry_at = next_retry_at(payment.retry_count, now)
        _set_status(order, payment, PAYMENT_PENDING, now=now)

    logger.info(
        "payment_retry_scheduled",
        payment_id=payment.id,
        order_id=payment.order_id,
        retry_count=payment.retry_count,
        next_retry_at=payment.next_retry_at.isoformat(),
    )
    return payment


def delete_payment(db: Session, payment_id: int) -> None:
    with atomic(db):
        payment, order = _lock_payment_and_order(db, payment_id)
        if payment.status != PAYMENT_PENDING:
            raise InvalidStateError(
                "Only pending payments can be deleted", payment_id=payment_id, status=payment.status
            )
        order.payments.remove(payment)
        if order.payment_transaction_id == payment.transaction_id:
            remaining = sorted(order.payments, key=lambda p: (p.created_at or datetime.min, p.id or 0))
            _mirror_onto_order(order, remaining[-1] if remaining else None)
    logger.info(
        "payment_deleted",
        payment_id=payment_id,
        order_id=order.id,
        transaction_id=payment.transaction_id,
        order_payment_status=order.payment_status,
    )
