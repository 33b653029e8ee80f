import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.logging import get_logger
from models.order import Order
from models.order_sequence import OrderNumberSequence

logger = get_logger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
_RANDOM_LENGTH = 11


def format_order_number(day: datetime, sequence: int, prefix: str | None = None) -> str:
    return f"{prefix or settings.ORDER_NUMBER_PREFIX}-{day:%Y%m%d}-{sequence:04d}"


def _orders_created_on(db: Session, day: datetime) -> int:
    start = datetime(day.year, day.month, day.day)
    end = start + timedelta(days=1)
    return db.query(func.count(Order.id)).filter(Order.created_at >= start, Order.created_at < end).scalar() or 0


def _lock_sequence(db: Session, key: str) -> OrderNumberSequence | None:
    return (
        db.query(OrderNumberSequence)
        .populate_existing()
        .filter(OrderNumberSequence.day == key)
        .with_for_update()
        .one_or_none()
    )


def _create_sequence_row(db: Session, key: str, seed: int) -> None:
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(OrderNumberSequence).values(day=key, last_value=seed)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["day"]))
        return
    try:
        with db.begin_nested():
            db.add(OrderNumberSequence(day=key, last_value=seed))
    except IntegrityError:
        # Another writer created the row first
        logger.debug("order_sequence_insert_raced", day=key)


def next_order_number(db: Session, now: datetime | None = None) -> str:
    """Reserve the next order number for ``now``'s (UTC) day.

    The counter row is locked and bumped inside the caller's transaction, so
    two checkouts never receive the same sequence. The first order of a day
    creates the row, seeded with orders that already exist for that day.
    """
    now = now or datetime.utcnow()
    key = f"{now:%Y%m%d}"

    row = _lock_sequence(db, key)
    if row is None:
        _create_sequence_row(db, key, seed=_orders_created_on(db, now))
        row = _lock_sequence(db, key)

    row.last_value += 1
    db.flush()
    return format_order_number(now, row.last_value)


def _random_base36(length: int = _RANDOM_LENGTH) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_transaction_id(exists: Callable[[str], bool], now_ms: int | None = None) -> str:
    """TXN-<epoch millis>-<random base36>, upper-cased.

    ``exists`` is consulted for every candidate; a collision draws a new one.
    """
    while True:
        timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
        candidate = f"TXN-{timestamp}-{_random_base36()}".upper()
        if not exists(candidate):
            return candidate
        logger.warning("transaction_id_collision", transaction_id=candidate)
