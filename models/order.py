from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)

    # Customer: a registered user or a guest checkout
    user_id: Mapped[int | None] = mapped_column(nullable=True, index=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # pending, confirmed, processing, shipped, delivered, cancelled, refunded, partially_refunded
    status: Mapped[str] = mapped_column(String(30), default="pending", index=True)

    # Money
    currency: Mapped[str] = mapped_column(String(3), default="AUD")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    coupon_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    coupon_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    # Mirror of the current payment
    payment_status: Mapped[str] = mapped_column(String(30), default="pending")
    payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Shipping
    shipping_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    shipping_tracking_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    shipping_carrier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    estimated_delivery: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Address snapshots taken at checkout
    billing_address: Mapped[dict] = mapped_column(JSON)
    shipping_address: Mapped[dict] = mapped_column(JSON)

    customer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items_count: Mapped[int] = mapped_column(Integer, default=0)
    weight_total: Mapped[Decimal] = mapped_column(Numeric(10, 3), default=0)

    # Lifecycle
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    items = relationship(
        "OrderItem", cascade="all, delete-orphan", back_populates="order", order_by="OrderItem.id"
    )
    payments = relationship(
        "Payment", cascade="all, delete-orphan", back_populates="order", order_by="Payment.id"
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status!r}>"
