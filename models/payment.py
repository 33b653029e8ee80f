from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True, index=True)

    payment_method: Mapped[str] = mapped_column(String(100), default="card")
    payment_provider: Mapped[str] = mapped_column(String(100), default="paystack")
    transaction_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="AUD")
    # pending, processing, completed, failed, cancelled, refunded, partially_refunded
    status: Mapped[str] = mapped_column(String(30), default="pending", index=True)

    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    gateway_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="payments")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.amount or 0) - Decimal(self.refunded_amount or 0)
