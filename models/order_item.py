from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)

    # Catalogue snapshot; the product itself lives outside this service
    product_id: Mapped[int | None] = mapped_column(nullable=True, index=True)
    product_name: Mapped[str] = mapped_column(String(255))
    product_sku: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    weight: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)

    variant_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    custom_options: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending, confirmed, shipped, delivered, cancelled, refunded
    status: Mapped[str] = mapped_column(String(30), default="pending")

    refunded_quantity: Mapped[int] = mapped_column(Integer, default=0)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="items")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_quantity(self) -> int:
        return (self.quantity or 0) - (self.refunded_quantity or 0)

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.total_price or 0) - Decimal(self.refunded_amount or 0)
