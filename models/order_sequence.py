from sqlalchemy import String, Integer
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class OrderNumberSequence(Base):
    """Per-day counter backing ORD-YYYYMMDD-NNNN order numbers."""

    __tablename__ = "order_number_sequences"

    day: Mapped[str] = mapped_column(String(8), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)
