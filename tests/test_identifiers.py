import re
from datetime import datetime
from decimal import Decimal

from models.order import Order
from models.order_sequence import OrderNumberSequence
from services.identifiers import format_order_number, generate_transaction_id, next_order_number

DAY = datetime(2024, 5, 1, 10, 15, 0)


class TestFormatOrderNumber:
    def test_padded(self):
        assert format_order_number(DAY, 7) == "ORD-20240501-0007"

    def test_widens_past_four_digits(self):
        assert format_order_number(DAY, 12345) == "ORD-20240501-12345"

    def test_prefix(self):
        assert format_order_number(DAY, 1, prefix="WEB") == "WEB-20240501-0001"


class TestNextOrderNumber:
    def test_sequence_per_day(self, db):
        assert next_order_number(db, DAY) == "ORD-20240501-0001"
        assert next_order_number(db, DAY) == "ORD-20240501-0002"
        assert next_order_number(db, datetime(2024, 5, 2, 0, 5)) == "ORD-20240502-0001"
        db.commit()

        row = db.get(OrderNumberSequence, "20240501")
        assert row.last_value == 2

    def test_new_day_seeded_with_existing_orders(self, db):
        db.add(
            Order(
                order_number="LEGACY-1",
                guest_email="old@example.com",
                billing_address={"name": "A"},
                shipping_address={"name": "A"},
                total_amount=Decimal("10.00"),
                created_at=datetime(2024, 5, 1, 8, 0),
            )
        )
        db.commit()

        assert next_order_number(db, DAY) == "ORD-20240501-0002"

    def test_orders_get_distinct_numbers(self, make_order):
        numbers = {make_order().order_number for _ in range(5)}
        assert len(numbers) == 5


class TestGenerateTransactionId:
    def test_format(self):
        txn = generate_transaction_id(lambda candidate: False, now_ms=1714557600000)
        assert re.fullmatch(r"TXN-1714557600000-[0-9A-Z]{11}", txn)

    def test_regenerates_on_collision(self):
        seen = []

        def exists(candidate):
            seen.append(candidate)
            return len(seen) < 3

        txn = generate_transaction_id(exists, now_ms=1)
        assert len(seen) == 3
        assert txn == seen[-1]
