from contextlib import contextmanager
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from core.errors import InvalidStateError
from services import payments as payment_service
from tasks.payment_tasks import retry_due_payments


@pytest.fixture
def task_db(db):
    """Route the task's sessions to the test database."""

    @contextmanager
    def _session():
        yield db

    with patch("tasks.payment_tasks.db_session", _session):
        yield db


def _failed_payment(db, order, minutes_ago):
    payment = payment_service.create_payment(db, {"order_id": order.id})
    payment_service.update_payment_status(db, payment.id, "failed", error="Timeout")
    payment.next_retry_at = datetime.utcnow() - timedelta(minutes=minutes_ago)
    db.commit()
    return payment


class TestRetryDuePayments:
    """Celery beat job re-attempting failed payments"""

    def test_due_payment_retried_and_verified(self, task_db, make_order, gateway):
        order = make_order()
        due = _failed_payment(task_db, order, minutes_ago=1)
        not_yet = _failed_payment(task_db, order, minutes_ago=-30)

        with patch("tasks.payment_tasks.get_gateway", return_value=gateway):
            result = retry_due_payments()

        assert result == {"status": "ok", "retried": 1, "outcomes": {due.transaction_id: "completed"}}
        assert gateway.verified == [due.transaction_id]

        due = payment_service.get_payment(task_db, due.id)
        assert due.status == "completed"
        assert due.retry_count == 1
        assert payment_service.get_payment(task_db, not_yet.id).status == "failed"

    def test_gateway_still_failing(self, task_db, make_order, failing_gateway):
        order = make_order()
        due = _failed_payment(task_db, order, minutes_ago=1)

        with patch("tasks.payment_tasks.get_gateway", return_value=failing_gateway):
            result = retry_due_payments()

        assert result["outcomes"] == {due.transaction_id: "failed"}
        due = payment_service.get_payment(task_db, due.id)
        assert due.retry_count == 1
        # Next attempt waits two intervals
        assert due.next_retry_at - due.failed_at == timedelta(minutes=10)

    def test_one_bad_payment_does_not_stop_the_batch(self, task_db, make_order, gateway):
        order = make_order()
        first = _failed_payment(task_db, order, minutes_ago=2)
        second = _failed_payment(task_db, order, minutes_ago=1)
        real_retry = payment_service.retry_payment

        def flaky_retry(db, payment_id, now=None):
            if payment_id == first.id:
                raise InvalidStateError("Payment has no retries left", payment_id=payment_id)
            return real_retry(db, payment_id, now)

        with patch("tasks.payment_tasks.get_gateway", return_value=gateway), patch(
            "tasks.payment_tasks.retry_payment", side_effect=flaky_retry
        ):
            result = retry_due_payments()

        assert result["outcomes"] == {first.transaction_id: "skipped", second.transaction_id: "completed"}

    def test_nothing_due(self, task_db, gateway):
        with patch("tasks.payment_tasks.get_gateway", return_value=gateway):
            assert retry_due_payments() == {"status": "ok", "retried": 0, "outcomes": {}}
