from datetime import datetime

from celery import current_app
from sqlalchemy.exc import OperationalError

from core.db import db_session
from core.errors import ServiceError
from core.logging import get_logger
from services.gateway import get_gateway
from services.payments import get_due_retries, retry_payment, verify_with_gateway

logger = get_logger(__name__)


@current_app.task(bind=True, max_retries=3)
def retry_due_payments(self):
    """
    Re-attempt failed payments whose next_retry_at has passed.
    Each payment is moved back to pending and re-verified with the gateway;
    one payment's failure never stops the rest of the batch.
    """
    now = datetime.utcnow()
    try:
        with db_session() as db:
            due = [(p.id, p.transaction_id) for p in get_due_retries(db, now)]
    except OperationalError as exc:
        # Database unavailable: back off and let Celery try the batch again
        countdown = min(2 ** self.request.retries * 10, 300)
        raise self.retry(exc=exc, countdown=countdown)

    gateway = get_gateway()
    outcomes = {}
    for payment_id, transaction_id in due:
        try:
            with db_session() as db:
                retry_payment(db, payment_id, now)
                payment = verify_with_gateway(db, gateway, transaction_id)
                outcomes[transaction_id] = payment.status
        except ServiceError as exc:
            logger.warning(
                "payment_retry_skipped",
                payment_id=payment_id,
                transaction_id=transaction_id,
                error=exc.message,
            )
            outcomes[transaction_id] = "skipped"

    logger.info("payment_retry_batch_finished", due=len(due), outcomes=outcomes)
    return {"status": "ok", "retried": len(due), "outcomes": outcomes}
