from datetime import datetime, timedelta

from core.config import settings


def next_retry_at(retry_count: int, now: datetime | None = None, interval_minutes: int | None = None) -> datetime:
    """Linear backoff: the n-th retry waits n * interval (5 minutes by default)."""
    now = now or datetime.utcnow()
    interval = settings.PAYMENT_RETRY_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
    return now + timedelta(minutes=retry_count * interval)


def can_retry(retry_count: int, max_retries: int | None = None) -> bool:
    limit = settings.PAYMENT_MAX_RETRIES if max_retries is None else max_retries
    return retry_count < limit
