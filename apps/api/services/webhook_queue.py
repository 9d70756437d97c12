"""Durable, deduplicating Stripe webhook queue helpers (Redis/RQ)."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from redis import Redis
from rq import Queue, Retry

from config import settings
from services.webhook_events import QueuedPaymentEvent


logger = logging.getLogger(__name__)

WEBHOOK_JOB_FUNC = "services.webhook_processor.process_webhook_job"


@dataclass
class EnqueueResult:
    event_id: str
    job_id: str
    duplicate: bool = False


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_webhook_queue(connection: Optional[Redis] = None) -> Queue:
    """Return the webhook queue. Its name doubles as the ordering group key."""
    return Queue(
        name=settings.WEBHOOK_QUEUE_NAME,
        connection=connection or get_redis_connection(),
        default_timeout=settings.WEBHOOK_JOB_TIMEOUT_SECONDS,
    )


def dedup_key(event_id: str) -> str:
    return f"{settings.WEBHOOK_QUEUE_NAME}:dedup:{event_id}"


def webhook_job_id(event_id: str) -> str:
    return f"stripe-webhook:{event_id}"


def enqueue_payment_event(
    event: QueuedPaymentEvent,
    *,
    connection: Optional[Redis] = None,
    queue: Optional[Queue] = None,
) -> EnqueueResult:
    """Enqueue a verified event once per dedup window, keyed by its event id."""
    redis_conn = connection or get_redis_connection()
    key = dedup_key(event.event_id)
    job_id = webhook_job_id(event.event_id)

    claimed = redis_conn.set(
        key,
        job_id,
        nx=True,
        ex=max(int(settings.WEBHOOK_DEDUP_WINDOW_SECONDS), 1),
    )
    if not claimed:
        logger.info("Event %s already queued within dedup window; skipping enqueue", event.event_id)
        return EnqueueResult(event_id=event.event_id, job_id=job_id, duplicate=True)

    target = queue or get_webhook_queue(redis_conn)
    try:
        target.enqueue(
            WEBHOOK_JOB_FUNC,
            event.to_message(),
            job_id=job_id,
            retry=Retry(max=5, interval=[10, 30, 60, 180, 600]),
            job_timeout=settings.WEBHOOK_JOB_TIMEOUT_SECONDS,
            result_ttl=86400,
            failure_ttl=7 * 86400,
        )
    except Exception:
        redis_conn.delete(key)
        raise
    return EnqueueResult(event_id=event.event_id, job_id=job_id)
