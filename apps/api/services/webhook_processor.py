"""Stripe webhook processor: idempotent credit grants from queued payment events."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.idempotency import is_event_processed, mark_event_processed
from services.ledger import grant_credits
from services.webhook_events import (
    CheckoutSessionCompleted,
    MalformedPaymentEventError,
    PaymentEventError,
    PaymentIntentSucceeded,
    QueuedPaymentEvent,
    UnhandledPaymentEvent,
    calculate_credits,
    parse_payment_event,
)


logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_IGNORED = "ignored"


class WebhookProcessingError(Exception):
    """A queued event failed for a retryable reason; the queue should redeliver it."""


@dataclass
class WebhookBatchResult:
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "processed": list(self.processed),
            "skipped": list(self.skipped),
            "ignored": list(self.ignored),
            "abandoned": list(self.abandoned),
            "failed": list(self.failed),
        }


async def process_payment_event(db: AsyncSession, event: QueuedPaymentEvent) -> str:
    """Apply one queued event. Raises PaymentEventError when it cannot be attributed."""
    if await is_event_processed(db, event.event_id):
        logger.info("Event %s already processed, skipping", event.event_id)
        return OUTCOME_SKIPPED

    parsed = parse_payment_event(event)
    outcome = OUTCOME_PROCESSED

    if isinstance(parsed, (CheckoutSessionCompleted, PaymentIntentSucceeded)):
        credits = calculate_credits(parsed.amount_paid)
        if credits > 0:
            await grant_credits(
                db,
                parsed.user_id,
                credits=credits,
                transaction_id=parsed.event_id,
                transaction_type=parsed.transaction_type,
            )
            logger.info(
                "Added %s credits to user %s from %s %s",
                credits,
                parsed.user_id,
                parsed.transaction_type,
                parsed.source_id,
            )
        else:
            logger.warning(
                "Event %s paid %s units, below one credit; nothing granted to user %s",
                parsed.event_id,
                parsed.amount_paid,
                parsed.user_id,
            )
            outcome = OUTCOME_IGNORED
    elif isinstance(parsed, UnhandledPaymentEvent):
        logger.info("Unhandled event type: %s (%s)", parsed.event_type, parsed.event_id)
        outcome = OUTCOME_IGNORED

    await mark_event_processed(db, event.event_id, event.event_type)
    logger.info("Successfully processed event %s", event.event_id)
    return outcome


def _parse_message(message: Mapping[str, Any]) -> QueuedPaymentEvent:
    try:
        return QueuedPaymentEvent.model_validate(message)
    except ValidationError as exc:
        raise MalformedPaymentEventError(f"Invalid queued event envelope: {exc.error_count()} error(s)") from exc


async def process_webhook_batch(
    messages: Iterable[Mapping[str, Any]],
    session_maker: Optional[async_sessionmaker] = None,
) -> WebhookBatchResult:
    """Process queued messages one by one; a failing item never stops its siblings."""
    if session_maker is None:
        from database import async_session_maker as session_maker

    batch = list(messages)
    logger.info("Processing %s queued webhook messages", len(batch))
    result = WebhookBatchResult()

    for message in batch:
        event_id = str(message.get("eventId") or "<unknown>")
        try:
            event = _parse_message(message)
            logger.info("Processing webhook: %s - %s", event.event_type, event.event_id)
            async with session_maker() as db:
                outcome = await process_payment_event(db, event)
        except PaymentEventError as exc:
            logger.error("WEBHOOK_PROCESSING_ERROR event=%s abandoned: %s", event_id, exc)
            result.abandoned.append(event_id)
            continue
        except Exception as exc:
            logger.exception("WEBHOOK_PROCESSING_ERROR event=%s failed: %s", event_id, exc)
            result.failed.append(event_id)
            continue

        if outcome == OUTCOME_SKIPPED:
            result.skipped.append(event_id)
        elif outcome == OUTCOME_IGNORED:
            result.ignored.append(event_id)
        else:
            result.processed.append(event_id)

    return result


def process_webhook_job(message: Dict[str, Any]) -> Dict[str, Any]:
    """RQ worker entrypoint for one queued webhook event."""
    result = asyncio.run(process_webhook_batch([message]))
    if not result.ok:
        raise WebhookProcessingError(f"Webhook event {', '.join(result.failed)} failed; awaiting redelivery.")
    return result.as_dict()
