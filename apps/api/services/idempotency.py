"""Processed payment-event records used to suppress duplicate processing."""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.processed_webhook_event import ProcessedWebhookEvent


logger = logging.getLogger(__name__)

PROCESSED_BY = "stripe-webhook-processor"


async def is_event_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(
        select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
    )
    return result.scalar_one_or_none() is not None


async def mark_event_processed(db: AsyncSession, event_id: str, event_type: str) -> bool:
    """Record ``event_id`` as applied. Returns False when another worker recorded it first."""
    db.add(
        ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            processed_by=PROCESSED_BY,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Event %s was already marked processed", event_id)
        return False
    return True
