"""Stripe webhook receiver: verify, enqueue, acknowledge."""

from __future__ import annotations

import asyncio
import json
import logging

import stripe
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import require_webhook_secret
from services.webhook_events import QueuedPaymentEvent
from services.webhook_queue import enqueue_payment_event

router = APIRouter()
logger = logging.getLogger(__name__)


def _invalid_signature() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid signature"})


def _invalid_payload() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid payload"})


@router.post("/stripe")
async def receive_stripe_webhook(request: Request):
    """
    Verify the Stripe signature over the raw body and hand the event to the
    webhook queue. Processing happens in the worker; the response only
    reflects whether the event was queued.
    """
    try:
        secret = require_webhook_secret()
    except ValueError as exc:
        logger.error("Stripe webhook rejected: %s", exc)
        return JSONResponse(status_code=503, content={"error": "Webhook secret is not configured"})

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("Stripe webhook missing stripe-signature header")
        return _invalid_signature()

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        return _invalid_signature()
    except ValueError as exc:
        logger.warning("Webhook body is not valid JSON: %s", exc)
        return _invalid_payload()

    # Signature is valid from here on; anything else wrong is the envelope.
    try:
        event = QueuedPaymentEvent.from_stripe_event(json.loads(payload))
    except (ValueError, TypeError, AttributeError) as exc:
        logger.error("Malformed webhook event envelope: %s", exc)
        return _invalid_payload()

    logger.info("Verified webhook event: %s - %s", event.event_type, event.event_id)

    try:
        queued = await asyncio.to_thread(enqueue_payment_event, event)
    except Exception as exc:
        logger.exception("Failed to queue webhook event %s: %s", event.event_id, exc)
        return JSONResponse(status_code=500, content={"error": "Failed to queue event"})

    if queued.duplicate:
        logger.info("Event %s was already queued", event.event_id)
    else:
        logger.info("Successfully queued event %s for processing", event.event_id)
    return {"received": True, "eventId": event.event_id, "queued": True}
