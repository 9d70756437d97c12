"""Queued payment-event envelope and the closed set of event variants the processor handles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from config import settings


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


class PaymentEventError(Exception):
    """Base class for payment events that cannot be applied as delivered."""


class MalformedPaymentEventError(PaymentEventError):
    pass


class UnattributableEventError(PaymentEventError):
    """The event carries no user reference to credit."""


class QueuedPaymentEvent(BaseModel):
    """Normalized Stripe event envelope carried on the webhook queue."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    event_data: Dict[str, Any] = Field(alias="eventData", default_factory=dict)
    created: int = 0
    livemode: bool = False

    @classmethod
    def from_stripe_event(cls, event: Mapping[str, Any]) -> "QueuedPaymentEvent":
        data = event.get("data") or {}
        return cls(
            event_id=str(event.get("id") or ""),
            event_type=str(event.get("type") or ""),
            event_data=dict(data.get("object") or {}),
            created=int(event.get("created") or 0),
            livemode=bool(event.get("livemode", False)),
        )

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    user_id: str
    amount_paid: int
    source_id: Optional[str] = None
    transaction_type: str = "checkout_session"


@dataclass(frozen=True)
class PaymentIntentSucceeded:
    event_id: str
    user_id: str
    amount_paid: int
    source_id: Optional[str] = None
    transaction_type: str = "payment_intent"


@dataclass(frozen=True)
class UnhandledPaymentEvent:
    event_id: str
    event_type: str


CreditGrantEvent = Union[CheckoutSessionCompleted, PaymentIntentSucceeded]
PaymentEvent = Union[CheckoutSessionCompleted, PaymentIntentSucceeded, UnhandledPaymentEvent]


def calculate_credits(amount_paid: int) -> int:
    """Whole credits bought by ``amount_paid`` smallest currency units; remainders are dropped."""
    return max(int(amount_paid), 0) // max(int(settings.CENTS_PER_CREDIT), 1)


def _extract_user_id(data: Mapping[str, Any], *, prefer_metadata: bool) -> str:
    metadata = data.get("metadata") or {}
    candidates = [data.get("client_reference_id"), metadata.get("user_id")]
    if prefer_metadata:
        candidates.reverse()
    for candidate in candidates:
        text = str(candidate or "").strip()
        if text:
            return text
    return ""


def _extract_amount(data: Mapping[str, Any], *keys: str) -> int:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedPaymentEventError(f"Payment amount {key}={value!r} is not an integer.")
        return value
    raise MalformedPaymentEventError(f"Payment amount missing (expected one of {', '.join(keys)}).")


def parse_payment_event(event: QueuedPaymentEvent) -> PaymentEvent:
    """Map a queued envelope onto its typed variant."""
    data = event.event_data or {}

    if event.event_type == CHECKOUT_SESSION_COMPLETED:
        user_id = _extract_user_id(data, prefer_metadata=False)
        if not user_id:
            raise UnattributableEventError(f"No user reference found in checkout session {data.get('id')}")
        return CheckoutSessionCompleted(
            event_id=event.event_id,
            user_id=user_id,
            amount_paid=_extract_amount(data, "amount_total"),
            source_id=data.get("id"),
        )

    if event.event_type == PAYMENT_INTENT_SUCCEEDED:
        user_id = _extract_user_id(data, prefer_metadata=True)
        if not user_id:
            raise UnattributableEventError(f"No user reference found in payment intent {data.get('id')}")
        return PaymentIntentSucceeded(
            event_id=event.event_id,
            user_id=user_id,
            amount_paid=_extract_amount(data, "amount", "amount_received"),
            source_id=data.get("id"),
        )

    return UnhandledPaymentEvent(event_id=event.event_id, event_type=event.event_type)
