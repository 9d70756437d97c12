"""Models package."""

from .user_ledger import UserLedger
from .credit_transaction import CreditTransaction
from .processed_webhook_event import ProcessedWebhookEvent
