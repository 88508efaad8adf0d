"""
Payouts to consumers once a recycler finalizes a payment.

A payout intent is created idempotently (keyed by the payment id) and its
final state is only learned from a signed webhook, never assumed at
creation time.
"""
import hashlib
import hmac
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from pymongo import ReturnDocument

from database import now_utc
from pickup_workflow import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "dev-webhook-secret")
PAYOUT_CURRENCY = os.getenv("PAYOUT_CURRENCY", "INR")
SIGNATURE_HEADER = "X-Payout-Signature"

GATEWAY_STATUSES = {"payout.captured": "captured", "payout.failed": "failed"}


@dataclass
class PayoutIntent:
    id: str
    status: str
    amount: float
    currency: str
    idempotency_key: str


class PayoutGateway(Protocol):
    def create_intent(self, amount: float, currency: str, idempotency_key: str) -> PayoutIntent:
        ...

    def void_intent(self, idempotency_key: str) -> bool:
        ...


class LedgerGateway:
    """Records payout intents in Mongo; settlement arrives through the webhook."""

    def __init__(self, collection):
        self.collection = collection

    def create_intent(self, amount: float, currency: str, idempotency_key: str) -> PayoutIntent:
        if amount < 0:
            raise ValidationFailed("Payout amount must be zero or more")
        now = now_utc()
        doc = self.collection.find_one_and_update(
            {"idempotency_key": idempotency_key},
            {"$setOnInsert": {
                "intent_id": f"po_{uuid.uuid4().hex[:20]}",
                "amount": amount,
                "currency": currency,
                "status": "created",
                "created_at": now,
                "updated_at": now,
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return PayoutIntent(doc["intent_id"], doc["status"], doc["amount"], doc["currency"], idempotency_key)

    def void_intent(self, idempotency_key: str) -> bool:
        """Drop an intent the gateway has not settled yet; settled ones stay."""
        result = self.collection.delete_one({"idempotency_key": idempotency_key, "status": "created"})
        if result.deleted_count:
            logger.info("Voided payout intent for %s", idempotency_key)
        return bool(result.deleted_count)

    def reconcile(self, intent_id: str, event: str, reference: Optional[str] = None,
                  failure_reason: Optional[str] = None) -> dict:
        status = GATEWAY_STATUSES.get(event)
        if status is None:
            raise ValidationFailed(f"Unknown payout event: {event}")
        intent = self.collection.find_one({"intent_id": intent_id})
        if not intent:
            raise NotFound("Payout intent not found")
        if intent["status"] != "created":
            logger.info("Ignoring replayed %s for payout %s (already %s)", event, intent_id, intent["status"])
            return intent
        self.collection.update_one(
            {"intent_id": intent_id, "status": "created"},
            {"$set": {"status": status, "reference": reference, "failure_reason": failure_reason,
                      "updated_at": now_utc()}},
        )
        logger.info("Payout %s reconciled as %s", intent_id, status)
        return self.collection.find_one({"intent_id": intent_id})


def sign_payload(body: bytes, secret: Optional[str] = None) -> str:
    key = (secret or PAYMENT_WEBHOOK_SECRET).encode()
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    if not signature:
        raise ValidationFailed("Webhook signature missing")
    if not hmac.compare_digest(sign_payload(body, secret), signature):
        raise ValidationFailed("Invalid webhook signature")
