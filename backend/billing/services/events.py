"""Verified Stripe events, their families, and the processed-event log."""
from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from billing.errors import EventValidationError
from billing.models import WebhookEventLog

logger = logging.getLogger(__name__)


class EventFamily(enum.Enum):
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    INVOICE_OPENED = "invoice_opened"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    REFUND = "refund"


EVENT_TYPE_FAMILIES: Dict[str, EventFamily] = {
    "payment_intent.created": EventFamily.PAYMENT_INITIATED,
    "payment_intent.succeeded": EventFamily.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventFamily.PAYMENT_FAILED,
    "payment_intent.canceled": EventFamily.PAYMENT_CANCELED,
    "invoice.created": EventFamily.INVOICE_OPENED,
    "invoice.payment_succeeded": EventFamily.INVOICE_PAID,
    "invoice.paid": EventFamily.INVOICE_PAID,
    "invoice.payment_failed": EventFamily.INVOICE_FAILED,
    "customer.subscription.created": EventFamily.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventFamily.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventFamily.SUBSCRIPTION_DELETED,
    "charge.refunded": EventFamily.REFUND,
}

EVENT_DESCRIPTIONS: Dict[EventFamily, str] = {
    EventFamily.PAYMENT_INITIATED: "Opens a pending ledger entry for a one-time payment.",
    EventFamily.PAYMENT_SUCCEEDED: "Records a successful one-time payment and activates the subscription.",
    EventFamily.PAYMENT_FAILED: "Records a failed one-time payment with its failure reason.",
    EventFamily.PAYMENT_CANCELED: "Cancels the pending ledger entry of an abandoned payment.",
    EventFamily.INVOICE_OPENED: "Opens a pending ledger entry for a subscription invoice.",
    EventFamily.INVOICE_PAID: "Records a paid invoice and extends the current period.",
    EventFamily.INVOICE_FAILED: "Records a failed invoice payment and marks the subscription past due.",
    EventFamily.SUBSCRIPTION_UPDATED: "Mirrors subscription status, period and plan.",
    EventFamily.SUBSCRIPTION_DELETED: "Marks the subscription canceled.",
    EventFamily.REFUND: "Applies the refunded total of a charge to its ledger entry.",
}


def classify_event(event_type: str) -> Optional[EventFamily]:
    return EVENT_TYPE_FAMILIES.get(event_type)


def supported_event_types() -> Tuple[Tuple[str, EventFamily], ...]:
    return tuple(sorted(EVENT_TYPE_FAMILIES.items()))


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


@dataclass(frozen=True)
class ProcessorEvent:
    """An authenticated Stripe event envelope."""

    id: str
    type: str
    created: datetime
    data_object: Dict[str, Any]
    livemode: bool = False
    payload_hash: str = ""

    @property
    def family(self) -> Optional[EventFamily]:
        return classify_event(self.type)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, raw: bytes = b"") -> "ProcessorEvent":
        if not isinstance(payload, Mapping):
            raise EventValidationError("Event payload must be a JSON object.")

        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not isinstance(event_id, str):
            raise EventValidationError("Event is missing its identifier.")
        if not event_type or not isinstance(event_type, str):
            raise EventValidationError("Event is missing its type.")

        created = _coerce_timestamp(payload.get("created"))
        if created is None:
            raise EventValidationError("Event is missing its creation timestamp.")

        data = payload.get("data")
        data_object = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(data_object, Mapping):
            raise EventValidationError("Event is missing its data object.")

        return cls(
            id=event_id,
            type=event_type,
            created=created,
            data_object=dict(data_object),
            livemode=bool(payload.get("livemode", False)),
            payload_hash=hashlib.sha256(raw).hexdigest() if raw else "",
        )


def claim_event(event: ProcessorEvent) -> Tuple[WebhookEventLog, bool]:
    """Reserve the event in the processed-event log.

    Must run inside the dispatch transaction so the claim commits or rolls back
    together with the event's effects. Returns ``(log_entry, already_processed)``.
    """

    log_entry = WebhookEventLog.objects.select_for_update().filter(event_id=event.id).first()
    if log_entry is None:
        try:
            with transaction.atomic():
                log_entry = WebhookEventLog.objects.create(
                    event_id=event.id,
                    event_type=event.type,
                    payload_hash=event.payload_hash,
                    status=WebhookEventLog.Status.PROCESSING,
                    event_created_at=event.created,
                    attempts=1,
                )
            return log_entry, False
        except IntegrityError:
            # A concurrent delivery committed its claim first.
            log_entry = WebhookEventLog.objects.select_for_update().get(event_id=event.id)

    if log_entry.handled:
        return log_entry, True

    if event.payload_hash and log_entry.payload_hash and log_entry.payload_hash != event.payload_hash:
        logger.warning("Stripe event %s redelivered with a different payload hash.", event.id)

    log_entry.status = WebhookEventLog.Status.PROCESSING
    log_entry.event_type = event.type
    log_entry.payload_hash = event.payload_hash or log_entry.payload_hash
    log_entry.event_created_at = event.created
    log_entry.attempts = (log_entry.attempts or 0) + 1
    log_entry.save(update_fields=["status", "event_type", "payload_hash", "event_created_at", "attempts"])
    return log_entry, False


def mark_event_completed(log_entry: WebhookEventLog, *, ignored: bool = False,
                         subscription_id: Optional[int] = None) -> None:
    log_entry.status = WebhookEventLog.Status.IGNORED if ignored else WebhookEventLog.Status.PROCESSED
    log_entry.handled = True
    log_entry.processed_at = timezone.now()
    log_entry.last_error = ""
    update_fields = ["status", "handled", "processed_at", "last_error"]
    if subscription_id and log_entry.subscription_id != subscription_id:
        log_entry.subscription_id = subscription_id
        update_fields.append("subscription")
    log_entry.save(update_fields=update_fields)


def record_event_failure(event: ProcessorEvent, error: str) -> None:
    """Persist a failed attempt after the dispatch transaction rolled back."""

    with transaction.atomic():
        log_entry, created = WebhookEventLog.objects.select_for_update().get_or_create(
            event_id=event.id,
            defaults={
                "event_type": event.type,
                "payload_hash": event.payload_hash,
                "event_created_at": event.created,
                "status": WebhookEventLog.Status.FAILED,
                "last_error": error,
                "attempts": 1,
            },
        )
        if created or log_entry.handled:
            return
        log_entry.status = WebhookEventLog.Status.FAILED
        log_entry.last_error = error
        log_entry.attempts = (log_entry.attempts or 0) + 1
        log_entry.save(update_fields=["status", "last_error", "attempts"])


def purge_processed_events(*, retention_days: int) -> int:
    """Remove handled event log rows older than the retention window."""

    cutoff = timezone.now() - timedelta(days=retention_days)
    deleted, _ = WebhookEventLog.objects.filter(handled=True, processed_at__lt=cutoff).delete()
    return deleted
