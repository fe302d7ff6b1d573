"""Append-only payment ledger operations.

Entries are created ``pending`` when an attempt is first observed, finalized
once, and afterwards only the refund fields may move (forward, never past the
original amount). Callers must already hold a database transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from django.db.models import Q

from billing.choices import LedgerStatus, PaymentType
from billing.errors import LedgerEntryNotFound, LedgerTransitionError
from billing.models import LedgerEntry, Subscription
from billing.observability.metrics import LEDGER_WRITE_COUNT
from billing.state import REFUNDABLE_STATUSES, ledger_transition, refund_transition

logger = logging.getLogger(__name__)

FINAL_STATUSES = frozenset({LedgerStatus.SUCCEEDED, LedgerStatus.FAILED, LedgerStatus.CANCELED})


@dataclass(frozen=True)
class LedgerWrite:
    """Result of a ledger operation."""

    entry: Optional[LedgerEntry]
    created: bool = False
    finalized: bool = False
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return self.created or self.finalized


def _count(entry: LedgerEntry) -> None:
    LEDGER_WRITE_COUNT.labels(status=entry.status, payment_type=entry.payment_type).inc()


def has_prior_failure(group: str) -> bool:
    if not group:
        return False
    return LedgerEntry.objects.for_attempt_group(group).filter(status=LedgerStatus.FAILED).exists()


def has_successful_payment(subscription: Subscription) -> bool:
    return subscription.ledger_entries.filter(
        status__in=(LedgerStatus.SUCCEEDED, LedgerStatus.REFUNDED)
    ).exists()


def resolve_payment_type(group: str, base_type: str) -> str:
    """A new attempt in a group that already failed is a retry."""

    return PaymentType.RETRY if has_prior_failure(group) else base_type


def open_pending_entry(
    *,
    subscription: Subscription,
    group: str,
    amount_in_cents: int,
    currency: str,
    payment_type: str,
    invoice_id: str = "",
    payment_intent_id: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerWrite:
    """Record that an attempt was initiated. A group only ever gets one pending row."""

    existing = LedgerEntry.objects.select_for_update().for_attempt_group(group).order_by("created_at").first()
    if existing is not None:
        return LedgerWrite(entry=existing, duplicate=True)

    entry = LedgerEntry.objects.create(
        subscription=subscription,
        user_id=subscription.user_id,
        attempt_group=group,
        stripe_invoice_id=invoice_id,
        stripe_payment_intent_id=payment_intent_id,
        amount_in_cents=amount_in_cents,
        currency=currency,
        status=LedgerStatus.PENDING,
        payment_type=payment_type,
        metadata=metadata or {},
    )
    _count(entry)
    return LedgerWrite(entry=entry, created=True)


def record_outcome(
    *,
    subscription: Subscription,
    attempt_key: str,
    group: str,
    status: str,
    amount_in_cents: int,
    currency: str,
    payment_type: str,
    processed_at: Optional[datetime],
    invoice_id: str = "",
    payment_intent_id: str = "",
    charge_id: str = "",
    failure_code: str = "",
    failure_message: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerWrite:
    """Finalize the group's pending entry or append a new row for this attempt.

    ``attempt_key`` becomes the entry's ``external_payment_id``. An attempt that
    was already recorded with the same outcome is a duplicate; a key reused for a
    different outcome is suffixed with the status so each row keeps a unique key.
    """

    if status not in FINAL_STATUSES:
        raise LedgerTransitionError(f"{status} is not a final payment outcome.")
    if not attempt_key:
        raise LedgerTransitionError("A finalized ledger entry needs an external payment identifier.")

    key = attempt_key
    existing = LedgerEntry.objects.select_for_update().filter(external_payment_id=key).first()
    if existing is not None and not _same_outcome(existing.status, status):
        key = f"{attempt_key}:{status}"
        existing = LedgerEntry.objects.select_for_update().filter(external_payment_id=key).first()
    if existing is not None:
        return LedgerWrite(entry=existing, duplicate=True)

    pending = (
        LedgerEntry.objects.select_for_update()
        .for_attempt_group(group)
        .filter(status=LedgerStatus.PENDING, external_payment_id__isnull=True)
        .order_by("created_at")
        .first()
        if group
        else None
    )
    if pending is not None:
        if pending.amount_in_cents == amount_in_cents and pending.currency == currency.upper():
            pending.status = ledger_transition(pending.state, status).status
            pending.external_payment_id = key
            pending.stripe_charge_id = charge_id
            pending.processed_at = processed_at
            pending.failure_code = failure_code
            pending.failure_message = failure_message
            pending.save(
                update_fields=[
                    "status",
                    "external_payment_id",
                    "stripe_charge_id",
                    "processed_at",
                    "failure_code",
                    "failure_message",
                    "updated_at",
                ]
            )
            _count(pending)
            return LedgerWrite(entry=pending, finalized=True)

        # Amount changed between creation and payment; keep the pending row intact and close it.
        pending.status = ledger_transition(pending.state, LedgerStatus.CANCELED).status
        pending.failure_message = "superseded by an attempt for a different amount"
        pending.processed_at = processed_at
        pending.save(update_fields=["status", "failure_message", "processed_at", "updated_at"])
        _count(pending)

    entry = LedgerEntry.objects.create(
        subscription=subscription,
        user_id=subscription.user_id,
        external_payment_id=key,
        attempt_group=group,
        stripe_invoice_id=invoice_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_charge_id=charge_id,
        amount_in_cents=amount_in_cents,
        currency=currency,
        status=status,
        payment_type=payment_type,
        failure_code=failure_code,
        failure_message=failure_message,
        processed_at=processed_at,
        metadata=metadata or {},
    )
    _count(entry)
    return LedgerWrite(entry=entry, created=True)


def cancel_pending(*, group: str, processed_at: Optional[datetime], reason: str = "") -> LedgerWrite:
    pending = (
        LedgerEntry.objects.select_for_update()
        .for_attempt_group(group)
        .filter(status=LedgerStatus.PENDING)
        .first()
    )
    if pending is None:
        return LedgerWrite(entry=None, duplicate=True)

    pending.status = ledger_transition(pending.state, LedgerStatus.CANCELED).status
    pending.processed_at = processed_at
    pending.failure_message = reason
    pending.save(update_fields=["status", "processed_at", "failure_message", "updated_at"])
    _count(pending)
    return LedgerWrite(entry=pending, finalized=True)


def _same_outcome(recorded: str, incoming: str) -> bool:
    if recorded == incoming:
        return True
    return recorded == LedgerStatus.REFUNDED and incoming == LedgerStatus.SUCCEEDED


def locate_refund_target(*, charge_id: str = "", payment_intent_id: str = "") -> LedgerEntry:
    lookup = Q()
    if charge_id:
        lookup |= Q(stripe_charge_id=charge_id) | Q(external_payment_id=charge_id)
    if payment_intent_id:
        lookup |= Q(stripe_payment_intent_id=payment_intent_id) | Q(external_payment_id=payment_intent_id)
    if not lookup:
        raise LedgerEntryNotFound("Refund does not reference a charge or payment intent.")

    entry = (
        LedgerEntry.objects.select_for_update()
        .filter(lookup, status__in=REFUNDABLE_STATUSES)
        .order_by("created_at")
        .first()
    )
    if entry is None:
        raise LedgerEntryNotFound("No refundable ledger entry matches the refunded charge.")
    return entry


def apply_refund(*, entry: LedgerEntry, refunded_total: int, refunded_at: Optional[datetime]) -> LedgerWrite:
    """Bring the entry's refunded amount up to ``refunded_total``.

    Stripe reports the cumulative refunded amount of a charge, so a total at or
    below what is already recorded is a replay and changes nothing.
    """

    if isinstance(refunded_total, bool) or not isinstance(refunded_total, int):
        raise LedgerTransitionError("Refund amounts must be integer minor units.")

    increment = refunded_total - entry.refunded_amount_in_cents
    if increment <= 0:
        return LedgerWrite(entry=entry, duplicate=True)

    next_state = refund_transition(entry.state, increment)
    entry.refunded_amount_in_cents = next_state.refunded_amount_in_cents
    entry.status = next_state.status
    update_fields = ["refunded_amount_in_cents", "status", "updated_at"]
    if next_state.fully_refunded:
        entry.refunded_at = refunded_at
        update_fields.append("refunded_at")
    entry.save(update_fields=update_fields)
    logger.info(
        "Applied refund of %s to ledger entry %s (refunded %s/%s).",
        increment,
        entry.pk,
        entry.refunded_amount_in_cents,
        entry.amount_in_cents,
    )
    return LedgerWrite(entry=entry, finalized=True)
