"""Read-only queries the account approval workflow makes into billing.

Results are plain summaries; Stripe identifiers never leave this module.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from billing.errors import SubscriptionNotFound
from billing.models import LedgerEntry, Subscription


@dataclass(frozen=True)
class SubscriptionStatusSummary:
    subscription_id: int
    user_id: int
    status: str
    plan_name: Optional[str]
    billing_interval: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    canceled_at: Optional[datetime]

    @property
    def is_active(self) -> bool:
        return self.status == Subscription.Status.ACTIVE

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionStatusSummary":
        plan = subscription.plan
        return cls(
            subscription_id=subscription.pk,
            user_id=subscription.user_id,
            status=subscription.status,
            plan_name=plan.name if plan else None,
            billing_interval=plan.billing_interval if plan else None,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            canceled_at=subscription.canceled_at,
        )


@dataclass(frozen=True)
class LedgerEntrySummary:
    id: str
    status: str
    payment_type: str
    amount_in_cents: int
    refunded_amount_in_cents: int
    currency: str
    failure_message: str
    created_at: datetime
    processed_at: Optional[datetime]
    refunded_at: Optional[datetime]

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntrySummary":
        return cls(
            id=str(entry.pk),
            status=entry.status,
            payment_type=entry.payment_type,
            amount_in_cents=entry.amount_in_cents,
            refunded_amount_in_cents=entry.refunded_amount_in_cents,
            currency=entry.currency,
            failure_message=entry.failure_message,
            created_at=entry.created_at,
            processed_at=entry.processed_at,
            refunded_at=entry.refunded_at,
        )


def current_subscription_status(user_id: int) -> Optional[SubscriptionStatusSummary]:
    """Current subscription status for a user, or ``None`` when they never subscribed."""

    subscription = Subscription.objects.select_related("plan").filter(user_id=user_id).first()
    if subscription is None:
        return None
    return SubscriptionStatusSummary.from_subscription(subscription)


def ledger_history_queryset(subscription_id: int):
    if not Subscription.objects.filter(pk=subscription_id).exists():
        raise SubscriptionNotFound(f"Subscription {subscription_id} does not exist.")
    return LedgerEntry.objects.filter(subscription_id=subscription_id).order_by("-created_at")


def ledger_history(subscription_id: int) -> List[LedgerEntrySummary]:
    """Ledger history for a subscription, newest first."""

    return [LedgerEntrySummary.from_entry(entry) for entry in ledger_history_queryset(subscription_id)]
