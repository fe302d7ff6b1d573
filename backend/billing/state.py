"""Pure state-transition functions for ledger entries and subscriptions.

Handlers never assign status or refund fields directly; they compute the next
state here and persist the returned value. The ledger model re-checks every
update against :func:`check_ledger_update` before it reaches the database.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from billing.choices import LedgerStatus, SubscriptionStatus
from billing.errors import LedgerTransitionError, RefundExceedsAmount

LEDGER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    LedgerStatus.PENDING: frozenset({LedgerStatus.SUCCEEDED, LedgerStatus.FAILED, LedgerStatus.CANCELED}),
    LedgerStatus.SUCCEEDED: frozenset({LedgerStatus.REFUNDED}),
    LedgerStatus.FAILED: frozenset(),
    LedgerStatus.CANCELED: frozenset(),
    LedgerStatus.REFUNDED: frozenset(),
}

REFUNDABLE_STATUSES = frozenset({LedgerStatus.SUCCEEDED, LedgerStatus.REFUNDED})

# Stripe subscription statuses folded onto the four local ones.
PROCESSOR_SUBSCRIPTION_STATUS: Dict[str, str] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}


@dataclass(frozen=True)
class LedgerState:
    status: str
    amount_in_cents: int
    refunded_amount_in_cents: int = 0

    @property
    def fully_refunded(self) -> bool:
        return self.refunded_amount_in_cents == self.amount_in_cents


@dataclass(frozen=True)
class SubscriptionState:
    status: str
    status_event_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


def ledger_transition(state: LedgerState, new_status: str) -> LedgerState:
    """Finalize or cancel an entry. Refunds go through :func:`refund_transition`."""

    if new_status == LedgerStatus.REFUNDED:
        raise LedgerTransitionError("Entries become refunded only through a refund.")
    if new_status not in LEDGER_TRANSITIONS.get(state.status, frozenset()):
        raise LedgerTransitionError(f"Ledger entry cannot move from {state.status} to {new_status}.")
    return replace(state, status=new_status)


def refund_transition(state: LedgerState, increment: int) -> LedgerState:
    """Apply a refund increment; the entry becomes refunded only once fully refunded."""

    if isinstance(increment, bool) or not isinstance(increment, int):
        raise LedgerTransitionError("Refund amounts must be integer minor units.")
    if increment <= 0:
        raise LedgerTransitionError("Refund increment must be positive.")
    if state.status not in REFUNDABLE_STATUSES:
        raise LedgerTransitionError(f"Cannot refund an entry in status {state.status}.")
    if state.fully_refunded:
        raise LedgerTransitionError("Entry is already fully refunded.")

    refunded = state.refunded_amount_in_cents + increment
    if refunded > state.amount_in_cents:
        raise RefundExceedsAmount(
            f"Refund of {increment} would bring the refunded total to {refunded}, "
            f"above the original amount {state.amount_in_cents}."
        )

    status = LedgerStatus.REFUNDED if refunded == state.amount_in_cents else state.status
    return LedgerState(status=status, amount_in_cents=state.amount_in_cents, refunded_amount_in_cents=refunded)


def check_ledger_update(before: LedgerState, after: LedgerState) -> None:
    """Reject any persisted change that no transition function could have produced."""

    if before.amount_in_cents != after.amount_in_cents:
        raise LedgerTransitionError("Ledger amounts are immutable.")

    if before.status == LedgerStatus.REFUNDED and before.fully_refunded and before != after:
        raise LedgerTransitionError("A fully refunded entry can no longer change.")

    refund_changed = before.refunded_amount_in_cents != after.refunded_amount_in_cents
    if refund_changed:
        expected = refund_transition(before, after.refunded_amount_in_cents - before.refunded_amount_in_cents)
        if expected.status != after.status:
            raise LedgerTransitionError(
                f"Refunded total {after.refunded_amount_in_cents} requires status {expected.status}."
            )
        return

    if before.status != after.status:
        ledger_transition(before, after.status)


def subscription_transition(
    state: SubscriptionState,
    new_status: str,
    event_at: datetime,
) -> Optional[SubscriptionState]:
    """Last-write-wins by the processor's event timestamp.

    Returns ``None`` when the event is older than the stored state and must be
    discarded. On equal timestamps a canceled subscription stays canceled.
    """

    if new_status not in SubscriptionStatus.values:
        raise ValueError(f"Unknown subscription status {new_status!r}.")

    stored_at = state.status_event_at
    if stored_at is not None:
        if event_at < stored_at:
            return None
        if event_at == stored_at and state.status == SubscriptionStatus.CANCELED and new_status != state.status:
            return None

    return replace(state, status=new_status, status_event_at=event_at)


def extend_period(
    state: SubscriptionState,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
) -> SubscriptionState:
    """Move the current period forward; an older window never replaces a newer one."""

    if period_end is None:
        return state
    if state.current_period_end is not None and period_end <= state.current_period_end:
        return state
    return replace(
        state,
        current_period_start=period_start or state.current_period_start,
        current_period_end=period_end,
    )


def map_processor_status(processor_status: Optional[str]) -> Optional[str]:
    if not processor_status:
        return None
    return PROCESSOR_SUBSCRIPTION_STATUS.get(processor_status)
