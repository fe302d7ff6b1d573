"""Exception taxonomy for the billing core.

Every failure that can reach the webhook endpoint or the plan synchronizer is
expressed as one of these types; Stripe SDK exceptions are translated at the
gateway boundary and never escape it.
"""
from __future__ import annotations

from typing import Iterable, Optional

DEFAULT_SYNC_RECOVERY = "Re-run `python manage.py sync_plans`; completed steps are kept."


class BillingError(Exception):
    """Base class for billing failures."""

    http_status = 500


class EventValidationError(BillingError):
    """Malformed payload or missing required field. Permanent."""

    http_status = 400


class InvalidSignature(BillingError):
    """Webhook signature does not match the payload under the shared secret."""

    http_status = 401


class EntityNotVisible(BillingError):
    """A referenced local record does not exist (yet). The sender should retry."""

    http_status = 404


class SubscriptionNotFound(EntityNotVisible):
    pass


class LedgerEntryNotFound(EntityNotVisible):
    pass


class LedgerTransitionError(BillingError):
    """The ledger refuses a mutation; the requested state change is not permitted."""

    http_status = 400


class RefundExceedsAmount(LedgerTransitionError):
    pass


class CheckoutError(BillingError):
    """A subscriber's checkout or cancellation request cannot be honored."""

    http_status = 400


class PlanNotPurchasable(CheckoutError):
    pass


class SubscriptionAlreadyActive(CheckoutError):
    http_status = 409


class NoCancellableSubscription(CheckoutError):
    http_status = 404


class ProcessorError(BillingError):
    """Base for failures talking to Stripe."""


class ProcessorConfigurationError(ProcessorError):
    """Credentials or secrets are missing or rejected."""


class ProcessorUnavailable(ProcessorError):
    """Transport failure or Stripe-side outage after retries were exhausted."""


class ProcessorRequestError(ProcessorError):
    """Stripe rejected the request (4xx). Never retried."""


class ProcessorNotFound(ProcessorRequestError):
    """The requested Stripe object does not exist."""


class PlanSyncError(BillingError):
    """Plan synchronization stopped at ``step``."""

    def __init__(self, message: str, *, step: str, plan: Optional[str] = None,
                 recovery: str = DEFAULT_SYNC_RECOVERY) -> None:
        super().__init__(message)
        self.step = step
        self.plan = plan
        self.recovery = recovery

    def describe(self) -> str:
        target = f" (plan: {self.plan})" if self.plan else ""
        return f"step '{self.step}'{target}: {self}. Recovery: {self.recovery}"


class PlanSyncValidationError(PlanSyncError):
    """Local plans and Stripe prices disagree after synchronization."""

    def __init__(self, mismatches: Iterable[str]) -> None:
        self.mismatches = list(mismatches)
        super().__init__(
            "; ".join(self.mismatches) or "validation failed",
            step="validate",
            recovery="Fix the diverging plan or Stripe price, then re-run `python manage.py sync_plans`.",
        )


class PlanSyncInterrupted(PlanSyncError):
    """A stop was requested between plans."""

    def __init__(self, completed: int) -> None:
        super().__init__(
            f"interrupted after {completed} plan(s)",
            step="iterate",
            recovery="Re-run `python manage.py sync_plans` to finish the remaining plans.",
        )
        self.completed = completed
