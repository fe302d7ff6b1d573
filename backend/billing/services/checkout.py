"""Subscriber-initiated checkout and cancellation.

Starting a subscription creates the local row, the Stripe customer and an
incomplete Stripe subscription, and opens the pending ledger entry for its
first invoice. Neither flow changes the local status: that only moves when the
webhook applies the matching Stripe event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction

from billing.choices import PaymentType, SubscriptionStatus
from billing.errors import NoCancellableSubscription, PlanNotPurchasable, SubscriptionAlreadyActive
from billing.models import BillingAuditLog, LedgerEntry, Plan, Subscription
from billing.observability.logging import log_billing_event
from billing.services import ledger as ledger_service
from billing.services.stripe_gateway import StripeGateway
from billing.services.subscriptions import (
    SUBSCRIPTION_METADATA_KEY,
    USER_METADATA_KEY,
    ensure_processor_customer,
)

logger = logging.getLogger(__name__)

CHECKOUT_STARTED = "billing.subscription.checkout_started"
CANCEL_REQUESTED = "billing.subscription.cancel_requested"

BLOCKING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


@dataclass(frozen=True)
class CheckoutSession:
    subscription: Subscription
    stripe_status: str
    client_secret: Optional[str]
    pending_entry: Optional[LedgerEntry]


@dataclass(frozen=True)
class CancellationRequest:
    subscription: Subscription
    stripe_status: str
    cancel_at_period_end: bool


def _actor(user) -> str:
    return f"user:{user.pk}"


def _check_purchasable(plan: Plan, user) -> None:
    if not plan.is_active:
        raise PlanNotPurchasable(f"Plan {plan.name} is no longer offered.")
    if not plan.stripe_price_id:
        raise PlanNotPurchasable(f"Plan {plan.name} is not synchronized with Stripe yet.")
    user_type = getattr(user, "user_type", "")
    if plan.allowed_user_types and user_type not in plan.allowed_user_types:
        raise PlanNotPurchasable(f"Plan {plan.name} is not available to {user_type or 'this'} accounts.")


def _lock_or_create(user, plan: Plan) -> Subscription:
    subscription = (
        Subscription.objects.select_for_update(of=("self",))
        .select_related("plan", "user")
        .filter(user=user)
        .first()
    )
    if subscription is None:
        return Subscription.objects.create(user=user, plan=plan, status=SubscriptionStatus.INCOMPLETE)

    if subscription.status in BLOCKING_STATUSES:
        raise SubscriptionAlreadyActive("User already has an active subscription.")
    if subscription.status == SubscriptionStatus.INCOMPLETE and subscription.stripe_subscription_id:
        raise SubscriptionAlreadyActive("A checkout for this subscription is already awaiting payment.")

    # A canceled row is reused for the new Stripe subscription; its status waits for the new events.
    subscription.plan = plan
    subscription.stripe_subscription_id = None
    subscription.canceled_at = None
    subscription.save(update_fields=["plan", "stripe_subscription_id", "canceled_at", "updated_at"])
    return subscription


def start_subscription(*, user, plan: Plan, gateway: StripeGateway, request_id: str = "") -> CheckoutSession:
    """Open an incomplete Stripe subscription for ``user`` on ``plan``.

    The returned client secret lets the client confirm the first payment; the
    resulting ``invoice.paid`` event activates the subscription.
    """

    _check_purchasable(plan, user)

    with transaction.atomic():
        subscription = _lock_or_create(user, plan)
        customer_id = ensure_processor_customer(subscription, gateway)

        attempt = BillingAuditLog.objects.filter(subscription=subscription, event_type=CHECKOUT_STARTED).count() + 1
        remote = gateway.create_subscription(
            customer_id,
            plan.stripe_price_id,
            {
                SUBSCRIPTION_METADATA_KEY: subscription.pk,
                USER_METADATA_KEY: user.pk,
                "local_plan_id": plan.pk,
            },
            idempotency_key=f"subscription:{subscription.pk}:start:{plan.pk}:{attempt}",
        )

        subscription.stripe_subscription_id = remote.id
        subscription.save(update_fields=["stripe_subscription_id", "updated_at"])

        pending_entry = None
        if remote.latest_invoice_id and isinstance(remote.amount_due, int) and remote.amount_due > 0:
            write = ledger_service.open_pending_entry(
                subscription=subscription,
                group=remote.latest_invoice_id,
                amount_in_cents=remote.amount_due,
                currency=remote.currency or plan.currency,
                payment_type=PaymentType.INITIAL,
                invoice_id=remote.latest_invoice_id,
                payment_intent_id=remote.payment_intent_id,
                metadata={"billing_reason": "subscription_create", "source": "checkout"},
            )
            pending_entry = write.entry

        BillingAuditLog.objects.create(
            subscription=subscription,
            event_type=CHECKOUT_STARTED,
            stripe_id=remote.id,
            actor=_actor(user),
            details={
                "plan": plan.name,
                "attempt": attempt,
                "stripe_status": remote.status,
                "request_id": request_id,
            },
        )

    log_billing_event(
        message="billing.checkout.started",
        subscription_id=subscription.pk,
        actor=_actor(user),
        extra={"plan_id": plan.pk, "stripe_status": remote.status},
    )
    return CheckoutSession(
        subscription=subscription,
        stripe_status=remote.status,
        client_secret=remote.client_secret,
        pending_entry=pending_entry,
    )


def request_cancellation(*, user, gateway: StripeGateway, at_period_end: bool = True, reason: str = "",
                         request_id: str = "") -> CancellationRequest:
    """Ask Stripe to cancel the user's subscription.

    The local subscription keeps its status until ``customer.subscription.deleted``
    arrives; with ``at_period_end`` the user keeps access for the paid period.
    """

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update(of=("self",))
            .select_related("plan")
            .filter(user=user)
            .first()
        )
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            raise NoCancellableSubscription("No subscription to cancel.")
        if not subscription.stripe_subscription_id:
            raise NoCancellableSubscription("Subscription is not linked to Stripe.")

        timing = "period_end" if at_period_end else "immediate"
        remote = gateway.cancel_subscription(
            subscription.stripe_subscription_id,
            at_period_end=at_period_end,
            reason=reason,
            idempotency_key=f"subscription:{subscription.pk}:cancel:{subscription.stripe_subscription_id}:{timing}",
        )

        BillingAuditLog.objects.create(
            subscription=subscription,
            event_type=CANCEL_REQUESTED,
            stripe_id=subscription.stripe_subscription_id,
            actor=_actor(user),
            details={"timing": timing, "reason": reason, "stripe_status": remote.status, "request_id": request_id},
        )

    logger.info("Cancellation (%s) requested for subscription %s.", timing, subscription.pk)
    return CancellationRequest(
        subscription=subscription,
        stripe_status=remote.status,
        cancel_at_period_end=remote.cancel_at_period_end,
    )
