"""Subscription lookups and the write side of subscription state transitions."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from django.db import transaction

from billing.errors import SubscriptionNotFound
from billing.models import BillingAuditLog, Plan, Subscription
from billing.state import extend_period, subscription_transition

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "stripe_webhook"
SUBSCRIPTION_METADATA_KEY = "local_subscription_id"
USER_METADATA_KEY = "local_user_id"


def locate_subscription(
    *,
    stripe_subscription_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    customer_id: Optional[str] = None,
    for_update: bool = True,
) -> Subscription:
    """Resolve the local subscription an event refers to.

    Order: Stripe subscription id, then the local ids carried in metadata, then
    the Stripe customer id. Raises :class:`SubscriptionNotFound` when nothing
    matches, which the sender retries.
    """

    queryset = Subscription.objects.select_related("plan", "user")
    if for_update:
        queryset = queryset.select_for_update(of=("self",))

    if stripe_subscription_id:
        subscription = queryset.filter(stripe_subscription_id=stripe_subscription_id).first()
        if subscription:
            return subscription

    metadata = metadata or {}
    local_id = _as_int(metadata.get(SUBSCRIPTION_METADATA_KEY))
    if local_id is not None:
        subscription = queryset.filter(pk=local_id).first()
        if subscription:
            return subscription

    user_id = _as_int(metadata.get(USER_METADATA_KEY))
    if user_id is not None:
        subscription = queryset.filter(user_id=user_id).first()
        if subscription:
            return subscription

    if customer_id:
        subscription = queryset.filter(stripe_customer_id=customer_id).first()
        if subscription:
            return subscription

    raise SubscriptionNotFound("Unable to locate a local subscription for the event.")


def _as_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def link_processor_ids(subscription: Subscription, *, stripe_subscription_id: Optional[str] = None,
                       customer_id: Optional[str] = None) -> list:
    """Record Stripe identifiers the first time an event reveals them."""

    changed = []
    if stripe_subscription_id and subscription.stripe_subscription_id != stripe_subscription_id:
        subscription.stripe_subscription_id = stripe_subscription_id
        changed.append("stripe_subscription_id")
    if customer_id and not subscription.stripe_customer_id:
        subscription.stripe_customer_id = customer_id
        changed.append("stripe_customer_id")
    return changed


def apply_status(
    subscription: Subscription,
    new_status: str,
    *,
    event_at: datetime,
    event_id: str,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    extra_fields: Iterable[str] = (),
) -> bool:
    """Apply a status change ordered by the event timestamp.

    Returns ``False`` when the event is older than the stored state; nothing is
    written to the subscription in that case and the stale delivery is audited.
    """

    next_state = subscription_transition(subscription.state, new_status, event_at)
    if next_state is None:
        BillingAuditLog.objects.create(
            subscription=subscription,
            event_type="billing.subscription.stale_event",
            stripe_id=event_id,
            actor=WEBHOOK_ACTOR,
            details={
                "requested_status": new_status,
                "current_status": subscription.status,
                "event_at": event_at.isoformat(),
                "status_event_at": subscription.status_event_at.isoformat()
                if subscription.status_event_at
                else None,
            },
        )
        logger.info(
            "Discarded stale status %s for subscription %s from event %s.",
            new_status,
            subscription.pk,
            event_id,
        )
        return False

    previous_status = subscription.status
    next_state = extend_period(next_state, period_start, period_end)
    changed = subscription.apply_state(next_state) + list(extra_fields)
    if changed:
        subscription.save(update_fields=sorted(set(changed)) + ["updated_at"])

    if previous_status != subscription.status:
        BillingAuditLog.objects.create(
            subscription=subscription,
            event_type="billing.subscription.status_changed",
            stripe_id=event_id,
            actor=WEBHOOK_ACTOR,
            details={"from": previous_status, "to": subscription.status},
        )
    return True


def apply_period(subscription: Subscription, period_start: Optional[datetime],
                 period_end: Optional[datetime], *, extra_fields: Iterable[str] = ()) -> bool:
    """Extend the current period without touching status."""

    changed = subscription.apply_state(extend_period(subscription.state, period_start, period_end))
    changed += list(extra_fields)
    if changed:
        subscription.save(update_fields=sorted(set(changed)) + ["updated_at"])
    return bool(changed)


def plan_for_price(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    return Plan.objects.filter(stripe_price_id=price_id).first()


def ensure_processor_customer(subscription: Subscription, gateway) -> str:
    """Create the Stripe customer for the subscription's user once and remember it."""

    if subscription.stripe_customer_id:
        return subscription.stripe_customer_id

    user = subscription.user
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    customer_id = gateway.create_customer(
        user.pk,
        user.email,
        full_name,
        metadata={"local_user_type": getattr(user, "user_type", ""), SUBSCRIPTION_METADATA_KEY: subscription.pk},
    )
    with transaction.atomic():
        locked = Subscription.objects.select_for_update().get(pk=subscription.pk)
        if locked.stripe_customer_id:
            subscription.stripe_customer_id = locked.stripe_customer_id
            return locked.stripe_customer_id
        locked.stripe_customer_id = customer_id
        locked.save(update_fields=["stripe_customer_id", "updated_at"])
    subscription.stripe_customer_id = customer_id
    logger.info("Linked subscription %s to Stripe customer %s.", subscription.pk, customer_id)
    return customer_id
