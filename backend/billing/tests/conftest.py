import hashlib
import hmac
import itertools
import json
import time
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional

import pytest
from django.contrib.auth import get_user_model

from billing.errors import ProcessorNotFound, ProcessorRequestError
from billing.models import Subscription
from billing.services.events import ProcessorEvent
from billing.services.plan_registry import PlanDefinition, ensure_local_plan
from billing.services.stripe_gateway import ExternalPrice, ExternalSubscription

WEBHOOK_SECRET = "whsec_test_portall"

_event_ids = itertools.count(1)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def ts(year: int, month: int, day: int, hour: int = 0) -> int:
    return int(datetime(year, month, day, hour, tzinfo=dt_timezone.utc).timestamp())


def make_event_payload(event_type: str, obj: Dict[str, Any], *, event_id: Optional[str] = None,
                       created: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_test_{next(_event_ids)}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else ts(2026, 1, 1),
        "livemode": False,
        "data": {"object": obj},
    }


def make_event(event_type: str, obj: Dict[str, Any], **kwargs) -> ProcessorEvent:
    payload = make_event_payload(event_type, obj, **kwargs)
    return ProcessorEvent.from_payload(payload, raw=json.dumps(payload).encode("utf-8"))


def invoice_object(invoice_id: str, *, subscription_id: str = "sub_123", amount: int = 2999,
                   billing_reason: str = "subscription_cycle", charge: Optional[str] = None,
                   period_start: Optional[int] = None, period_end: Optional[int] = None,
                   attempt_count: int = 1, **extra) -> Dict[str, Any]:
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_id,
        "customer": "cus_123",
        "currency": "usd",
        "amount_due": amount,
        "amount_paid": amount,
        "billing_reason": billing_reason,
        "charge": charge,
        "payment_intent": None,
        "attempt_count": attempt_count,
        "lines": {
            "data": [
                {
                    "period": {"start": period_start, "end": period_end},
                    "price": {"id": "price_monthly", "unit_amount": amount},
                }
            ]
        },
    }
    obj.update(extra)
    return obj


class FakeGateway:
    """In-memory stand-in for :class:`StripeGateway` that records every external write."""

    def __init__(self, *, webhook_secret: str = WEBHOOK_SECRET, reachable: bool = True,
                 reject_subscriptions: bool = False) -> None:
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.idempotent_responses: Dict[str, ExternalSubscription] = {}
        self.reject_subscriptions = reject_subscriptions
        self.writes: List[str] = []
        self.reachable = reachable
        self._webhook_secret = webhook_secret
        self._ids = itertools.count(1)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    @property
    def webhook_secret_configured(self) -> bool:
        return bool(self._webhook_secret)

    def create_product(self, name, description, metadata, *, idempotency_key=None):
        product_id = f"prod_fake_{next(self._ids)}"
        self.products[product_id] = {"name": name, "metadata": dict(metadata)}
        self.writes.append(f"product:{product_id}")
        return product_id

    def create_price(self, product_id, amount_minor_units, currency, interval, metadata, *,
                     lookup_key=None, idempotency_key=None):
        if product_id not in self.products:
            raise ProcessorNotFound(f"No such product: {product_id}")
        price_id = f"price_fake_{next(self._ids)}"
        self.prices[price_id] = {
            "id": price_id,
            "product": product_id,
            "unit_amount": amount_minor_units,
            "currency": currency.lower(),
            "recurring": {"interval": interval},
            "active": True,
            "lookup_key": lookup_key,
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        self.writes.append(f"price:{price_id}")
        return price_id

    def retrieve_price(self, price_id):
        if price_id not in self.prices:
            raise ProcessorNotFound(f"No such price: {price_id}")
        return ExternalPrice.from_stripe(self.prices[price_id])

    def find_price_by_lookup_key(self, lookup_key):
        for price in self.prices.values():
            if price["lookup_key"] == lookup_key:
                return ExternalPrice.from_stripe(price)
        return None

    def create_customer(self, user_id, email, name="", *, metadata=None):
        customer_id = f"cus_fake_{next(self._ids)}"
        self.customers[customer_id] = {"user_id": user_id, "email": email, "metadata": dict(metadata or {})}
        self.writes.append(f"customer:{customer_id}")
        return customer_id

    def create_subscription(self, customer_id, price_id, metadata, *, idempotency_key=None):
        if idempotency_key in self.idempotent_responses:
            return self.idempotent_responses[idempotency_key]
        if self.reject_subscriptions:
            raise ProcessorRequestError("Stripe rejected subscription creation: No such customer")
        number = next(self._ids)
        price = self.prices.get(price_id) or {}
        amount = price.get("unit_amount", 2999)
        subscription_id = f"sub_fake_{number}"
        self.subscriptions[subscription_id] = {
            "customer": customer_id,
            "price": price_id,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "idempotency_key": idempotency_key,
        }
        self.writes.append(f"subscription:{subscription_id}")
        created = ExternalSubscription(
            id=subscription_id,
            status="incomplete",
            customer_id=customer_id,
            latest_invoice_id=f"in_fake_{number}",
            amount_due=amount,
            currency="usd",
            payment_intent_id=f"pi_fake_{number}",
            client_secret=f"pi_fake_{number}_secret",
        )
        if idempotency_key:
            self.idempotent_responses[idempotency_key] = created
        return created

    def cancel_subscription(self, subscription_id, *, at_period_end=True, reason="", idempotency_key=None):
        remote = self.subscriptions[subscription_id]
        remote["cancel_at_period_end"] = at_period_end
        remote["cancellation_reason"] = reason
        self.writes.append(f"cancel:{subscription_id}")
        return ExternalSubscription(
            id=subscription_id,
            status="active" if at_period_end else "canceled",
            customer_id=remote["customer"],
            cancel_at_period_end=at_period_end,
        )

    def ping(self):
        from billing.errors import ProcessorUnavailable

        if not self.reachable:
            raise ProcessorUnavailable("Stripe unreachable during connectivity check.")


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def webhook_settings(settings):
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.STRIPE_SECRET_KEY = ""
    return settings


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="athlete",
        email="athlete@example.com",
        password="pass1234",
    )


@pytest.fixture
def admin_user(db):
    return get_user_model().objects.create_user(
        username="coordinator",
        email="coordinator@example.com",
        password="pass1234",
        user_type="admin",
    )


@pytest.fixture
def monthly_plan(db):
    plan, _ = ensure_local_plan(
        PlanDefinition(key="monthly", name="Portall Monthly", price_in_cents=2999, billing_interval="month")
    )
    return plan


@pytest.fixture
def yearly_plan(db):
    plan, _ = ensure_local_plan(
        PlanDefinition(key="yearly", name="Portall Yearly", price_in_cents=7999, billing_interval="year")
    )
    return plan


@pytest.fixture
def subscription(user, monthly_plan):
    return Subscription.objects.create(
        user=user,
        plan=monthly_plan,
        stripe_subscription_id="sub_123",
        stripe_customer_id="cus_123",
        status=Subscription.Status.INCOMPLETE,
    )


@pytest.fixture
def notifications():
    sent = []

    def notifier(kind, payload):
        sent.append((kind, payload))

    notifier.sent = sent
    return notifier
