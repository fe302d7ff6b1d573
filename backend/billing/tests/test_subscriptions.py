import pytest
from django.contrib.auth import get_user_model

from billing.errors import SubscriptionNotFound
from billing.models import Subscription
from billing.services.subscriptions import ensure_processor_customer, locate_subscription

pytestmark = pytest.mark.django_db


def test_lookup_prefers_stripe_subscription_id(subscription, monthly_plan):
    other_user = get_user_model().objects.create_user(username="other", email="other@example.com", password="x")
    other = Subscription.objects.create(user=other_user, plan=monthly_plan)

    found = locate_subscription(
        stripe_subscription_id="sub_123",
        metadata={"local_subscription_id": str(other.pk)},
    )
    assert found.pk == subscription.pk


def test_lookup_falls_back_to_metadata_then_customer(subscription):
    assert locate_subscription(metadata={"local_subscription_id": str(subscription.pk)}).pk == subscription.pk
    assert locate_subscription(metadata={"local_user_id": subscription.user_id}).pk == subscription.pk
    assert locate_subscription(stripe_subscription_id="sub_unknown", customer_id="cus_123").pk == subscription.pk


def test_lookup_ignores_garbage_metadata(subscription):
    with pytest.raises(SubscriptionNotFound):
        locate_subscription(metadata={"local_subscription_id": "not-a-number"}, customer_id="cus_other")


def test_processor_customer_is_created_once(user, monthly_plan, fake_gateway):
    subscription = Subscription.objects.create(user=user, plan=monthly_plan)

    first = ensure_processor_customer(subscription, fake_gateway)
    second = ensure_processor_customer(subscription, fake_gateway)

    assert first == second
    assert fake_gateway.writes == [f"customer:{first}"]
    subscription.refresh_from_db()
    assert subscription.stripe_customer_id == first
    assert fake_gateway.customers[first]["metadata"]["local_subscription_id"] == subscription.pk
