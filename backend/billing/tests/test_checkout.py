from unittest import mock

import pytest
from django.urls import reverse
from rest_framework.test import APIClient

from billing.choices import LedgerStatus, PaymentType, SubscriptionStatus
from billing.errors import (
    NoCancellableSubscription,
    PlanNotPurchasable,
    ProcessorRequestError,
    SubscriptionAlreadyActive,
)
from billing.models import BillingAuditLog, LedgerEntry, Plan, Subscription
from billing.services.checkout import CANCEL_REQUESTED, CHECKOUT_STARTED, request_cancellation, start_subscription
from billing.services.dispatcher import EventDispatcher
from billing.tests.conftest import FakeGateway, invoice_object, make_event, ts
from billing.views.subscriptions import MySubscriptionView, SubscriptionCancelView

pytestmark = pytest.mark.django_db


def _synced(plan, price_id="price_monthly"):
    Plan.objects.filter(pk=plan.pk).update(stripe_price_id=price_id)
    plan.refresh_from_db()
    return plan


@pytest.fixture
def dispatcher(notifications):
    return EventDispatcher(notifier=notifications)


def test_start_subscription_opens_pending_first_payment(user, monthly_plan, fake_gateway):
    plan = _synced(monthly_plan)

    session = start_subscription(user=user, plan=plan, gateway=fake_gateway)

    subscription = Subscription.objects.get(user=user)
    assert subscription.status == SubscriptionStatus.INCOMPLETE
    assert subscription.plan_id == plan.pk
    assert subscription.stripe_subscription_id == session.subscription.stripe_subscription_id
    assert subscription.stripe_customer_id in fake_gateway.customers
    assert session.client_secret.endswith("_secret")

    remote = fake_gateway.subscriptions[subscription.stripe_subscription_id]
    assert remote["price"] == "price_monthly"
    assert remote["metadata"]["local_subscription_id"] == str(subscription.pk)
    assert remote["metadata"]["local_user_id"] == str(user.pk)

    entry = LedgerEntry.objects.get()
    assert entry == session.pending_entry
    assert entry.status == LedgerStatus.PENDING
    assert entry.payment_type == PaymentType.INITIAL
    assert entry.amount_in_cents == 2999
    assert BillingAuditLog.objects.filter(subscription=subscription, event_type=CHECKOUT_STARTED).count() == 1


def test_paid_first_invoice_finalizes_checkout_entry(user, monthly_plan, fake_gateway, dispatcher):
    session = start_subscription(user=user, plan=_synced(monthly_plan), gateway=fake_gateway)
    pending = session.pending_entry

    invoice = invoice_object(
        pending.stripe_invoice_id,
        subscription_id=session.subscription.stripe_subscription_id,
        billing_reason="subscription_create",
        charge="ch_first",
        period_start=ts(2026, 1, 1),
        period_end=ts(2026, 2, 1),
    )
    dispatcher.dispatch(make_event("invoice.paid", invoice, created=ts(2026, 1, 1)))

    entry = LedgerEntry.objects.get()
    assert entry.pk == pending.pk
    assert entry.status == LedgerStatus.SUCCEEDED
    assert entry.external_payment_id == "ch_first"
    subscription = Subscription.objects.get(user=user)
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_active_subscription_cannot_start_another(subscription, monthly_plan, fake_gateway):
    Subscription.objects.filter(pk=subscription.pk).update(status=SubscriptionStatus.ACTIVE)

    with pytest.raises(SubscriptionAlreadyActive):
        start_subscription(user=subscription.user, plan=_synced(monthly_plan), gateway=fake_gateway)

    assert fake_gateway.writes == []


def test_checkout_awaiting_payment_blocks_a_second_one(subscription, monthly_plan, fake_gateway):
    with pytest.raises(SubscriptionAlreadyActive):
        start_subscription(user=subscription.user, plan=_synced(monthly_plan), gateway=fake_gateway)


def test_unsynchronized_or_restricted_plans_are_refused(user, monthly_plan, fake_gateway):
    with pytest.raises(PlanNotPurchasable):
        start_subscription(user=user, plan=monthly_plan, gateway=fake_gateway)

    plan = _synced(monthly_plan)
    Plan.objects.filter(pk=plan.pk).update(allowed_user_types=["coach"])
    plan.refresh_from_db()
    with pytest.raises(PlanNotPurchasable):
        start_subscription(user=user, plan=plan, gateway=fake_gateway)

    assert not Subscription.objects.filter(user=user).exists()
    assert fake_gateway.writes == []


def test_rejected_stripe_subscription_leaves_no_local_row(user, monthly_plan):
    gateway = FakeGateway(reject_subscriptions=True)

    with pytest.raises(ProcessorRequestError):
        start_subscription(user=user, plan=_synced(monthly_plan), gateway=gateway)

    assert not Subscription.objects.filter(user=user).exists()
    assert not LedgerEntry.objects.exists()


def test_cancellation_waits_for_stripe_to_confirm(user, monthly_plan, fake_gateway, dispatcher):
    session = start_subscription(user=user, plan=_synced(monthly_plan), gateway=fake_gateway)
    stripe_id = session.subscription.stripe_subscription_id
    Subscription.objects.filter(pk=session.subscription.pk).update(status=SubscriptionStatus.ACTIVE)

    result = request_cancellation(user=user, gateway=fake_gateway, reason="season over")

    assert result.cancel_at_period_end
    assert fake_gateway.subscriptions[stripe_id]["cancellation_reason"] == "season over"
    subscription = Subscription.objects.get(user=user)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.canceled_at is None
    assert BillingAuditLog.objects.filter(subscription=subscription, event_type=CANCEL_REQUESTED).exists()

    deleted = {"id": stripe_id, "customer": subscription.stripe_customer_id, "status": "canceled"}
    dispatcher.dispatch(make_event("customer.subscription.deleted", deleted, created=ts(2026, 3, 1)))

    subscription.refresh_from_db()
    assert subscription.status == SubscriptionStatus.CANCELED


def test_nothing_to_cancel(user, fake_gateway):
    with pytest.raises(NoCancellableSubscription):
        request_cancellation(user=user, gateway=fake_gateway)


def test_canceled_subscriber_can_start_again(subscription, yearly_plan, fake_gateway, dispatcher):
    deleted = {"id": "sub_123", "customer": "cus_123", "status": "canceled"}
    dispatcher.dispatch(make_event("customer.subscription.deleted", deleted, created=ts(2026, 1, 5)))

    session = start_subscription(user=subscription.user, plan=_synced(yearly_plan, "price_yearly"),
                                 gateway=fake_gateway)

    subscription.refresh_from_db()
    assert session.subscription.pk == subscription.pk
    assert subscription.plan_id == yearly_plan.pk
    assert subscription.stripe_subscription_id not in (None, "sub_123")
    assert subscription.stripe_customer_id == "cus_123"
    assert subscription.canceled_at is None
    assert subscription.status == SubscriptionStatus.CANCELED
    remote = fake_gateway.subscriptions[subscription.stripe_subscription_id]
    assert remote["idempotency_key"].endswith(":1")
    assert fake_gateway.writes == [f"subscription:{subscription.stripe_subscription_id}"]


@pytest.fixture
def member_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


def test_subscriber_endpoints_require_login(db):
    client = APIClient()
    assert client.get(reverse("billing:my-subscription")).status_code == 403
    assert client.post(reverse("billing:my-subscription-cancel")).status_code == 403


def test_my_subscription_without_one(member_client):
    response = member_client.get(reverse("billing:my-subscription"))

    assert response.status_code == 200
    assert response.json() == {"has_subscription": False, "subscription": None, "recent_payments": []}


def test_start_and_read_back_through_the_api(member_client, monthly_plan, fake_gateway):
    plan = _synced(monthly_plan)

    with mock.patch.object(MySubscriptionView, "gateway_factory", return_value=fake_gateway):
        created = member_client.post(reverse("billing:my-subscription"), {"plan_id": plan.pk}, format="json")
        conflict = member_client.post(reverse("billing:my-subscription"), {"plan_id": plan.pk}, format="json")

    assert created.status_code == 201
    body = created.json()
    assert body["subscription"]["status"] == "incomplete"
    assert body["client_secret"].endswith("_secret")
    assert conflict.status_code == 409

    mine = member_client.get(reverse("billing:my-subscription")).json()
    assert mine["has_subscription"] is True
    assert mine["subscription"]["plan_name"] == plan.name
    assert [payment["status"] for payment in mine["recent_payments"]] == ["pending"]
    assert "sub_fake" not in str(mine)


def test_start_with_unknown_plan_is_rejected(member_client, fake_gateway):
    with mock.patch.object(MySubscriptionView, "gateway_factory", return_value=fake_gateway):
        response = member_client.post(reverse("billing:my-subscription"), {"plan_id": 999999}, format="json")

    assert response.status_code == 400
    assert fake_gateway.writes == []


def test_stripe_rejection_answers_bad_gateway(member_client, monthly_plan):
    gateway = FakeGateway(reject_subscriptions=True)
    with mock.patch.object(MySubscriptionView, "gateway_factory", return_value=gateway):
        response = member_client.post(
            reverse("billing:my-subscription"), {"plan_id": _synced(monthly_plan).pk}, format="json"
        )

    assert response.status_code == 502
    assert "No such customer" not in response.content.decode("utf-8")


def test_cancel_endpoint(member_client, user, monthly_plan, fake_gateway):
    url = reverse("billing:my-subscription-cancel")
    with mock.patch.object(SubscriptionCancelView, "gateway_factory", return_value=fake_gateway):
        missing = member_client.post(url, {}, format="json")
        start_subscription(user=user, plan=_synced(monthly_plan), gateway=fake_gateway)
        accepted = member_client.post(url, {"at_period_end": False}, format="json")

    assert missing.status_code == 404
    assert accepted.status_code == 202
    assert accepted.json()["status"] == "incomplete"
    assert accepted.json()["cancel_at_period_end"] is False
