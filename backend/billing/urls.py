"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BillingHealthView,
    MySubscriptionView,
    PlanListView,
    StripeWebhookEventTypesView,
    StripeWebhookView,
    SubscriptionCancelView,
    SubscriptionLedgerView,
    UserSubscriptionStatusView,
)

app_name = "billing"

urlpatterns = [
    path("webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("webhooks/stripe/events/", StripeWebhookEventTypesView.as_view(), name="stripe-webhook-events"),
    path("health/", BillingHealthView.as_view(), name="health"),
    path("plans/", PlanListView.as_view(), name="plans"),
    path("subscription/", MySubscriptionView.as_view(), name="my-subscription"),
    path("subscription/cancel/", SubscriptionCancelView.as_view(), name="my-subscription-cancel"),
    path(
        "admin/users/<int:user_id>/subscription/",
        UserSubscriptionStatusView.as_view(),
        name="admin-user-subscription",
    ),
    path(
        "admin/subscriptions/<int:subscription_id>/ledger/",
        SubscriptionLedgerView.as_view(),
        name="admin-subscription-ledger",
    ),
]
