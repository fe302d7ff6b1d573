"""Billing API views."""
from billing.views.admin_bridge import SubscriptionLedgerView, UserSubscriptionStatusView
from billing.views.health import BillingHealthView
from billing.views.plans import PlanListView
from billing.views.subscriptions import MySubscriptionView, SubscriptionCancelView
from billing.views.webhooks import StripeWebhookEventTypesView, StripeWebhookView

__all__ = [
    "BillingHealthView",
    "MySubscriptionView",
    "PlanListView",
    "StripeWebhookEventTypesView",
    "StripeWebhookView",
    "SubscriptionCancelView",
    "SubscriptionLedgerView",
    "UserSubscriptionStatusView",
]
