from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import BillingAuditLog, LedgerEntry, Plan, Subscription, WebhookEventLog


class ReadOnlyAdminMixin:
    """Billing state changes only through Stripe events; the admin only inspects it."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


def _subscription_link(subscription_id):
    if not subscription_id:
        return "-"
    url = reverse("admin:billing_subscription_change", args=[subscription_id])
    return format_html('<a href="{}">#{}</a>', url, subscription_id)


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Plans are registered from the catalog; descriptive fields stay editable."""

    list_display = (
        "name",
        "price_in_cents",
        "currency",
        "billing_interval",
        "is_active",
        "display_order",
        "stripe_price_id",
    )
    list_filter = ("billing_interval", "is_active")
    search_fields = ("name", "stripe_product_id", "stripe_price_id")
    ordering = ("display_order", "price_in_cents")
    readonly_fields = (
        "price_in_cents",
        "currency",
        "billing_interval",
        "stripe_product_id",
        "stripe_price_id",
        "created_at",
        "updated_at",
    )

    fieldsets = (
        ("Plan", {"fields": ("name", "description", "is_active", "display_order")}),
        ("Terms", {"fields": ("price_in_cents", "currency", "billing_interval")}),
        ("Access", {"fields": ("allowed_user_types", "features")}),
        ("Stripe", {"fields": ("stripe_product_id", "stripe_price_id")}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "plan",
        "status",
        "current_period_end",
        "status_event_at",
        "updated_at",
    )
    list_filter = ("status", "plan")
    search_fields = ("user__email", "user__username", "stripe_subscription_id", "stripe_customer_id")
    list_select_related = ("user", "plan")
    ordering = ("-created_at",)


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Append-only payment ledger."""

    list_display = (
        "id",
        "subscription_display",
        "status",
        "payment_type",
        "amount_in_cents",
        "refunded_amount_in_cents",
        "currency",
        "external_payment_id",
        "created_at",
    )
    list_filter = ("status", "payment_type", "created_at")
    search_fields = (
        "external_payment_id",
        "attempt_group",
        "stripe_invoice_id",
        "stripe_payment_intent_id",
        "stripe_charge_id",
        "user__email",
    )
    ordering = ("-created_at",)

    @admin.display(description="Subscription")
    def subscription_display(self, obj):
        return _subscription_link(obj.subscription_id)


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = (
        "event_id",
        "event_type",
        "status",
        "handled",
        "attempts",
        "subscription_display",
        "created_at",
        "processed_at",
        "last_error_short",
    )
    search_fields = ("event_id", "event_type")
    list_filter = ("status", "handled", "created_at", "processed_at")
    ordering = ("-created_at",)

    @admin.display(description="Subscription")
    def subscription_display(self, obj):
        return _subscription_link(obj.subscription_id)

    @admin.display(description="Last Error")
    def last_error_short(self, obj):
        if not obj.last_error:
            return "-"
        snippet = obj.last_error.strip().splitlines()[0]
        if len(snippet) > 120:
            snippet = f"{snippet[:117]}..."
        return snippet


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Audit log explorer for billing lifecycle events."""

    list_display = ("subscription_display", "event_type", "stripe_id", "actor", "created_at")
    search_fields = ("event_type", "stripe_id", "actor")
    list_filter = ("event_type", "created_at")
    ordering = ("-created_at",)

    @admin.display(description="Subscription")
    def subscription_display(self, obj):
        return _subscription_link(obj.subscription_id)
