"""DRF serializers for the billing read surfaces.

None of these expose Stripe identifiers.
"""
from __future__ import annotations

from rest_framework import serializers

from billing.models import LedgerEntry, Plan
from billing.services.plan_registry import format_price


class PlanSerializer(serializers.ModelSerializer):
    display_price = serializers.SerializerMethodField()

    class Meta:
        model = Plan
        fields = [
            "id",
            "name",
            "description",
            "price_in_cents",
            "currency",
            "billing_interval",
            "display_price",
            "allowed_user_types",
            "features",
            "display_order",
        ]
        read_only_fields = fields

    def get_display_price(self, obj: Plan) -> str:
        return format_price(obj.price_in_cents, obj.currency)


class LedgerEntrySerializer(serializers.ModelSerializer):
    id = serializers.CharField(read_only=True)

    class Meta:
        model = LedgerEntry
        fields = [
            "id",
            "status",
            "payment_type",
            "amount_in_cents",
            "refunded_amount_in_cents",
            "currency",
            "failure_code",
            "failure_message",
            "created_at",
            "processed_at",
            "refunded_at",
        ]
        read_only_fields = fields


class SubscriptionStatusSerializer(serializers.Serializer):
    """Serializes :class:`billing.services.admin_bridge.SubscriptionStatusSummary`."""

    subscription_id = serializers.IntegerField()
    user_id = serializers.IntegerField()
    status = serializers.CharField()
    is_active = serializers.BooleanField()
    plan_name = serializers.CharField(allow_null=True)
    billing_interval = serializers.CharField(allow_null=True)
    current_period_start = serializers.DateTimeField(allow_null=True)
    current_period_end = serializers.DateTimeField(allow_null=True)
    canceled_at = serializers.DateTimeField(allow_null=True)


class SupportedEventSerializer(serializers.Serializer):
    event_type = serializers.CharField()
    family = serializers.CharField()
    description = serializers.CharField()


class SubscriptionStartSerializer(serializers.Serializer):
    plan_id = serializers.PrimaryKeyRelatedField(queryset=Plan.objects.filter(is_active=True), source="plan")


class SubscriptionCancelSerializer(serializers.Serializer):
    at_period_end = serializers.BooleanField(default=True)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
