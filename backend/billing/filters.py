"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.choices import LedgerStatus, PaymentType
from billing.models import LedgerEntry


class LedgerEntryFilter(django_filters.FilterSet):
    status = django_filters.ChoiceFilter(field_name="status", choices=LedgerStatus.choices)
    payment_type = django_filters.ChoiceFilter(field_name="payment_type", choices=PaymentType.choices)
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")
    refunded = django_filters.BooleanFilter(method="filter_refunded")

    class Meta:
        model = LedgerEntry
        fields = ["status", "payment_type"]

    def filter_refunded(self, queryset, name, value):
        if value:
            return queryset.filter(refunded_amount_in_cents__gt=0)
        return queryset.filter(refunded_amount_in_cents=0)
