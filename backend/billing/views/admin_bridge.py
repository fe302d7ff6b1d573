"""Read-only billing queries for the account approval workflow."""
from __future__ import annotations

from dataclasses import asdict

from rest_framework.exceptions import NotFound
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.errors import SubscriptionNotFound
from billing.filters import LedgerEntryFilter
from billing.pagination import BoundedPageNumberPagination
from billing.permissions import IsBillingAdmin
from billing.serializers import LedgerEntrySerializer, SubscriptionStatusSerializer
from billing.services.admin_bridge import current_subscription_status, ledger_history_queryset


class UserSubscriptionStatusView(APIView):
    permission_classes = [IsBillingAdmin]

    def get(self, request, user_id: int):
        summary = current_subscription_status(user_id)
        if summary is None:
            raise NotFound("User has no subscription.")
        payload = asdict(summary)
        payload["is_active"] = summary.is_active
        return Response(SubscriptionStatusSerializer(payload).data)


class SubscriptionLedgerView(ListAPIView):
    serializer_class = LedgerEntrySerializer
    permission_classes = [IsBillingAdmin]
    pagination_class = BoundedPageNumberPagination
    filterset_class = LedgerEntryFilter
    ordering_fields = ("created_at", "processed_at", "amount_in_cents")
    ordering = ("-created_at",)

    def get_queryset(self):
        try:
            return ledger_history_queryset(self.kwargs["subscription_id"])
        except SubscriptionNotFound as exc:
            raise NotFound(str(exc)) from exc
