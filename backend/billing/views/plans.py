"""Public plan catalog."""
from __future__ import annotations

from rest_framework.generics import ListAPIView
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from billing.serializers import PlanSerializer
from billing.services.plan_registry import active_plans, format_price, yearly_savings_in_cents


class PlanListView(ListAPIView):
    serializer_class = PlanSerializer
    permission_classes = [AllowAny]
    pagination_class = None
    filter_backends = []

    def get_queryset(self):
        return active_plans()

    def list(self, request, *args, **kwargs):
        plans = list(self.get_queryset())
        savings = yearly_savings_in_cents(plans)
        currency = plans[0].currency if plans else ""
        return Response(
            {
                "results": self.get_serializer(plans, many=True).data,
                "yearly_savings_in_cents": savings,
                "yearly_savings_display": format_price(savings, currency) if savings else None,
            }
        )
