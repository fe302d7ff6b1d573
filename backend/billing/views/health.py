"""Health check for operational tooling."""
from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.services.health import collect_health
from billing.services.stripe_gateway import StripeGateway


class BillingHealthView(APIView):
    permission_classes = [AllowAny]

    gateway_factory = staticmethod(StripeGateway.from_settings)

    def get(self, request):
        with self.gateway_factory() as gateway:
            report = collect_health(gateway)
        http_status = status.HTTP_200_OK if report.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return Response(report.as_dict(), status=http_status)
