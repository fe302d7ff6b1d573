"""Stripe webhook endpoint."""
from __future__ import annotations

import logging

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.permissions import IsBillingAdmin
from billing.serializers import SupportedEventSerializer
from billing.services.dispatcher import EventDispatcher
from billing.services.events import EVENT_DESCRIPTIONS, supported_event_types
from billing.services.ingestion import WebhookIngestor
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify a Stripe delivery against the raw body and apply it before answering."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    gateway_factory = staticmethod(StripeGateway.from_settings)
    dispatcher_factory = EventDispatcher

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        # request.body is the byte-for-byte payload Stripe signed; never re-serialize it.
        raw_body = request.body
        signature = request.headers.get("Stripe-Signature")

        with self.gateway_factory() as gateway:
            ingestor = WebhookIngestor(gateway, self.dispatcher_factory())
            result = ingestor.ingest(raw_body, signature, remote_addr=request.META.get("REMOTE_ADDR"))

        if result.http_status >= 500:
            logger.error("Stripe webhook %s answered %s.", result.event_id or "-", result.http_status)
        return Response(result.body, status=result.http_status)


class StripeWebhookEventTypesView(APIView):
    """Event types the webhook endpoint applies; everything else is acknowledged and ignored."""

    permission_classes = [IsBillingAdmin]

    def get(self, request):
        rows = [
            {"event_type": event_type, "family": family.value, "description": EVENT_DESCRIPTIONS[family]}
            for event_type, family in supported_event_types()
        ]
        return Response({"results": SupportedEventSerializer(rows, many=True).data})
