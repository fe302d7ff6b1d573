"""Subscriber endpoints: view, start and cancel the caller's own subscription."""
from __future__ import annotations

import logging
from dataclasses import asdict

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.errors import CheckoutError, ProcessorError
from billing.models import LedgerEntry
from billing.serializers import (
    LedgerEntrySerializer,
    SubscriptionCancelSerializer,
    SubscriptionStartSerializer,
    SubscriptionStatusSerializer,
)
from billing.services.admin_bridge import SubscriptionStatusSummary, current_subscription_status
from billing.services.checkout import request_cancellation, start_subscription
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

RECENT_PAYMENTS = 10


def _status_payload(summary: SubscriptionStatusSummary) -> dict:
    payload = asdict(summary)
    payload["is_active"] = summary.is_active
    return SubscriptionStatusSerializer(payload).data


def _processor_failure(exc: ProcessorError) -> Response:
    logger.warning("Stripe request for subscriber endpoint failed: %s", exc)
    return Response({"detail": "Payment provider request failed. Try again later."},
                    status=status.HTTP_502_BAD_GATEWAY)


class MySubscriptionView(APIView):
    permission_classes = [IsAuthenticated]

    gateway_factory = staticmethod(StripeGateway.from_settings)

    def get(self, request):
        summary = current_subscription_status(request.user.pk)
        if summary is None:
            return Response({"has_subscription": False, "subscription": None, "recent_payments": []})

        payments = LedgerEntry.objects.filter(subscription_id=summary.subscription_id).order_by("-created_at")
        return Response(
            {
                "has_subscription": True,
                "subscription": _status_payload(summary),
                "recent_payments": LedgerEntrySerializer(payments[:RECENT_PAYMENTS], many=True).data,
            }
        )

    def post(self, request):
        serializer = SubscriptionStartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            with self.gateway_factory() as gateway:
                session = start_subscription(
                    user=request.user,
                    plan=serializer.validated_data["plan"],
                    gateway=gateway,
                    request_id=request.headers.get("X-Request-ID", ""),
                )
        except CheckoutError as exc:
            return Response({"detail": str(exc)}, status=exc.http_status)
        except ProcessorError as exc:
            return _processor_failure(exc)

        summary = current_subscription_status(request.user.pk)
        return Response(
            {
                "subscription": _status_payload(summary),
                "payment_status": session.stripe_status,
                "client_secret": session.client_secret,
            },
            status=status.HTTP_201_CREATED,
        )


class SubscriptionCancelView(APIView):
    permission_classes = [IsAuthenticated]

    gateway_factory = staticmethod(StripeGateway.from_settings)

    def post(self, request):
        serializer = SubscriptionCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            with self.gateway_factory() as gateway:
                result = request_cancellation(
                    user=request.user,
                    gateway=gateway,
                    at_period_end=serializer.validated_data["at_period_end"],
                    reason=serializer.validated_data["reason"],
                    request_id=request.headers.get("X-Request-ID", ""),
                )
        except CheckoutError as exc:
            return Response({"detail": str(exc)}, status=exc.http_status)
        except ProcessorError as exc:
            return _processor_failure(exc)

        return Response(
            {
                "status": result.subscription.status,
                "cancel_at_period_end": result.cancel_at_period_end,
                "detail": "Cancellation requested; the subscription status changes once Stripe confirms it.",
            },
            status=status.HTTP_202_ACCEPTED,
        )
