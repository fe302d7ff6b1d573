"""Celery tasks for billing follow-up work kept out of the webhook request."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task
from django.conf import settings

from billing.errors import PlanSyncError, ProcessorUnavailable
from billing.observability.logging import log_billing_event
from billing.services.events import purge_processed_events
from billing.services.plan_sync import PlanSynchronizer
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


@shared_task(queue="billing", ignore_result=True)
def send_billing_notification(kind: str, payload: Dict[str, Any]) -> None:
    """Fire-and-forget notifier for billing outcomes.

    Delivery (email, in-app) belongs to the account side of the platform; this
    task records the notification so those consumers can pick it up from logs.
    """

    log_billing_event(
        message=f"billing.notification.{kind}",
        subscription_id=payload.get("subscription_id"),
        actor="billing_notifier",
        extra={"payload": payload},
    )


@shared_task(queue="maintenance")
def cleanup_webhook_event_logs(days: Optional[int] = None) -> int:
    """Remove handled webhook events older than the retention window."""

    if days is None:
        days = getattr(settings, "BILLING_WEBHOOK_EVENT_RETENTION_DAYS", DEFAULT_RETENTION_DAYS)
    deleted = purge_processed_events(retention_days=days)
    logger.info("Cleaned up %s processed webhook events older than %s days.", deleted, days)
    return deleted


@shared_task(bind=True, queue="billing", autoretry_for=(ProcessorUnavailable,), retry_backoff=True, max_retries=3)
def sync_plan_catalog(self, validate_only: bool = False) -> Dict[str, Any]:
    """Run plan synchronization on a worker; the management command is the interactive entry point."""

    with StripeGateway.from_settings() as gateway:
        try:
            report = PlanSynchronizer(gateway, validate_only=validate_only).run()
        except PlanSyncError as exc:
            if isinstance(exc.__cause__, ProcessorUnavailable):
                raise exc.__cause__ from exc
            logger.error("Plan catalog synchronization failed: %s", exc.describe())
            return {"ok": False, "step": exc.step, "error": exc.describe()}

    return {
        "ok": True,
        "external_writes": report.external_writes,
        "prices_created": report.prices_created,
        "prices_adopted": report.prices_adopted,
        "validated": report.validated,
    }
