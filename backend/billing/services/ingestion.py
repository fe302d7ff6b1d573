"""Webhook ingestion: authenticate, dispatch and map the outcome to an HTTP answer.

Each delivery walks ``RECEIVED -> SIGNATURE_CHECKED -> DISPATCHED ->
ACKNOWLEDGED``; any failure diverts it to ``REJECTED`` with the status code the
sender's retry policy expects.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.core.exceptions import ValidationError

from billing.errors import (
    EntityNotVisible,
    EventValidationError,
    InvalidSignature,
    LedgerTransitionError,
    ProcessorConfigurationError,
)
from billing.observability.logging import log_security_event
from billing.observability.metrics import WEBHOOK_EVENT_COUNT, WEBHOOK_LATENCY
from billing.services.dispatcher import DispatchResult, EventDispatcher
from billing.services.events import ProcessorEvent, classify_event, record_event_failure
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

UNKNOWN_FAMILY = "unknown"


class IngestionState(enum.Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


@dataclass
class IngestionResult:
    state: IngestionState
    http_status: int
    body: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    rejected_at: Optional[IngestionState] = None


def _record_failure(event: ProcessorEvent, error: str) -> None:
    try:
        record_event_failure(event, error)
    except Exception:  # noqa: BLE001
        logger.exception("Could not record failure of Stripe event %s.", event.id)


class WebhookIngestor:
    """Runs one webhook delivery through verification and dispatch."""

    def __init__(self, gateway: StripeGateway, dispatcher: EventDispatcher) -> None:
        self.gateway = gateway
        self.dispatcher = dispatcher

    def ingest(self, raw_body: bytes, signature: Optional[str], *, remote_addr: Optional[str] = None) -> IngestionResult:
        started = time.monotonic()
        result = self._ingest(raw_body, signature, remote_addr)
        family = self._family_label(result.event_type)
        WEBHOOK_EVENT_COUNT.labels(event_family=family, status=str(result.http_status)).inc()
        WEBHOOK_LATENCY.labels(event_family=family).observe(time.monotonic() - started)
        return result

    @staticmethod
    def _family_label(event_type: Optional[str]) -> str:
        if not event_type:
            return UNKNOWN_FAMILY
        family = classify_event(event_type)
        return family.value if family else UNKNOWN_FAMILY

    def _ingest(self, raw_body: bytes, signature: Optional[str], remote_addr: Optional[str]) -> IngestionResult:
        if not raw_body or not signature:
            logger.warning("Rejected Stripe webhook without %s.", "payload" if not raw_body else "signature header")
            return self._reject(400, "Missing payload or signature header.", IngestionState.RECEIVED)

        try:
            event = self.gateway.verify_and_parse_event(raw_body, signature)
        except InvalidSignature as exc:
            log_security_event(
                message="Stripe webhook signature rejected",
                remote_addr=remote_addr,
                extra={"reason": str(exc)},
            )
            return self._reject(401, "Invalid signature.", IngestionState.SIGNATURE_CHECKED)
        except EventValidationError as exc:
            logger.warning("Rejected malformed Stripe webhook: %s", exc)
            return self._reject(400, "Malformed event payload.", IngestionState.SIGNATURE_CHECKED)
        except ProcessorConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            return self._reject(500, "Webhook processing unavailable.", IngestionState.SIGNATURE_CHECKED)

        logger.debug("Stripe event %s (%s) authenticated; dispatching.", event.id, event.type)
        try:
            outcome = self.dispatcher.dispatch(event)
        except EntityNotVisible as exc:
            logger.info("Stripe event %s references an entity not visible yet: %s", event.id, exc)
            _record_failure(event, str(exc))
            return self._reject(404, "Referenced entity not found.", IngestionState.DISPATCHED, event)
        except (EventValidationError, LedgerTransitionError, ValidationError) as exc:
            logger.warning("Stripe event %s rejected permanently: %s", event.id, exc)
            _record_failure(event, str(exc))
            return self._reject(400, "Event could not be applied.", IngestionState.DISPATCHED, event)
        except Exception as exc:  # noqa: BLE001 - any other failure is retried by Stripe
            logger.exception("Unhandled error while processing Stripe event %s (%s).", event.id, event.type)
            _record_failure(event, f"{type(exc).__name__}: {exc}")
            return self._reject(500, "Webhook processing failed.", IngestionState.DISPATCHED, event)

        return IngestionResult(
            state=IngestionState.ACKNOWLEDGED,
            http_status=200,
            body={"received": True, "status": outcome.status},
            event_id=event.id,
            event_type=event.type,
        )

    @staticmethod
    def _reject(http_status: int, detail: str, stage: IngestionState,
                event: Optional[ProcessorEvent] = None) -> IngestionResult:
        return IngestionResult(
            state=IngestionState.REJECTED,
            http_status=http_status,
            body={"received": False, "detail": detail},
            event_id=event.id if event else None,
            event_type=event.type if event else None,
            rejected_at=stage,
        )


__all__ = [
    "DispatchResult",
    "IngestionResult",
    "IngestionState",
    "WebhookIngestor",
]
