"""Apply authenticated Stripe events to subscriptions and the payment ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.utils import timezone

from billing.choices import LedgerStatus, PaymentType, SubscriptionStatus
from billing.errors import EventValidationError
from billing.models import Subscription
from billing.observability.logging import log_billing_event
from billing.observability.metrics import PAYMENT_FAILURE_COUNT, PAYMENT_SUCCESS_COUNT
from billing.services import ledger as ledger_service
from billing.services import subscriptions as subscription_service
from billing.services.events import (
    EventFamily,
    ProcessorEvent,
    _coerce_timestamp,
    claim_event,
    mark_event_completed,
)
from billing.state import map_processor_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching one event."""

    status: str
    detail: str = ""
    subscription_id: Optional[int] = None
    ledger_entry_id: Optional[str] = None

    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


Notifier = Callable[[str, Dict[str, Any]], None]


def _enqueue_notification(kind: str, payload: Dict[str, Any]) -> None:
    from billing.tasks import send_billing_notification

    transaction.on_commit(lambda: send_billing_notification.delay(kind, payload))


def _extract_invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Derive coverage window for an invoice from its line items."""

    period_start = _coerce_timestamp(invoice.get("period_start"))
    period_end = _coerce_timestamp(invoice.get("period_end"))

    lines = (invoice.get("lines") or {}).get("data") or []
    if isinstance(lines, list):
        for line in lines:
            if not isinstance(line, dict):
                continue
            line_period = line.get("period") or {}
            line_start = _coerce_timestamp(line_period.get("start"))
            line_end = _coerce_timestamp(line_period.get("end"))

            if line_start and (period_start is None or line_start < period_start):
                period_start = line_start
            if line_end and (period_end is None or line_end > period_end):
                period_end = line_end

    return period_start, period_end


def _extract_line_price(invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        if isinstance(line, dict) and isinstance(line.get("price"), dict) and not line.get("proration"):
            return line["price"]
    return None


def _extract_failure(obj: Dict[str, Any]) -> Tuple[str, str]:
    error = obj.get("last_payment_error") or {}
    code = error.get("decline_code") or error.get("code") or ""
    message = error.get("message") or ""
    if not message:
        charge = obj.get("charge")
        if isinstance(charge, dict):
            code = code or charge.get("failure_code") or ""
            message = charge.get("failure_message") or ""
    return code, message or "Payment failed"


def _object_id(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("id") or ""
    return value or ""


def _require_amount(obj: Dict[str, Any], field: str) -> int:
    value = obj.get(field)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise EventValidationError(f"Field '{field}' must be a non-negative integer amount.")
    return value


def _require_currency(obj: Dict[str, Any]) -> str:
    currency = obj.get("currency")
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise EventValidationError("Field 'currency' must be a three-letter ISO currency code.")
    return currency


def _require_id(obj: Dict[str, Any]) -> str:
    object_id = obj.get("id")
    if not object_id or not isinstance(object_id, str):
        raise EventValidationError("Event data object is missing its identifier.")
    return object_id


class EventDispatcher:
    """Routes each supported event family to exactly one handler.

    The handler table is checked against :class:`EventFamily` on construction so
    a family without a handler fails at start-up instead of at delivery time.
    """

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self._notify = notifier or _enqueue_notification
        self._handlers: Dict[EventFamily, Callable[[ProcessorEvent], DispatchResult]] = {
            EventFamily.PAYMENT_INITIATED: self._handle_payment_initiated,
            EventFamily.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            EventFamily.PAYMENT_FAILED: self._handle_payment_failed,
            EventFamily.PAYMENT_CANCELED: self._handle_payment_canceled,
            EventFamily.INVOICE_OPENED: self._handle_invoice_opened,
            EventFamily.INVOICE_PAID: self._handle_invoice_paid,
            EventFamily.INVOICE_FAILED: self._handle_invoice_failed,
            EventFamily.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventFamily.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventFamily.REFUND: self._handle_refund,
        }
        missing = set(EventFamily) - set(self._handlers)
        if missing:
            raise ImproperlyConfigured(
                "No handler for event families: " + ", ".join(sorted(f.value for f in missing))
            )

    def dispatch(self, event: ProcessorEvent) -> DispatchResult:
        family = event.family
        if family is None:
            logger.info("Ignoring unsupported Stripe event type '%s'.", event.type)
            return DispatchResult(status=DispatchResult.IGNORED, detail="Unsupported event type")

        with transaction.atomic():
            log_entry, already_processed = claim_event(event)
            if already_processed:
                logger.info("Stripe event %s already processed; skipping.", event.id)
                return DispatchResult(
                    status=DispatchResult.DUPLICATE,
                    detail="Event already processed",
                    subscription_id=log_entry.subscription_id,
                )

            result = self._handlers[family](event)
            mark_event_completed(
                log_entry,
                ignored=result.status == DispatchResult.IGNORED,
                subscription_id=result.subscription_id,
            )

        log_billing_event(
            message=f"stripe.{event.type}",
            event_id=event.id,
            subscription_id=result.subscription_id,
            actor=subscription_service.WEBHOOK_ACTOR,
            extra={"status": result.status, "detail": result.detail, "ledger_entry_id": result.ledger_entry_id},
        )
        return result

    # Helpers

    @staticmethod
    def _locate_for_payment_intent(intent: Dict[str, Any]) -> Subscription:
        return subscription_service.locate_subscription(
            metadata=intent.get("metadata") or {},
            customer_id=_object_id(intent.get("customer")),
        )

    @staticmethod
    def _locate_for_invoice(invoice: Dict[str, Any]) -> Subscription:
        metadata = dict(invoice.get("metadata") or {})
        details = invoice.get("subscription_details") or {}
        for key, value in (details.get("metadata") or {}).items():
            metadata.setdefault(key, value)
        return subscription_service.locate_subscription(
            stripe_subscription_id=_object_id(invoice.get("subscription")),
            metadata=metadata,
            customer_id=_object_id(invoice.get("customer")),
        )

    @staticmethod
    def _result(write: ledger_service.LedgerWrite, subscription: Subscription, detail: str) -> DispatchResult:
        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail=detail if not write.duplicate else f"{detail} (ledger already up to date)",
            subscription_id=subscription.pk,
            ledger_entry_id=str(write.entry.pk) if write.entry is not None else None,
        )

    def _record_success_metrics(self, write: ledger_service.LedgerWrite, subscription: Subscription,
                                event: ProcessorEvent) -> None:
        if not write.changed or write.entry is None:
            return
        PAYMENT_SUCCESS_COUNT.labels(payment_type=write.entry.payment_type).inc()
        self._notify(
            "payment_succeeded",
            {
                "user_id": subscription.user_id,
                "subscription_id": subscription.pk,
                "amount_in_cents": write.entry.amount_in_cents,
                "currency": write.entry.currency,
                "event_id": event.id,
            },
        )

    def _record_failure_metrics(self, write: ledger_service.LedgerWrite, subscription: Subscription,
                                event: ProcessorEvent) -> None:
        if not write.changed or write.entry is None:
            return
        PAYMENT_FAILURE_COUNT.labels(reason=write.entry.failure_code or "unknown").inc()
        self._notify(
            "payment_failed",
            {
                "user_id": subscription.user_id,
                "subscription_id": subscription.pk,
                "failure_message": write.entry.failure_message,
                "event_id": event.id,
            },
        )

    # One-time payments

    def _handle_payment_initiated(self, event: ProcessorEvent) -> DispatchResult:
        intent = event.data_object
        if intent.get("invoice"):
            return DispatchResult(status=DispatchResult.IGNORED, detail="Payment intent belongs to an invoice")

        intent_id = _require_id(intent)
        amount = _require_amount(intent, "amount")
        if amount == 0:
            return DispatchResult(status=DispatchResult.IGNORED, detail="Zero-amount payment intent")

        subscription = self._locate_for_payment_intent(intent)
        write = ledger_service.open_pending_entry(
            subscription=subscription,
            group=intent_id,
            amount_in_cents=amount,
            currency=_require_currency(intent),
            payment_type=self._one_time_payment_type(subscription),
            payment_intent_id=intent_id,
            metadata={"event_id": event.id},
        )
        return self._result(write, subscription, "Pending payment recorded")

    def _handle_payment_succeeded(self, event: ProcessorEvent) -> DispatchResult:
        intent = event.data_object
        if intent.get("invoice"):
            return DispatchResult(status=DispatchResult.IGNORED, detail="Payment intent belongs to an invoice")

        intent_id = _require_id(intent)
        amount = intent.get("amount_received") or intent.get("amount")
        amount = _require_amount({"amount": amount}, "amount")
        subscription = self._locate_for_payment_intent(intent)
        charge_id = _object_id(intent.get("latest_charge"))

        write = None
        if amount > 0:
            write = ledger_service.record_outcome(
                subscription=subscription,
                attempt_key=charge_id or intent_id,
                group=intent_id,
                status=LedgerStatus.SUCCEEDED,
                amount_in_cents=amount,
                currency=_require_currency(intent),
                payment_type=ledger_service.resolve_payment_type(
                    intent_id, self._one_time_payment_type(subscription)
                ),
                processed_at=event.created,
                payment_intent_id=intent_id,
                charge_id=charge_id,
                metadata={"event_id": event.id},
            )

        extra_fields = subscription_service.link_processor_ids(
            subscription, customer_id=_object_id(intent.get("customer"))
        )
        subscription_service.apply_status(
            subscription,
            SubscriptionStatus.ACTIVE,
            event_at=event.created,
            event_id=event.id,
            extra_fields=extra_fields,
        )
        if write is None:
            return DispatchResult(
                status=DispatchResult.PROCESSED,
                detail="Zero-amount payment; subscription activated",
                subscription_id=subscription.pk,
            )
        self._record_success_metrics(write, subscription, event)
        return self._result(write, subscription, "Payment succeeded")

    def _handle_payment_failed(self, event: ProcessorEvent) -> DispatchResult:
        intent = event.data_object
        if intent.get("invoice"):
            return DispatchResult(status=DispatchResult.IGNORED, detail="Payment intent belongs to an invoice")

        intent_id = _require_id(intent)
        amount = _require_amount(intent, "amount")
        if amount == 0:
            return DispatchResult(status=DispatchResult.IGNORED, detail="Zero-amount payment intent")

        subscription = self._locate_for_payment_intent(intent)
        error = intent.get("last_payment_error") or {}
        charge_id = _object_id(error.get("charge")) or _object_id(intent.get("latest_charge"))
        failure_code, failure_message = _extract_failure(intent)

        write = ledger_service.record_outcome(
            subscription=subscription,
            attempt_key=charge_id or f"{intent_id}:{event.id}",
            group=intent_id,
            status=LedgerStatus.FAILED,
            amount_in_cents=amount,
            currency=_require_currency(intent),
            payment_type=ledger_service.resolve_payment_type(intent_id, self._one_time_payment_type(subscription)),
            processed_at=event.created,
            payment_intent_id=intent_id,
            charge_id=charge_id,
            failure_code=failure_code,
            failure_message=failure_message,
            metadata={"event_id": event.id},
        )

        # A subscription that was ever paid for keeps its status on a failed one-time charge.
        if subscription.status != SubscriptionStatus.CANCELED and not ledger_service.has_successful_payment(
            subscription
        ):
            subscription_service.apply_status(
                subscription,
                SubscriptionStatus.INCOMPLETE,
                event_at=event.created,
                event_id=event.id,
            )
        self._record_failure_metrics(write, subscription, event)
        return self._result(write, subscription, "Payment failed")

    def _handle_payment_canceled(self, event: ProcessorEvent) -> DispatchResult:
        intent = event.data_object
        if intent.get("invoice"):
            return DispatchResult(status=DispatchResult.IGNORED, detail="Payment intent belongs to an invoice")

        intent_id = _require_id(intent)
        write = ledger_service.cancel_pending(
            group=intent_id,
            processed_at=event.created,
            reason=intent.get("cancellation_reason") or "canceled",
        )
        if write.entry is None:
            return DispatchResult(status=DispatchResult.IGNORED, detail="No pending payment to cancel")
        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail="Pending payment canceled",
            subscription_id=write.entry.subscription_id,
            ledger_entry_id=str(write.entry.pk),
        )

    @staticmethod
    def _one_time_payment_type(subscription: Subscription) -> str:
        return PaymentType.RECURRING if ledger_service.has_successful_payment(subscription) else PaymentType.INITIAL

    # Invoices

    def _classify_invoice(self, invoice: Dict[str, Any], subscription: Subscription, amount: int) -> str:
        reason = invoice.get("billing_reason")
        if reason == "subscription_create":
            return PaymentType.INITIAL
        if reason == "subscription_cycle":
            return PaymentType.RECURRING
        if reason == "subscription_update":
            current_price = subscription.plan.price_in_cents if subscription.plan_id else None
            line_price = _extract_line_price(invoice) or {}
            new_price = line_price.get("unit_amount")
            if not isinstance(new_price, int):
                new_price = amount
            if current_price is None or new_price > current_price:
                return PaymentType.UPGRADE
            return PaymentType.DOWNGRADE
        return self._one_time_payment_type(subscription)

    def _handle_invoice_opened(self, event: ProcessorEvent) -> DispatchResult:
        invoice = event.data_object
        invoice_id = _require_id(invoice)
        amount = _require_amount(invoice, "amount_due")
        if amount == 0:
            return DispatchResult(status=DispatchResult.IGNORED, detail="Nothing due on invoice")

        subscription = self._locate_for_invoice(invoice)
        write = ledger_service.open_pending_entry(
            subscription=subscription,
            group=invoice_id,
            amount_in_cents=amount,
            currency=_require_currency(invoice),
            payment_type=self._classify_invoice(invoice, subscription, amount),
            invoice_id=invoice_id,
            payment_intent_id=_object_id(invoice.get("payment_intent")),
            metadata={"event_id": event.id, "billing_reason": invoice.get("billing_reason") or ""},
        )
        return self._result(write, subscription, "Pending invoice payment recorded")

    def _invoice_attempt_key(self, invoice: Dict[str, Any], invoice_id: str) -> Tuple[str, str, str]:
        charge_id = _object_id(invoice.get("charge"))
        intent_id = _object_id(invoice.get("payment_intent"))
        attempt_key = charge_id or intent_id or f"{invoice_id}:{invoice.get('attempt_count') or 0}"
        return attempt_key, charge_id, intent_id

    def _handle_invoice_paid(self, event: ProcessorEvent) -> DispatchResult:
        invoice = event.data_object
        invoice_id = _require_id(invoice)
        amount = _require_amount(invoice, "amount_paid")
        subscription = self._locate_for_invoice(invoice)
        period_start, period_end = _extract_invoice_period(invoice)

        write = None
        if amount > 0:
            attempt_key, charge_id, intent_id = self._invoice_attempt_key(invoice, invoice_id)
            write = ledger_service.record_outcome(
                subscription=subscription,
                attempt_key=attempt_key,
                group=invoice_id,
                status=LedgerStatus.SUCCEEDED,
                amount_in_cents=amount,
                currency=_require_currency(invoice),
                payment_type=ledger_service.resolve_payment_type(
                    invoice_id, self._classify_invoice(invoice, subscription, amount)
                ),
                processed_at=_coerce_timestamp((invoice.get("status_transitions") or {}).get("paid_at"))
                or event.created,
                invoice_id=invoice_id,
                payment_intent_id=intent_id,
                charge_id=charge_id,
                metadata={"event_id": event.id, "billing_reason": invoice.get("billing_reason") or ""},
            )

        extra_fields = subscription_service.link_processor_ids(
            subscription,
            stripe_subscription_id=_object_id(invoice.get("subscription")),
            customer_id=_object_id(invoice.get("customer")),
        )
        applied = subscription_service.apply_status(
            subscription,
            SubscriptionStatus.ACTIVE,
            event_at=event.created,
            event_id=event.id,
            period_start=period_start,
            period_end=period_end,
            extra_fields=extra_fields,
        )
        if not applied:
            # The status is stale but the paid window is still authoritative.
            subscription_service.apply_period(subscription, period_start, period_end, extra_fields=extra_fields)

        if write is None:
            return DispatchResult(
                status=DispatchResult.PROCESSED,
                detail="Zero-amount invoice; period updated",
                subscription_id=subscription.pk,
            )
        self._record_success_metrics(write, subscription, event)
        return self._result(write, subscription, "Invoice paid")

    def _handle_invoice_failed(self, event: ProcessorEvent) -> DispatchResult:
        invoice = event.data_object
        invoice_id = _require_id(invoice)
        amount = _require_amount(invoice, "amount_due")
        subscription = self._locate_for_invoice(invoice)

        write = None
        if amount > 0:
            attempt_key, charge_id, intent_id = self._invoice_attempt_key(invoice, invoice_id)
            failure_code, failure_message = _extract_failure(invoice)
            write = ledger_service.record_outcome(
                subscription=subscription,
                attempt_key=attempt_key,
                group=invoice_id,
                status=LedgerStatus.FAILED,
                amount_in_cents=amount,
                currency=_require_currency(invoice),
                payment_type=ledger_service.resolve_payment_type(
                    invoice_id, self._classify_invoice(invoice, subscription, amount)
                ),
                processed_at=event.created,
                invoice_id=invoice_id,
                payment_intent_id=intent_id,
                charge_id=charge_id,
                failure_code=failure_code,
                failure_message=failure_message,
                metadata={
                    "event_id": event.id,
                    "attempt_count": invoice.get("attempt_count") or 0,
                    "next_payment_attempt": invoice.get("next_payment_attempt"),
                },
            )

        subscription_service.apply_status(
            subscription,
            SubscriptionStatus.PAST_DUE,
            event_at=event.created,
            event_id=event.id,
        )
        if write is None:
            return DispatchResult(
                status=DispatchResult.PROCESSED,
                detail="Invoice payment failed",
                subscription_id=subscription.pk,
            )
        self._record_failure_metrics(write, subscription, event)
        return self._result(write, subscription, "Invoice payment failed")

    # Subscriptions

    def _handle_subscription_updated(self, event: ProcessorEvent) -> DispatchResult:
        remote = event.data_object
        remote_id = _require_id(remote)
        status = map_processor_status(remote.get("status"))
        if status is None:
            raise EventValidationError(f"Unknown Stripe subscription status {remote.get('status')!r}.")

        subscription = subscription_service.locate_subscription(
            stripe_subscription_id=remote_id,
            metadata=remote.get("metadata") or {},
            customer_id=_object_id(remote.get("customer")),
        )

        items = (remote.get("items") or {}).get("data") or []
        first_item = items[0] if items and isinstance(items[0], dict) else {}
        period_start = _coerce_timestamp(remote.get("current_period_start") or first_item.get("current_period_start"))
        period_end = _coerce_timestamp(remote.get("current_period_end") or first_item.get("current_period_end"))

        extra_fields = subscription_service.link_processor_ids(
            subscription,
            stripe_subscription_id=remote_id,
            customer_id=_object_id(remote.get("customer")),
        )
        plan = subscription_service.plan_for_price(_object_id(first_item.get("price")))
        applied = subscription_service.apply_status(
            subscription,
            status,
            event_at=event.created,
            event_id=event.id,
            period_start=period_start,
            period_end=period_end,
            extra_fields=extra_fields,
        )
        if applied and plan is not None and subscription.plan_id != plan.pk:
            subscription.plan = plan
            subscription.save(update_fields=["plan", "updated_at"])
        elif not applied and extra_fields:
            subscription.save(update_fields=extra_fields + ["updated_at"])

        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail="Subscription mirrored" if applied else "Stale subscription update discarded",
            subscription_id=subscription.pk,
        )

    def _handle_subscription_deleted(self, event: ProcessorEvent) -> DispatchResult:
        remote = event.data_object
        remote_id = _require_id(remote)
        subscription = subscription_service.locate_subscription(
            stripe_subscription_id=remote_id,
            metadata=remote.get("metadata") or {},
            customer_id=_object_id(remote.get("customer")),
        )

        extra_fields = []
        if subscription.canceled_at is None:
            subscription.canceled_at = (
                _coerce_timestamp(remote.get("ended_at"))
                or _coerce_timestamp(remote.get("canceled_at"))
                or timezone.now()
            )
            extra_fields.append("canceled_at")

        applied = subscription_service.apply_status(
            subscription,
            SubscriptionStatus.CANCELED,
            event_at=event.created,
            event_id=event.id,
            extra_fields=extra_fields,
        )
        if applied:
            self._notify("subscription_canceled", {"user_id": subscription.user_id, "subscription_id": subscription.pk})
        else:
            subscription.refresh_from_db(fields=["canceled_at"])

        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail="Subscription canceled" if applied else "Stale cancellation discarded",
            subscription_id=subscription.pk,
        )

    # Refunds

    def _handle_refund(self, event: ProcessorEvent) -> DispatchResult:
        charge = event.data_object
        charge_id = _require_id(charge)
        refunded_total = _require_amount(charge, "amount_refunded")

        entry = ledger_service.locate_refund_target(
            charge_id=charge_id,
            payment_intent_id=_object_id(charge.get("payment_intent")),
        )
        write = ledger_service.apply_refund(entry=entry, refunded_total=refunded_total, refunded_at=event.created)
        if write.changed and entry.subscription_id:
            self._notify(
                "refund_applied",
                {
                    "user_id": entry.user_id,
                    "subscription_id": entry.subscription_id,
                    "refunded_amount_in_cents": entry.refunded_amount_in_cents,
                    "event_id": event.id,
                },
            )
        return DispatchResult(
            status=DispatchResult.PROCESSED,
            detail="Refund applied" if write.changed else "Refund already applied",
            subscription_id=entry.subscription_id,
            ledger_entry_id=str(entry.pk),
        )
