"""Narrow gateway around the Stripe API.

All Stripe calls made by the billing core go through :class:`StripeGateway`.
It is constructed explicitly (usually via :meth:`StripeGateway.from_settings`),
opened before use and closed afterwards; nothing is cached at module level.
Stripe SDK exceptions are translated into :mod:`billing.errors` here.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
from django.conf import settings

from billing.errors import (
    EventValidationError,
    InvalidSignature,
    ProcessorConfigurationError,
    ProcessorError,
    ProcessorNotFound,
    ProcessorRequestError,
    ProcessorUnavailable,
)
from billing.services.events import ProcessorEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.5


@dataclass(frozen=True)
class ExternalPrice:
    """The fields of a Stripe price the synchronizer compares against local plans."""

    id: str
    product_id: Optional[str]
    unit_amount: Optional[int]
    currency: str
    interval: Optional[str]
    active: bool
    lookup_key: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, payload: Mapping[str, Any]) -> "ExternalPrice":
        recurring = payload.get("recurring") or {}
        product = payload.get("product")
        if isinstance(product, Mapping):
            product = product.get("id")
        return cls(
            id=payload.get("id") or "",
            product_id=product,
            unit_amount=payload.get("unit_amount"),
            currency=(payload.get("currency") or "").lower(),
            interval=recurring.get("interval") if isinstance(recurring, Mapping) else None,
            active=bool(payload.get("active", False)),
            lookup_key=payload.get("lookup_key"),
            metadata=dict(payload.get("metadata") or {}),
        )


def _expanded_id(value: Any) -> str:
    if isinstance(value, Mapping):
        return value.get("id") or ""
    return value or ""


@dataclass(frozen=True)
class ExternalSubscription:
    """A Stripe subscription with its first invoice, as returned to the checkout flow."""

    id: str
    status: str
    customer_id: str
    latest_invoice_id: str = ""
    amount_due: Optional[int] = None
    currency: str = ""
    payment_intent_id: str = ""
    client_secret: Optional[str] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_stripe(cls, payload: Mapping[str, Any]) -> "ExternalSubscription":
        invoice = payload.get("latest_invoice")
        invoice = invoice if isinstance(invoice, Mapping) else {"id": invoice}
        intent = invoice.get("payment_intent")
        intent = intent if isinstance(intent, Mapping) else {"id": intent}
        return cls(
            id=payload.get("id") or "",
            status=payload.get("status") or "",
            customer_id=_expanded_id(payload.get("customer")),
            latest_invoice_id=invoice.get("id") or "",
            amount_due=invoice.get("amount_due"),
            currency=(invoice.get("currency") or "").lower(),
            payment_intent_id=intent.get("id") or "",
            client_secret=intent.get("client_secret"),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        )


def _stripe_obj_to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(obj, Mapping):
        return dict(obj)
    raise ProcessorError(f"Unexpected Stripe response type {type(obj).__name__}.")


def _translate_stripe_error(exc: stripe.StripeError, operation: str) -> ProcessorError:
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ProcessorConfigurationError(f"Stripe rejected credentials during {operation}.")
    if isinstance(exc, stripe.InvalidRequestError):
        if exc.http_status == 404 or getattr(exc, "code", None) == "resource_missing":
            return ProcessorNotFound(f"Stripe object not found during {operation}.")
        return ProcessorRequestError(f"Stripe rejected {operation}: {exc.user_message or exc}")
    if isinstance(exc, (stripe.RateLimitError, stripe.APIError, stripe.APIConnectionError)):
        return ProcessorUnavailable(f"Stripe unavailable during {operation}.")
    return ProcessorError(f"Stripe error during {operation}.")


class StripeGateway:
    """Stripe client wrapper with a defined open/close lifecycle."""

    def __init__(
        self,
        *,
        api_key: str = "",
        webhook_secret: str = "",
        api_version: Optional[str] = None,
        timeout: int = 20,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        webhook_tolerance: int = 300,
        live_mode: bool = False,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._webhook_tolerance = webhook_tolerance
        self._live_mode = live_mode
        self._client = client
        self._owns_client = client is None
        self._http_client = None
        self._sleep = sleep

    @classmethod
    def from_settings(cls, **overrides: Any) -> "StripeGateway":
        options: Dict[str, Any] = {
            "api_key": getattr(settings, "STRIPE_SECRET_KEY", ""),
            "webhook_secret": getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            "api_version": getattr(settings, "STRIPE_API_VERSION", None),
            "timeout": getattr(settings, "STRIPE_TIMEOUT_SECONDS", 20),
            "max_attempts": getattr(settings, "STRIPE_MAX_NETWORK_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            "webhook_tolerance": getattr(settings, "STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300),
            "live_mode": getattr(settings, "STRIPE_LIVE_MODE", False),
        }
        options.update(overrides)
        return cls(**options)

    # Lifecycle

    def open(self) -> "StripeGateway":
        if self._client is None and self._api_key:
            self._http_client = stripe.RequestsClient(timeout=self._timeout)
            self._client = stripe.StripeClient(
                self._api_key,
                stripe_version=self._api_version or None,
                max_network_retries=0,
                http_client=self._http_client,
            )
        return self

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None
            self._client = None

    def __enter__(self) -> "StripeGateway":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def webhook_secret_configured(self) -> bool:
        return bool(self._webhook_secret)

    def _require_client(self):
        if self._client is None:
            raise ProcessorConfigurationError("STRIPE_SECRET_KEY is not configured or the gateway is not open.")
        return self._client

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
        """Invoke ``fn`` retrying transport failures only; 4xx responses fail immediately."""

        for attempt in range(1, self._max_attempts + 1):
            try:
                return _stripe_obj_to_dict(fn(*args, **kwargs))
            except stripe.APIConnectionError as exc:
                if attempt >= self._max_attempts:
                    logger.error("Stripe %s failed after %s attempts: %s", operation, attempt, exc)
                    raise ProcessorUnavailable(f"Stripe unreachable during {operation}.") from exc
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Stripe %s transport failure (attempt %s/%s); retrying in %.2fs.",
                    operation,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                self._sleep(delay)
            except stripe.StripeError as exc:
                logger.warning("Stripe %s failed: %s", operation, exc)
                raise _translate_stripe_error(exc, operation) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> Dict[str, str]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    # Catalog

    def create_product(self, name: str, description: str, metadata: Mapping[str, Any], *,
                       idempotency_key: Optional[str] = None) -> str:
        client = self._require_client()
        params: Dict[str, Any] = {"name": name, "metadata": {k: str(v) for k, v in metadata.items()}}
        if description:
            params["description"] = description
        product = self._call(
            "product creation",
            client.products.create,
            params=params,
            options=self._options(idempotency_key),
        )
        return product["id"]

    def create_price(self, product_id: str, amount_minor_units: int, currency: str, interval: str,
                     metadata: Mapping[str, Any], *, lookup_key: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> str:
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int):
            raise ProcessorRequestError("Price amounts must be integer minor units.")
        client = self._require_client()
        params: Dict[str, Any] = {
            "product": product_id,
            "unit_amount": amount_minor_units,
            "currency": currency.lower(),
            "recurring": {"interval": interval},
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if lookup_key:
            params["lookup_key"] = lookup_key
        price = self._call(
            "price creation",
            client.prices.create,
            params=params,
            options=self._options(idempotency_key),
        )
        return price["id"]

    def retrieve_price(self, price_id: str) -> ExternalPrice:
        client = self._require_client()
        return ExternalPrice.from_stripe(self._call("price lookup", client.prices.retrieve, price_id))

    def find_price_by_lookup_key(self, lookup_key: str) -> Optional[ExternalPrice]:
        client = self._require_client()
        listing = self._call(
            "price lookup by key",
            client.prices.list,
            params={"lookup_keys": [lookup_key], "limit": 1},
        )
        data = listing.get("data") or []
        return ExternalPrice.from_stripe(data[0]) if data else None

    # Customers

    def create_customer(self, user_id: Any, email: str, name: str = "", *,
                        metadata: Optional[Mapping[str, Any]] = None) -> str:
        client = self._require_client()
        customer_metadata = {"local_user_id": str(user_id)}
        customer_metadata.update({k: str(v) for k, v in (metadata or {}).items()})
        params: Dict[str, Any] = {"email": email, "metadata": customer_metadata}
        if name:
            params["name"] = name
        customer = self._call(
            "customer creation",
            client.customers.create,
            params=params,
            options=self._options(f"customer-user-{user_id}"),
        )
        return customer["id"]

    # Subscriptions

    def create_subscription(self, customer_id: str, price_id: str, metadata: Mapping[str, Any], *,
                            idempotency_key: Optional[str] = None) -> ExternalSubscription:
        """Open an incomplete Stripe subscription; the client confirms its first payment."""

        client = self._require_client()
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": {k: str(v) for k, v in metadata.items()},
            "expand": ["latest_invoice.payment_intent"],
        }
        subscription = self._call(
            "subscription creation",
            client.subscriptions.create,
            params=params,
            options=self._options(idempotency_key),
        )
        return ExternalSubscription.from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = True, reason: str = "",
                            idempotency_key: Optional[str] = None) -> ExternalSubscription:
        client = self._require_client()
        options = self._options(idempotency_key)
        if at_period_end:
            params: Dict[str, Any] = {"cancel_at_period_end": True}
            if reason:
                params["metadata"] = {"cancellation_reason": reason}
            subscription = self._call(
                "subscription cancellation",
                client.subscriptions.update,
                subscription_id,
                params=params,
                options=options,
            )
        else:
            subscription = self._call(
                "subscription cancellation",
                client.subscriptions.cancel,
                subscription_id,
                options=options,
            )
        return ExternalSubscription.from_stripe(subscription)

    # Health

    def ping(self) -> None:
        client = self._require_client()
        self._call("connectivity check", client.balance.retrieve)

    # Webhooks

    def verify_and_parse_event(self, raw_payload: bytes, signature_header: str) -> ProcessorEvent:
        """Authenticate ``raw_payload`` against ``signature_header`` and parse the envelope.

        The signature is checked over the exact bytes received. Stripe's
        verifier computes the expected HMAC-SHA256 and compares it in constant
        time, so a wrong secret and a tampered payload fail identically.
        """

        if not self._webhook_secret:
            raise ProcessorConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")
        if not signature_header:
            raise InvalidSignature("Stripe-Signature header is missing.")

        try:
            payload_text = raw_payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            # Stripe only signs UTF-8 JSON, so such a body cannot carry a valid signature.
            raise InvalidSignature("Webhook payload is not valid UTF-8.") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload_text,
                signature_header,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Stripe webhook signature verification failed.") from exc

        try:
            payload = json.loads(payload_text)
        except ValueError as exc:
            raise EventValidationError("Webhook payload is not valid JSON.") from exc

        event = ProcessorEvent.from_payload(payload, raw=raw_payload)
        if event.livemode != self._live_mode:
            raise ProcessorConfigurationError(
                f"Stripe event {event.id} has livemode={event.livemode} but STRIPE_LIVE_MODE is {self._live_mode}."
            )
        return event
