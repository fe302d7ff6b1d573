"""Billing models: plan registry, subscriptions, the payment ledger and webhook logging."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

from billing.choices import (
    PRODUCTION_INTERVALS,
    BillingInterval,
    LedgerStatus,
    PaymentType,
    SubscriptionStatus,
)
from billing.errors import LedgerTransitionError
from billing.state import LedgerState, SubscriptionState, check_ledger_update


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").upper()


def _require_minor_units(instance, *fields) -> None:
    for field in fields:
        value = getattr(instance, field)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError({field: "Amounts must be integer minor currency units."})


def sandbox_terms_allowed() -> bool:
    return bool(getattr(settings, "BILLING_ALLOW_TEST_PLAN_TERMS", False))


def validate_plan_terms(billing_interval, price_in_cents, currency, *, allow_test_terms: bool) -> None:
    """Validate the sellable terms of a plan.

    Production terms are a monthly or yearly interval, a strictly positive integer
    price and the configured billing currency. ``allow_test_terms`` additionally
    accepts the weekly interval used by sandbox catalogs; callers pass it
    explicitly, it is never inferred from plan data.
    """

    errors = {}
    allowed_intervals = set(BillingInterval.values) if allow_test_terms else set(PRODUCTION_INTERVALS)
    if billing_interval not in allowed_intervals:
        errors["billing_interval"] = f"Billing interval must be one of {sorted(allowed_intervals)}."

    if isinstance(price_in_cents, bool) or not isinstance(price_in_cents, int):
        errors["price_in_cents"] = "Price must be an integer number of minor currency units."
    elif price_in_cents <= 0:
        errors["price_in_cents"] = "Price must be greater than zero."

    expected_currency = _default_currency()
    if (currency or "").upper() != expected_currency:
        errors["currency"] = f"Plans are billed in {expected_currency} only."

    if errors:
        raise ValidationError(errors)


class Plan(models.Model):
    """A sellable subscription offering mirrored to a Stripe product/price."""

    Interval = BillingInterval

    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    price_in_cents = models.PositiveIntegerField(
        help_text="Price in minor currency units",
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    billing_interval = models.CharField(max_length=10, choices=BillingInterval.choices)
    allowed_user_types = models.JSONField(
        default=list,
        blank=True,
        help_text="Account types that may subscribe; empty means everyone",
    )
    features = models.JSONField(default=dict, blank=True)
    stripe_product_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_price_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe price mirrored by this plan; empty until synchronized",
    )
    is_active = models.BooleanField(default=True)
    display_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_plan"
        verbose_name = "Plan"
        verbose_name_plural = "Plans"
        ordering = ["display_order", "price_in_cents"]
        constraints = [
            models.UniqueConstraint(
                fields=["billing_interval", "price_in_cents"],
                name="billing_plan_interval_price_unique",
            ),
            models.UniqueConstraint(
                fields=["stripe_price_id"],
                condition=Q(stripe_price_id__isnull=False),
                name="billing_plan_stripe_price_unique",
            ),
            models.CheckConstraint(condition=Q(price_in_cents__gt=0), name="billing_plan_price_positive"),
        ]

    def clean(self):
        super().clean()
        if self.currency:
            self.currency = self.currency.upper()
        allow_test_terms = sandbox_terms_allowed()
        validate_plan_terms(
            self.billing_interval,
            self.price_in_cents,
            self.currency,
            allow_test_terms=allow_test_terms,
        )
        if self.pk and not allow_test_terms:
            persisted = (
                Plan.objects.filter(pk=self.pk)
                .values("price_in_cents", "billing_interval", "currency")
                .first()
            )
            if persisted and (
                persisted["price_in_cents"] != self.price_in_cents
                or persisted["billing_interval"] != self.billing_interval
                or persisted["currency"] != self.currency
            ):
                raise ValidationError("Plan price, interval and currency are fixed once the plan exists.")

    def save(self, *args, **kwargs):
        _require_minor_units(self, "price_in_cents")
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"Plan<{self.name}:{self.price_in_cents}/{self.billing_interval}>"


class Subscription(models.Model):
    """Binds a user to a plan; status only changes in response to authenticated Stripe events."""

    Status = SubscriptionStatus

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
        null=True,
        blank=True,
    )
    stripe_subscription_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True, null=True, db_index=True)
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.INCOMPLETE,
    )
    status_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Stripe timestamp of the event whose status was last applied",
    )
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["stripe_subscription_id"],
                condition=Q(stripe_subscription_id__isnull=False),
                name="billing_subscription_stripe_id_unique",
            ),
        ]
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_idx"),
        ]

    @property
    def state(self) -> SubscriptionState:
        return SubscriptionState(
            status=self.status,
            status_event_at=self.status_event_at,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
        )

    def apply_state(self, state: SubscriptionState) -> list:
        """Copy a computed state onto the instance and return the changed field names."""

        changed = []
        for field in ("status", "status_event_at", "current_period_start", "current_period_end"):
            value = getattr(state, field)
            if getattr(self, field) != value:
                setattr(self, field, value)
                changed.append(field)
        return changed

    def __str__(self):
        return f"Subscription<{self.user_id}:{self.status}>"


class LedgerEntryQuerySet(models.QuerySet):
    def delete(self):
        raise ValidationError("Ledger entries are append-only and cannot be deleted.")

    def for_attempt_group(self, group: str):
        return self.filter(attempt_group=group)


class LedgerEntry(models.Model):
    """One payment attempt and its outcome. Financial fields never change once written."""

    Status = LedgerStatus
    PaymentType = PaymentType

    # Written once at creation.
    IMMUTABLE_FIELDS = (
        "amount_in_cents",
        "currency",
        "payment_type",
        "attempt_group",
        "stripe_invoice_id",
        "stripe_payment_intent_id",
        "user_id",
        "metadata",
        "created_at",
    )
    # May go from empty to a value exactly once (when the attempt is finalized).
    SET_ONCE_FIELDS = (
        "external_payment_id",
        "stripe_charge_id",
        "failure_code",
        "failure_message",
        "processed_at",
        "refunded_at",
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    external_payment_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe charge/payment identifier of the attempt; empty while pending",
    )
    attempt_group = models.CharField(
        max_length=255,
        blank=True,
        help_text="Invoice or payment intent the attempt belongs to",
    )
    stripe_invoice_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True)
    stripe_charge_id = models.CharField(max_length=255, blank=True)
    amount_in_cents = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=LedgerStatus.choices, default=LedgerStatus.PENDING)
    payment_type = models.CharField(max_length=20, choices=PaymentType.choices)
    failure_code = models.CharField(max_length=100, blank=True)
    failure_message = models.TextField(blank=True)
    refunded_amount_in_cents = models.PositiveIntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Processor-side confirmation time",
    )
    refunded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = LedgerEntryQuerySet.as_manager()

    class Meta:
        db_table = "billing_ledger_entry"
        verbose_name = "Ledger entry"
        verbose_name_plural = "Ledger entries"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["external_payment_id"],
                condition=Q(external_payment_id__isnull=False),
                name="billing_ledger_external_payment_unique",
            ),
            models.CheckConstraint(condition=Q(amount_in_cents__gt=0), name="billing_ledger_amount_positive"),
            models.CheckConstraint(
                condition=Q(refunded_amount_in_cents__gte=0)
                & Q(refunded_amount_in_cents__lte=models.F("amount_in_cents")),
                name="billing_ledger_refund_within_amount",
            ),
        ]
        indexes = [
            models.Index(fields=["subscription", "status"], name="billing_ledger_sub_status_idx"),
            models.Index(fields=["attempt_group"], name="billing_ledger_group_idx"),
            models.Index(fields=["stripe_charge_id"], name="billing_ledger_charge_idx"),
        ]

    @property
    def state(self) -> LedgerState:
        return LedgerState(
            status=self.status,
            amount_in_cents=self.amount_in_cents,
            refunded_amount_in_cents=self.refunded_amount_in_cents,
        )

    def clean(self):
        super().clean()
        if self.currency:
            self.currency = self.currency.upper()
        if self.external_payment_id == "":
            self.external_payment_id = None
        if self.refunded_amount_in_cents > self.amount_in_cents:
            raise ValidationError({"refunded_amount_in_cents": "Refunded amount cannot exceed the original amount."})

    def _guard_update(self, persisted: "LedgerEntry") -> None:
        for field in self.IMMUTABLE_FIELDS:
            if getattr(persisted, field) != getattr(self, field):
                raise LedgerTransitionError(f"Ledger field '{field}' is immutable.")
        for field in self.SET_ONCE_FIELDS:
            before = getattr(persisted, field)
            if before not in (None, "") and before != getattr(self, field):
                raise LedgerTransitionError(f"Ledger field '{field}' is already set.")
        check_ledger_update(persisted.state, self.state)

    def save(self, *args, **kwargs):
        _require_minor_units(self, "amount_in_cents", "refunded_amount_in_cents")
        if not self._state.adding:
            persisted = LedgerEntry.objects.filter(pk=self.pk).first()
            if persisted is not None:
                self._guard_update(persisted)
        elif self.status == LedgerStatus.REFUNDED or self.refunded_amount_in_cents:
            raise LedgerTransitionError("New ledger entries cannot start refunded.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Ledger entries are append-only and cannot be deleted.")

    def __str__(self):
        return f"LedgerEntry<{self.external_payment_id or self.attempt_group}:{self.status}>"


class WebhookEventLog(models.Model):
    """Keeps track of processed webhook events to guarantee idempotency."""

    class Status(models.TextChoices):
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PROCESSING,
    )
    event_created_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Creation timestamp reported by Stripe.",
    )
    last_error = models.TextField(blank=True)
    attempts = models.PositiveIntegerField(default=0)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_events",
        help_text="Subscription resolved for this event when available.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
            models.Index(fields=["handled", "processed_at"], name="webhook_event_retention_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class BillingAuditLog(models.Model):
    """Structured audit log for key billing lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
        help_text="Subscription associated with the event.",
    )
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    stripe_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe object or event identifier tied to the entry.",
    )
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["subscription", "event_type"], name="billing_audit_sub_event_idx"),
            models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.subscription_id}:{self.event_type}>"
