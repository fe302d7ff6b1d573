import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import billing.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("price_in_cents", models.PositiveIntegerField(help_text="Price in minor currency units")),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                (
                    "billing_interval",
                    models.CharField(
                        choices=[("week", "Week"), ("month", "Month"), ("year", "Year")],
                        max_length=10,
                    ),
                ),
                (
                    "allowed_user_types",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Account types that may subscribe; empty means everyone",
                    ),
                ),
                ("features", models.JSONField(blank=True, default=dict)),
                ("stripe_product_id", models.CharField(blank=True, max_length=255, null=True)),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe price mirrored by this plan; empty until synchronized",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("display_order", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Plan",
                "verbose_name_plural": "Plans",
                "db_table": "billing_plan",
                "ordering": ["display_order", "price_in_cents"],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_subscription_id", models.CharField(blank=True, max_length=255, null=True)),
                ("stripe_customer_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("past_due", "Past due"),
                            ("canceled", "Canceled"),
                            ("incomplete", "Incomplete"),
                        ],
                        default="incomplete",
                        max_length=20,
                    ),
                ),
                (
                    "status_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Stripe timestamp of the event whose status was last applied",
                        null=True,
                    ),
                ),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscription",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "billing_subscription",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "external_payment_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe charge/payment identifier of the attempt; empty while pending",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "attempt_group",
                    models.CharField(
                        blank=True,
                        help_text="Invoice or payment intent the attempt belongs to",
                        max_length=255,
                    ),
                ),
                ("stripe_invoice_id", models.CharField(blank=True, max_length=255)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("stripe_charge_id", models.CharField(blank=True, max_length=255)),
                (
                    "amount_in_cents",
                    models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "payment_type",
                    models.CharField(
                        choices=[
                            ("initial", "Initial"),
                            ("recurring", "Recurring"),
                            ("retry", "Retry"),
                            ("upgrade", "Upgrade"),
                            ("downgrade", "Downgrade"),
                        ],
                        max_length=20,
                    ),
                ),
                ("failure_code", models.CharField(blank=True, max_length=100)),
                ("failure_message", models.TextField(blank=True)),
                ("refunded_amount_in_cents", models.PositiveIntegerField(default=0)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "processed_at",
                    models.DateTimeField(blank=True, help_text="Processor-side confirmation time", null=True),
                ),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="ledger_entries",
                        to="billing.subscription",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="ledger_entries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "db_table": "billing_ledger_entry",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                (
                    "payload_hash",
                    models.CharField(
                        blank=True,
                        help_text="SHA256 of the raw payload for drift detection.",
                        max_length=64,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("ignored", "Ignored"),
                            ("failed", "Failed"),
                        ],
                        default="processing",
                        max_length=20,
                    ),
                ),
                (
                    "event_created_at",
                    models.DateTimeField(blank=True, help_text="Creation timestamp reported by Stripe.", null=True),
                ),
                ("last_error", models.TextField(blank=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                (
                    "handled",
                    models.BooleanField(default=False, help_text="True once the event has been fully processed."),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        help_text="Subscription resolved for this event when available.",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="webhook_events",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "db_table": "billing_webhook_event_log",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "event_type",
                    models.CharField(help_text="Classification of the billing event.", max_length=100),
                ),
                (
                    "stripe_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe object or event identifier tied to the entry.",
                        max_length=255,
                    ),
                ),
                (
                    "actor",
                    models.CharField(blank=True, help_text="Auth user or system actor responsible.", max_length=255),
                ),
                (
                    "details",
                    models.JSONField(blank=True, help_text="Structured data describing the event.", null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        help_text="Subscription associated with the event.",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Billing audit log",
                "verbose_name_plural": "Billing audit logs",
                "db_table": "billing_audit_log",
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddConstraint(
            model_name="plan",
            constraint=models.UniqueConstraint(
                fields=("billing_interval", "price_in_cents"),
                name="billing_plan_interval_price_unique",
            ),
        ),
        migrations.AddConstraint(
            model_name="plan",
            constraint=models.UniqueConstraint(
                condition=models.Q(("stripe_price_id__isnull", False)),
                fields=("stripe_price_id",),
                name="billing_plan_stripe_price_unique",
            ),
        ),
        migrations.AddConstraint(
            model_name="plan",
            constraint=models.CheckConstraint(
                condition=models.Q(("price_in_cents__gt", 0)),
                name="billing_plan_price_positive",
            ),
        ),
        migrations.AddIndex(
            model_name="subscription",
            index=models.Index(fields=["status"], name="billing_sub_status_idx"),
        ),
        migrations.AddConstraint(
            model_name="subscription",
            constraint=models.UniqueConstraint(
                condition=models.Q(("stripe_subscription_id__isnull", False)),
                fields=("stripe_subscription_id",),
                name="billing_subscription_stripe_id_unique",
            ),
        ),
        migrations.AddIndex(
            model_name="ledgerentry",
            index=models.Index(fields=["subscription", "status"], name="billing_ledger_sub_status_idx"),
        ),
        migrations.AddIndex(
            model_name="ledgerentry",
            index=models.Index(fields=["attempt_group"], name="billing_ledger_group_idx"),
        ),
        migrations.AddIndex(
            model_name="ledgerentry",
            index=models.Index(fields=["stripe_charge_id"], name="billing_ledger_charge_idx"),
        ),
        migrations.AddConstraint(
            model_name="ledgerentry",
            constraint=models.UniqueConstraint(
                condition=models.Q(("external_payment_id__isnull", False)),
                fields=("external_payment_id",),
                name="billing_ledger_external_payment_unique",
            ),
        ),
        migrations.AddConstraint(
            model_name="ledgerentry",
            constraint=models.CheckConstraint(
                condition=models.Q(("amount_in_cents__gt", 0)),
                name="billing_ledger_amount_positive",
            ),
        ),
        migrations.AddConstraint(
            model_name="ledgerentry",
            constraint=models.CheckConstraint(
                condition=models.Q(
                    ("refunded_amount_in_cents__gte", 0),
                    ("refunded_amount_in_cents__lte", models.F("amount_in_cents")),
                ),
                name="billing_ledger_refund_within_amount",
            ),
        ),
        migrations.AddIndex(
            model_name="webhookeventlog",
            index=models.Index(fields=["status"], name="webhook_event_status_idx"),
        ),
        migrations.AddIndex(
            model_name="webhookeventlog",
            index=models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ),
        migrations.AddIndex(
            model_name="webhookeventlog",
            index=models.Index(fields=["handled", "processed_at"], name="webhook_event_retention_idx"),
        ),
        migrations.AddIndex(
            model_name="billingauditlog",
            index=models.Index(fields=["subscription", "event_type"], name="billing_audit_sub_event_idx"),
        ),
        migrations.AddIndex(
            model_name="billingauditlog",
            index=models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
        ),
    ]
