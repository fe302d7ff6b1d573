"""Enumerations shared by billing models and the pure state-transition helpers."""
from django.db import models


class BillingInterval(models.TextChoices):
    WEEK = "week", "Week"
    MONTH = "month", "Month"
    YEAR = "year", "Year"


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past due"
    CANCELED = "canceled", "Canceled"
    INCOMPLETE = "incomplete", "Incomplete"


class LedgerStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"
    REFUNDED = "refunded", "Refunded"


class PaymentType(models.TextChoices):
    INITIAL = "initial", "Initial"
    RECURRING = "recurring", "Recurring"
    RETRY = "retry", "Retry"
    UPGRADE = "upgrade", "Upgrade"
    DOWNGRADE = "downgrade", "Downgrade"


PRODUCTION_INTERVALS = frozenset({BillingInterval.MONTH, BillingInterval.YEAR})
