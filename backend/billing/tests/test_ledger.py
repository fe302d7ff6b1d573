import pytest
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from billing.choices import LedgerStatus, PaymentType
from billing.errors import LedgerEntryNotFound, LedgerTransitionError, RefundExceedsAmount
from billing.models import LedgerEntry, Plan
from billing.services import ledger as ledger_service


def _succeeded_entry(subscription, amount=7999, key="ch_paid"):
    return ledger_service.record_outcome(
        subscription=subscription,
        attempt_key=key,
        group="in_paid",
        status=LedgerStatus.SUCCEEDED,
        amount_in_cents=amount,
        currency="usd",
        payment_type=PaymentType.INITIAL,
        processed_at=timezone.now(),
        charge_id=key,
    ).entry


@pytest.mark.django_db
def test_pending_entry_is_finalized_in_place(subscription):
    pending = ledger_service.open_pending_entry(
        subscription=subscription,
        group="in_1",
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.RECURRING,
        invoice_id="in_1",
    )
    assert pending.created
    assert pending.entry.external_payment_id is None
    assert pending.entry.currency == "USD"

    final = ledger_service.record_outcome(
        subscription=subscription,
        attempt_key="ch_1",
        group="in_1",
        status=LedgerStatus.SUCCEEDED,
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.RECURRING,
        processed_at=timezone.now(),
        invoice_id="in_1",
        charge_id="ch_1",
    )

    assert final.finalized
    assert final.entry.pk == pending.entry.pk
    assert LedgerEntry.objects.count() == 1
    entry = LedgerEntry.objects.get()
    assert entry.status == LedgerStatus.SUCCEEDED
    assert entry.external_payment_id == "ch_1"


@pytest.mark.django_db
def test_pending_entry_for_a_different_amount_is_canceled_not_rewritten(subscription):
    ledger_service.open_pending_entry(
        subscription=subscription,
        group="in_2",
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.RECURRING,
    )
    ledger_service.record_outcome(
        subscription=subscription,
        attempt_key="ch_2",
        group="in_2",
        status=LedgerStatus.SUCCEEDED,
        amount_in_cents=1999,
        currency="usd",
        payment_type=PaymentType.RECURRING,
        processed_at=timezone.now(),
    )

    statuses = sorted(LedgerEntry.objects.values_list("amount_in_cents", "status"))
    assert statuses == [(1999, LedgerStatus.SUCCEEDED), (2999, LedgerStatus.CANCELED)]


@pytest.mark.django_db
def test_same_outcome_twice_is_a_duplicate(subscription):
    first = _succeeded_entry(subscription)
    again = ledger_service.record_outcome(
        subscription=subscription,
        attempt_key="ch_paid",
        group="in_paid",
        status=LedgerStatus.SUCCEEDED,
        amount_in_cents=7999,
        currency="usd",
        payment_type=PaymentType.INITIAL,
        processed_at=timezone.now(),
    )
    assert again.duplicate
    assert again.entry.pk == first.pk
    assert LedgerEntry.objects.count() == 1


@pytest.mark.django_db
def test_new_attempt_after_failure_is_a_retry(subscription):
    ledger_service.record_outcome(
        subscription=subscription,
        attempt_key="in_3:1",
        group="in_3",
        status=LedgerStatus.FAILED,
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.RECURRING,
        processed_at=timezone.now(),
        failure_message="Card declined",
    )
    assert ledger_service.resolve_payment_type("in_3", PaymentType.RECURRING) == PaymentType.RETRY
    assert ledger_service.resolve_payment_type("in_other", PaymentType.RECURRING) == PaymentType.RECURRING

    # Same key, different outcome: stored under a suffixed key, the failed row is untouched.
    write = ledger_service.record_outcome(
        subscription=subscription,
        attempt_key="in_3:1",
        group="in_3",
        status=LedgerStatus.SUCCEEDED,
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.RETRY,
        processed_at=timezone.now(),
    )
    assert write.created
    assert write.entry.external_payment_id == "in_3:1:succeeded"
    assert LedgerEntry.objects.get(external_payment_id="in_3:1").status == LedgerStatus.FAILED


@pytest.mark.django_db
def test_financial_fields_are_immutable(subscription):
    entry = _succeeded_entry(subscription)

    entry.amount_in_cents = 1
    with pytest.raises(LedgerTransitionError):
        entry.save()

    entry.refresh_from_db()
    entry.status = LedgerStatus.FAILED
    with pytest.raises(LedgerTransitionError):
        entry.save()

    entry.refresh_from_db()
    entry.external_payment_id = "ch_other"
    with pytest.raises(LedgerTransitionError):
        entry.save()


@pytest.mark.django_db
def test_ledger_entries_cannot_be_deleted(subscription):
    entry = _succeeded_entry(subscription)
    with pytest.raises(ValidationError):
        entry.delete()
    with pytest.raises(ValidationError):
        LedgerEntry.objects.all().delete()
    assert LedgerEntry.objects.count() == 1


@pytest.mark.django_db
def test_deleting_subscription_keeps_ledger(subscription):
    entry = _succeeded_entry(subscription)
    subscription.delete()
    entry.refresh_from_db()
    assert entry.subscription_id is None
    assert entry.amount_in_cents == 7999


@pytest.mark.django_db
def test_amounts_must_be_integer_minor_units(subscription):
    with pytest.raises(ValidationError):
        LedgerEntry.objects.create(
            subscription=subscription,
            amount_in_cents=29.99,
            currency="usd",
            payment_type=PaymentType.INITIAL,
        )


@pytest.mark.django_db
def test_new_entries_cannot_start_refunded(subscription):
    with pytest.raises(LedgerTransitionError):
        LedgerEntry.objects.create(
            subscription=subscription,
            amount_in_cents=2999,
            currency="usd",
            status=LedgerStatus.REFUNDED,
            payment_type=PaymentType.INITIAL,
        )


@pytest.mark.django_db
def test_cumulative_refunds(subscription):
    entry = _succeeded_entry(subscription)

    target = ledger_service.locate_refund_target(charge_id="ch_paid")
    assert target.pk == entry.pk

    partial = ledger_service.apply_refund(entry=target, refunded_total=3999, refunded_at=timezone.now())
    assert partial.finalized
    entry.refresh_from_db()
    assert entry.refunded_amount_in_cents == 3999
    assert entry.status == LedgerStatus.SUCCEEDED
    assert entry.refunded_at is None

    replay = ledger_service.apply_refund(entry=entry, refunded_total=3999, refunded_at=timezone.now())
    assert replay.duplicate

    ledger_service.apply_refund(entry=entry, refunded_total=7999, refunded_at=timezone.now())
    entry.refresh_from_db()
    assert entry.refunded_amount_in_cents == 7999
    assert entry.status == LedgerStatus.REFUNDED
    assert entry.refunded_at is not None

    # Fully refunded: further mutation attempts fail and change nothing.
    entry.status = LedgerStatus.SUCCEEDED
    with pytest.raises(LedgerTransitionError):
        entry.save()
    entry.refresh_from_db()
    assert entry.status == LedgerStatus.REFUNDED


@pytest.mark.django_db
def test_refund_beyond_amount_is_refused(subscription):
    entry = _succeeded_entry(subscription, amount=2999, key="ch_small")
    with pytest.raises(RefundExceedsAmount):
        ledger_service.apply_refund(entry=entry, refunded_total=3000, refunded_at=timezone.now())
    entry.refresh_from_db()
    assert entry.refunded_amount_in_cents == 0


@pytest.mark.django_db
def test_refund_target_must_exist(subscription):
    with pytest.raises(LedgerEntryNotFound):
        ledger_service.locate_refund_target(charge_id="ch_missing")


@pytest.mark.django_db
def test_cancel_pending(subscription):
    ledger_service.open_pending_entry(
        subscription=subscription,
        group="pi_1",
        amount_in_cents=2999,
        currency="usd",
        payment_type=PaymentType.INITIAL,
        payment_intent_id="pi_1",
    )
    write = ledger_service.cancel_pending(group="pi_1", processed_at=timezone.now(), reason="abandoned")
    assert write.finalized
    assert write.entry.status == LedgerStatus.CANCELED

    assert ledger_service.cancel_pending(group="pi_1", processed_at=timezone.now()).entry is None


def test_check_constraints_are_declared_with_conditions():
    checks = [
        constraint
        for constraint in LedgerEntry._meta.constraints + Plan._meta.constraints
        if isinstance(constraint, models.CheckConstraint)
    ]

    assert {constraint.name for constraint in checks} == {
        "billing_ledger_amount_positive",
        "billing_ledger_refund_within_amount",
        "billing_plan_price_positive",
    }
    assert all(isinstance(constraint.condition, models.Q) for constraint in checks)
