import threading

import pytest

from billing.errors import (
    PlanSyncError,
    PlanSyncInterrupted,
    PlanSyncValidationError,
    ProcessorRequestError,
)
from billing.models import Plan
from billing.services.plan_sync import PLAN_METADATA_KEY, PlanSynchronizer, price_lookup_key
from billing.tests.conftest import FakeGateway

pytestmark = pytest.mark.django_db


def _plans():
    return list(Plan.objects.filter(is_active=True).order_by("display_order", "pk"))


def test_first_run_mirrors_every_plan_and_second_run_writes_nothing(fake_gateway):
    report = PlanSynchronizer(fake_gateway).run()

    plans = _plans()
    assert len(plans) == 2
    assert report.external_writes == 4
    assert sorted(report.validated) == sorted(p.name for p in plans)
    for plan in plans:
        assert plan.stripe_product_id in fake_gateway.products
        price = fake_gateway.prices[plan.stripe_price_id]
        assert price["unit_amount"] == plan.price_in_cents
        assert price["recurring"]["interval"] == plan.billing_interval
        assert price["lookup_key"] == price_lookup_key(plan)
        assert price["metadata"][PLAN_METADATA_KEY] == str(plan.pk)

    writes_before = list(fake_gateway.writes)
    again = PlanSynchronizer(fake_gateway).run()

    assert again.external_writes == 0
    assert fake_gateway.writes == writes_before
    assert len(again.validated) == 2


def test_divergent_price_fails_validation(fake_gateway):
    PlanSynchronizer(fake_gateway).run()
    monthly = Plan.objects.get(billing_interval="month", price_in_cents=2999)
    fake_gateway.prices[monthly.stripe_price_id]["unit_amount"] = 1999
    writes_before = list(fake_gateway.writes)

    with pytest.raises(PlanSyncValidationError) as excinfo:
        PlanSynchronizer(fake_gateway, validate_only=True).run()

    assert excinfo.value.step == "validate"
    assert any("amount 1999 != 2999" in mismatch for mismatch in excinfo.value.mismatches)
    assert fake_gateway.writes == writes_before


def test_validate_only_reports_unsynchronized_plans(fake_gateway):
    with pytest.raises(PlanSyncValidationError) as excinfo:
        PlanSynchronizer(fake_gateway, validate_only=True).run()

    assert len(excinfo.value.mismatches) == 2
    assert fake_gateway.writes == []


def test_missing_recorded_price_is_recreated_on_existing_product(fake_gateway):
    PlanSynchronizer(fake_gateway).run()
    monthly = Plan.objects.get(billing_interval="month", price_in_cents=2999)
    old_price_id = monthly.stripe_price_id
    del fake_gateway.prices[old_price_id]

    report = PlanSynchronizer(fake_gateway).run()

    monthly.refresh_from_db()
    assert monthly.stripe_price_id != old_price_id
    assert monthly.stripe_price_id in fake_gateway.prices
    assert report.prices_created == [monthly.name]
    assert report.products_created == []


def test_price_created_but_not_recorded_is_adopted(fake_gateway):
    PlanSynchronizer(fake_gateway).run()
    yearly = Plan.objects.get(billing_interval="year", price_in_cents=7999)
    price_id = yearly.stripe_price_id
    Plan.objects.filter(pk=yearly.pk).update(stripe_price_id=None)

    report = PlanSynchronizer(fake_gateway).run()

    yearly.refresh_from_db()
    assert yearly.stripe_price_id == price_id
    assert report.prices_adopted == [yearly.name]
    assert report.external_writes == 0


def test_price_with_foreign_metadata_is_not_adopted(fake_gateway):
    PlanSynchronizer(fake_gateway).run()
    yearly = Plan.objects.get(billing_interval="year", price_in_cents=7999)
    fake_gateway.prices[yearly.stripe_price_id]["metadata"][PLAN_METADATA_KEY] = "999"
    Plan.objects.filter(pk=yearly.pk).update(stripe_price_id=None)

    report = PlanSynchronizer(fake_gateway).run()

    assert report.prices_adopted == []
    assert report.prices_created == [yearly.name]


def test_deleted_product_is_recreated(fake_gateway):
    PlanSynchronizer(fake_gateway).run()
    monthly = Plan.objects.get(billing_interval="month", price_in_cents=2999)
    Plan.objects.filter(pk=monthly.pk).update(stripe_product_id="prod_gone", stripe_price_id=None)
    fake_gateway.prices.clear()

    report = PlanSynchronizer(fake_gateway).run()

    monthly.refresh_from_db()
    assert monthly.stripe_product_id != "prod_gone"
    assert monthly.stripe_product_id in fake_gateway.products
    assert monthly.name in report.products_created


class _StoppingGateway(FakeGateway):
    def __init__(self, stop_event):
        super().__init__()
        self.stop_event = stop_event

    def create_price(self, *args, **kwargs):
        price_id = super().create_price(*args, **kwargs)
        self.stop_event.set()
        return price_id


def test_interrupted_run_keeps_completed_plans_and_resumes():
    stop = threading.Event()
    gateway = _StoppingGateway(stop)

    with pytest.raises(PlanSyncInterrupted) as excinfo:
        PlanSynchronizer(gateway, stop_event=stop).run()

    assert excinfo.value.completed == 1
    first, second = _plans()
    assert first.stripe_price_id in gateway.prices
    assert second.stripe_price_id is None

    report = PlanSynchronizer(gateway).run()

    assert report.prices_created == [second.name]
    assert report.external_writes == 2


class _RejectingGateway(FakeGateway):
    def create_price(self, *args, **kwargs):
        raise ProcessorRequestError("Invalid currency")


def test_rejected_price_creation_names_the_step():
    gateway = _RejectingGateway()

    with pytest.raises(PlanSyncError) as excinfo:
        PlanSynchronizer(gateway).run()

    assert excinfo.value.step == "create_price"
    assert "create_price" in excinfo.value.describe()
    first = _plans()[0]
    assert first.stripe_product_id in gateway.products
    assert first.stripe_price_id is None
