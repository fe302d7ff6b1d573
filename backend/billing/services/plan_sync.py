"""Reconcile the local plan registry with Stripe products and prices.

Each completed step is persisted as soon as it succeeds, so an interrupted or
failed run leaves a valid partial state and re-running is the recovery path.
Stripe objects carry ``local_plan_id`` metadata and a ``plan-<id>`` lookup key
so earlier creations are found again instead of duplicated.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from django.db import transaction

from billing.errors import (
    PlanSyncError,
    PlanSyncInterrupted,
    PlanSyncValidationError,
    ProcessorError,
    ProcessorNotFound,
)
from billing.models import Plan
from billing.observability.metrics import PLAN_SYNC_FAILURES, PLAN_SYNC_WRITES
from billing.services.plan_registry import PlanDefinition, ensure_local_plan, load_plan_catalog
from billing.services.stripe_gateway import ExternalPrice, StripeGateway

logger = logging.getLogger(__name__)

PLAN_METADATA_KEY = "local_plan_id"


def price_lookup_key(plan: Plan) -> str:
    return f"plan-{plan.pk}"


@dataclass
class SyncReport:
    plans_created: List[str] = field(default_factory=list)
    products_created: List[str] = field(default_factory=list)
    prices_created: List[str] = field(default_factory=list)
    prices_adopted: List[str] = field(default_factory=list)
    validated: List[str] = field(default_factory=list)

    @property
    def external_writes(self) -> int:
        return len(self.products_created) + len(self.prices_created)

    def summary(self) -> str:
        return (
            f"plans created: {len(self.plans_created)}, products created: {len(self.products_created)}, "
            f"prices created: {len(self.prices_created)}, prices adopted: {len(self.prices_adopted)}, "
            f"validated: {len(self.validated)}"
        )


class PlanSynchronizer:
    """Brings the plan registry and the Stripe catalog into agreement."""

    def __init__(
        self,
        gateway: StripeGateway,
        definitions: Optional[Iterable[PlanDefinition]] = None,
        *,
        stop_event: Optional[threading.Event] = None,
        validate_only: bool = False,
    ) -> None:
        self.gateway = gateway
        self._definitions = list(definitions) if definitions is not None else None
        self.stop_event = stop_event or threading.Event()
        self.validate_only = validate_only

    def run(self) -> SyncReport:
        report = SyncReport()
        try:
            if not self.validate_only:
                self._ensure_local(report)
                self._mirror_prices(report)
            self._validate(report)
        except PlanSyncError as exc:
            PLAN_SYNC_FAILURES.labels(step=exc.step).inc()
            logger.error("Plan synchronization failed at %s", exc.describe())
            raise
        logger.info("Plan synchronization finished: %s", report.summary())
        return report

    def _check_stop(self, completed: int) -> None:
        if self.stop_event.is_set():
            raise PlanSyncInterrupted(completed)

    # Step 1

    def _ensure_local(self, report: SyncReport) -> None:
        try:
            definitions = self._definitions if self._definitions is not None else load_plan_catalog()
        except Exception as exc:  # noqa: BLE001 - surfaced as a sync failure with its step
            raise PlanSyncError(str(exc), step="load_catalog") from exc

        for index, definition in enumerate(definitions):
            self._check_stop(index)
            try:
                _, created = ensure_local_plan(definition)
            except Exception as exc:  # noqa: BLE001
                raise PlanSyncError(str(exc), step="ensure_local_plan", plan=definition.key) from exc
            if created:
                report.plans_created.append(definition.key)

    # Steps 2-4

    def _mirror_prices(self, report: SyncReport) -> None:
        plans = list(Plan.objects.filter(is_active=True).order_by("display_order", "pk"))
        for index, plan in enumerate(plans):
            self._check_stop(index)
            if self._resolve_existing_price(plan, report):
                continue
            self._create_price(plan, report)

    def _resolve_existing_price(self, plan: Plan, report: SyncReport) -> bool:
        if plan.stripe_price_id:
            try:
                self.gateway.retrieve_price(plan.stripe_price_id)
                return True
            except ProcessorNotFound:
                logger.warning(
                    "Stripe price %s recorded for plan %s no longer exists; recreating.",
                    plan.stripe_price_id,
                    plan.pk,
                )
                self._store(plan, stripe_price_id=None)
            except ProcessorError as exc:
                raise PlanSyncError(str(exc), step="resolve_price", plan=plan.name) from exc

        try:
            adopted = self.gateway.find_price_by_lookup_key(price_lookup_key(plan))
        except ProcessorError as exc:
            raise PlanSyncError(str(exc), step="resolve_price", plan=plan.name) from exc
        if adopted is None or adopted.metadata.get(PLAN_METADATA_KEY) != str(plan.pk):
            return False

        # A previous run created the price but stopped before recording it.
        self._store(plan, stripe_price_id=adopted.id, stripe_product_id=adopted.product_id or plan.stripe_product_id)
        report.prices_adopted.append(plan.name)
        logger.info("Adopted existing Stripe price %s for plan %s.", adopted.id, plan.pk)
        return True

    def _create_price(self, plan: Plan, report: SyncReport) -> None:
        metadata = {PLAN_METADATA_KEY: plan.pk, "billing_interval": plan.billing_interval}
        if not plan.stripe_product_id:
            self._create_product(plan, metadata, report)

        try:
            price_id = self._create_price_for_product(plan, metadata)
        except ProcessorNotFound:
            logger.warning("Stripe product %s for plan %s is gone; creating a new one.", plan.stripe_product_id, plan.pk)
            self._create_product(plan, metadata, report, attempt="recreate")
            try:
                price_id = self._create_price_for_product(plan, metadata)
            except ProcessorError as exc:
                raise PlanSyncError(str(exc), step="create_price", plan=plan.name) from exc
        except ProcessorError as exc:
            raise PlanSyncError(str(exc), step="create_price", plan=plan.name) from exc

        PLAN_SYNC_WRITES.labels(operation="price").inc()
        report.prices_created.append(plan.name)
        try:
            self._store(plan, stripe_price_id=price_id)
        except Exception as exc:  # noqa: BLE001
            raise PlanSyncError(
                str(exc),
                step="persist_price",
                plan=plan.name,
                recovery=(
                    f"Re-run `python manage.py sync_plans`; the Stripe price {price_id} will be adopted "
                    f"through its lookup key {price_lookup_key(plan)}."
                ),
            ) from exc
        logger.info("Created Stripe price %s for plan %s.", price_id, plan.pk)

    def _create_product(self, plan: Plan, metadata, report: SyncReport, attempt: str = "initial") -> None:
        try:
            product_id = self.gateway.create_product(
                plan.name,
                plan.description,
                metadata,
                idempotency_key=f"plan-{plan.pk}-product-{attempt}",
            )
        except ProcessorError as exc:
            raise PlanSyncError(str(exc), step="create_product", plan=plan.name) from exc
        PLAN_SYNC_WRITES.labels(operation="product").inc()
        report.products_created.append(plan.name)
        self._store(plan, stripe_product_id=product_id)

    def _create_price_for_product(self, plan: Plan, metadata) -> str:
        return self.gateway.create_price(
            plan.stripe_product_id,
            plan.price_in_cents,
            plan.currency,
            plan.billing_interval,
            metadata,
            lookup_key=price_lookup_key(plan),
            idempotency_key=f"plan-{plan.pk}-price-{plan.stripe_product_id}",
        )

    @staticmethod
    def _store(plan: Plan, **values) -> None:
        with transaction.atomic():
            locked = Plan.objects.select_for_update().get(pk=plan.pk)
            for name, value in values.items():
                setattr(locked, name, value)
                setattr(plan, name, value)
            locked.save(update_fields=list(values) + ["updated_at"])

    # Step 5

    def _validate(self, report: SyncReport) -> None:
        mismatches: List[str] = []
        for plan in Plan.objects.filter(is_active=True).order_by("display_order", "pk"):
            if not plan.stripe_price_id:
                mismatches.append(f"{plan.name}: no Stripe price recorded")
                continue
            try:
                price = self.gateway.retrieve_price(plan.stripe_price_id)
            except ProcessorNotFound:
                mismatches.append(f"{plan.name}: Stripe price {plan.stripe_price_id} not found")
                continue
            except ProcessorError as exc:
                raise PlanSyncError(str(exc), step="validate", plan=plan.name) from exc

            problems = compare_price(plan, price)
            if problems:
                mismatches.extend(f"{plan.name}: {problem}" for problem in problems)
            else:
                report.validated.append(plan.name)

        if mismatches:
            raise PlanSyncValidationError(mismatches)


def compare_price(plan: Plan, price: ExternalPrice) -> List[str]:
    problems = []
    if price.unit_amount != plan.price_in_cents:
        problems.append(f"amount {price.unit_amount} != {plan.price_in_cents}")
    if price.interval != plan.billing_interval:
        problems.append(f"interval {price.interval} != {plan.billing_interval}")
    if price.currency.lower() != plan.currency.lower():
        problems.append(f"currency {price.currency} != {plan.currency.lower()}")
    if not price.active:
        problems.append("price is inactive")
    return problems
