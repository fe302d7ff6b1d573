"""Local plan catalog: configured plan definitions and their registry rows."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured, ValidationError
from django.db import IntegrityError, transaction

from billing.choices import BillingInterval
from billing.models import Plan, _default_currency, sandbox_terms_allowed, validate_plan_terms

logger = logging.getLogger(__name__)

# Fields a catalog change may update on an existing row; price, interval and
# currency identify the plan and never change here.
DESCRIPTIVE_FIELDS = ("name", "description", "allowed_user_types", "features", "display_order")


class CatalogConfigurationError(ImproperlyConfigured):
    """BILLING_PLAN_CATALOG holds an entry that cannot be sold."""


@dataclass(frozen=True)
class PlanDefinition:
    key: str
    name: str
    price_in_cents: int
    billing_interval: str
    description: str = ""
    currency: str = field(default_factory=_default_currency)
    allowed_user_types: Tuple[str, ...] = ()
    features: Mapping[str, Any] = field(default_factory=dict)
    display_order: int = 0

    @property
    def identity(self) -> Tuple[str, int]:
        return self.billing_interval, self.price_in_cents

    def defaults(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "currency": self.currency.upper(),
            "allowed_user_types": list(self.allowed_user_types),
            "features": dict(self.features),
            "display_order": self.display_order,
        }


def load_plan_catalog(catalog: Optional[Mapping[str, Mapping[str, Any]]] = None, *,
                      allow_test_terms: Optional[bool] = None) -> List[PlanDefinition]:
    """Read and validate plan definitions, by default from ``settings.BILLING_PLAN_CATALOG``."""

    if catalog is None:
        catalog = getattr(settings, "BILLING_PLAN_CATALOG", {}) or {}
    if allow_test_terms is None:
        allow_test_terms = sandbox_terms_allowed()

    definitions: List[PlanDefinition] = []
    seen: Dict[Tuple[str, int], str] = {}
    for key, entry in catalog.items():
        try:
            definition = PlanDefinition(
                key=key,
                name=entry["name"],
                price_in_cents=entry["price_in_cents"],
                billing_interval=entry["billing_interval"],
                description=entry.get("description", ""),
                currency=(entry.get("currency") or _default_currency()).upper(),
                allowed_user_types=tuple(entry.get("allowed_user_types") or ()),
                features=dict(entry.get("features") or {}),
                display_order=int(entry.get("display_order", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CatalogConfigurationError(f"Plan catalog entry '{key}' is incomplete: {exc}") from exc

        try:
            validate_plan_terms(
                definition.billing_interval,
                definition.price_in_cents,
                definition.currency,
                allow_test_terms=allow_test_terms,
            )
        except ValidationError as exc:
            raise CatalogConfigurationError(f"Plan catalog entry '{key}' is invalid: {exc.messages}") from exc

        if definition.identity in seen:
            raise CatalogConfigurationError(
                f"Plan catalog entries '{seen[definition.identity]}' and '{key}' share interval and price."
            )
        seen[definition.identity] = key
        definitions.append(definition)
    return definitions


def ensure_local_plan(definition: PlanDefinition) -> Tuple[Plan, bool]:
    """Find-or-create the registry row keyed by (interval, price).

    The storage-level unique constraint settles concurrent creators: the loser
    of the insert race re-reads the winner's row.
    """

    try:
        with transaction.atomic():
            plan, created = Plan.objects.get_or_create(
                billing_interval=definition.billing_interval,
                price_in_cents=definition.price_in_cents,
                defaults=definition.defaults(),
            )
    except (IntegrityError, ValidationError):
        plan = Plan.objects.get(
            billing_interval=definition.billing_interval,
            price_in_cents=definition.price_in_cents,
        )
        created = False

    if created:
        logger.info("Created plan %s (%s).", plan.pk, definition.key)
        return plan, True

    expected = definition.defaults()
    changed = [name for name in DESCRIPTIVE_FIELDS if getattr(plan, name) != expected[name]]
    if changed:
        for name in changed:
            setattr(plan, name, expected[name])
        plan.save(update_fields=changed + ["updated_at"])
        logger.info("Updated plan %s fields %s from catalog.", plan.pk, changed)
    return plan, False


def ensure_local_plans(definitions: Optional[Iterable[PlanDefinition]] = None) -> Dict[str, List[str]]:
    if definitions is None:
        definitions = load_plan_catalog()
    created, existing = [], []
    for definition in definitions:
        _, was_created = ensure_local_plan(definition)
        (created if was_created else existing).append(definition.key)
    return {"created": created, "existing": existing}


def active_plans():
    return Plan.objects.filter(is_active=True).order_by("display_order", "price_in_cents")


def format_price(price_in_cents: int, currency: str) -> str:
    major, minor = divmod(price_in_cents, 100)
    return f"{major}.{minor:02d} {currency.upper()}"


def yearly_savings_in_cents(plans: Optional[Iterable[Plan]] = None) -> Optional[int]:
    """What the yearly plan saves compared with twelve monthly payments."""

    plans = list(plans if plans is not None else active_plans())
    monthly = next((p for p in plans if p.billing_interval == BillingInterval.MONTH), None)
    yearly = next((p for p in plans if p.billing_interval == BillingInterval.YEAR), None)
    if monthly is None or yearly is None:
        return None
    return max(monthly.price_in_cents * 12 - yearly.price_in_cents, 0)
