import logging

from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import OperationalError, ProgrammingError
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def check_plan_terms_mode() -> None:
    """Sandbox plan terms must never be active against a live Stripe account."""

    if getattr(settings, "BILLING_ALLOW_TEST_PLAN_TERMS", False) and getattr(settings, "STRIPE_LIVE_MODE", False):
        raise ImproperlyConfigured(
            "BILLING_ALLOW_TEST_PLAN_TERMS cannot be enabled with a live STRIPE_SECRET_KEY."
        )


def init_plans_after_migrate(sender, **kwargs):
    """Called automatically after migrations to register the configured plan catalog."""
    from billing.services.plan_registry import ensure_local_plans

    logger.info("[Billing] Registering plan catalog after migrate…")
    try:
        result = ensure_local_plans()
    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for plan registration.")
        return
    if result["created"]:
        logger.info("Plan registration created %s; run `manage.py sync_plans` to mirror them.", result["created"])


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        check_plan_terms_mode()
        # Connect signal so the catalog is registered after every migrate run
        post_migrate.connect(init_plans_after_migrate, sender=self)
