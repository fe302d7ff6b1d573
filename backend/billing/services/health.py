"""Operational health of the billing core."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from django.db import DatabaseError, connection

from billing.errors import ProcessorError
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    healthy: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": "healthy" if self.healthy else "unhealthy",
            "checks": dict(self.checks),
            "recommendations": list(self.recommendations),
        }


def _database_reachable() -> bool:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.exception("Billing health check could not reach the database.")
        return False
    return True


def _processor_reachable(gateway: StripeGateway) -> bool:
    try:
        gateway.ping()
    except ProcessorError as exc:
        logger.warning("Billing health check could not reach Stripe: %s", exc)
        return False
    return True


def collect_health(gateway: StripeGateway) -> HealthReport:
    checks = {
        "webhook_secret": gateway.webhook_secret_configured,
        "processor": _processor_reachable(gateway),
        "database": _database_reachable(),
    }

    recommendations = []
    if not checks["webhook_secret"]:
        recommendations.append("Set STRIPE_WEBHOOK_SECRET to the signing secret of the Stripe webhook endpoint.")
    if not checks["processor"]:
        recommendations.append("Check STRIPE_SECRET_KEY and outbound connectivity to api.stripe.com.")
    if not checks["database"]:
        recommendations.append("Check DATABASE_URL and that the database server is accepting connections.")

    return HealthReport(
        healthy=checks["webhook_secret"] and checks["database"],
        checks=checks,
        recommendations=recommendations,
    )
