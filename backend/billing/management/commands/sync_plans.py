"""Management command to mirror the plan catalog into Stripe."""
from __future__ import annotations

import signal
import threading

from django.core.management.base import BaseCommand, CommandError

from billing.errors import PlanSyncError
from billing.services.plan_sync import PlanSynchronizer
from billing.services.stripe_gateway import StripeGateway


class Command(BaseCommand):
    help = (
        "Register the configured plans locally, create missing Stripe products and prices, "
        "and verify every active plan matches its Stripe price. Safe to re-run."
    )

    gateway_factory = staticmethod(StripeGateway.from_settings)

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--check",
            action="store_true",
            help="Only validate active plans against Stripe; create nothing.",
        )

    def handle(self, *args, **options) -> None:
        validate_only: bool = options.get("check")
        stop_event = threading.Event()
        previous_handlers = self._install_signal_handlers(stop_event)

        try:
            with self.gateway_factory() as gateway:
                report = PlanSynchronizer(gateway, stop_event=stop_event, validate_only=validate_only).run()
        except PlanSyncError as exc:
            raise CommandError(f"Plan synchronization failed at {exc.describe()}") from exc
        finally:
            self._restore_signal_handlers(previous_handlers)

        for name in report.plans_created:
            self.stdout.write(f"Registered plan {name}")
        for name in report.prices_created:
            self.stdout.write(f"Created Stripe price for {name}")
        for name in report.prices_adopted:
            self.stdout.write(f"Recorded existing Stripe price for {name}")
        self.stdout.write(self.style.SUCCESS(f"Plan synchronization complete ({report.summary()})."))

    def _install_signal_handlers(self, stop_event: threading.Event):
        if threading.current_thread() is not threading.main_thread():
            return {}

        def request_stop(signum, frame):
            self.stderr.write(self.style.WARNING("Stop requested; finishing the current plan."))
            stop_event.set()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, request_stop)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
