"""Management command to run the order status reconciler once."""
from __future__ import annotations

from django.core.management.base import BaseCommand
from django.utils import timezone

from billing.services.order_status import OrderStatusReconciler


class Command(BaseCommand):
    help = "Activate, renew and expire orders, and fail stale pending transactions."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List the orders and transactions the reconciler would touch without changing them.",
        )

    def handle(self, *args, **options) -> None:
        reconciler = OrderStatusReconciler()
        now = timezone.now()

        if options.get("dry_run"):
            activations = list(reconciler.activation_candidates(now))
            candidates = list(reconciler.expiry_candidates(now))
            stale = list(reconciler.stale_transactions(now))
            for order in activations:
                self.stdout.write(f"Would activate order {order.pk}")
            for order in candidates:
                renewal = reconciler.find_renewal_transaction(order)
                if renewal is not None:
                    self.stdout.write(f"Would renew order {order.pk} with transaction {renewal.pk}")
                elif reconciler.awaits_provider_renewal(order, now):
                    self.stdout.write(f"Would keep order {order.pk} open for the provider renewal")
                else:
                    self.stdout.write(f"Would expire order {order.pk} (ended {order.end_date.isoformat()})")
            for payment in stale:
                self.stdout.write(f"Would fail stale transaction {payment.pk}")
            self.stdout.write(
                self.style.WARNING(
                    f"Dry run: {len(activations)} activation(s), {len(candidates)} expiry candidate(s), "
                    f"{len(stale)} stale transaction(s)."
                )
            )
            return

        stats = reconciler.run(now=now)
        summary = ", ".join(f"{key}={value}" for key, value in stats.as_dict().items())
        if stats.failed:
            self.stdout.write(self.style.WARNING(f"Reconciliation finished with failures: {summary}"))
        else:
            self.stdout.write(self.style.SUCCESS(f"Reconciliation finished: {summary}"))
