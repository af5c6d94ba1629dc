"""Re-drive stock reservations left HELD by crashes or interrupted callbacks.

Intended to run periodically (cron, Kubernetes CronJob). Safe to run
concurrently with live traffic: pending orders are never touched and every
ledger call it makes is idempotent.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand, CommandError

from apps.checkout import providers
from apps.checkout.domain import InventoryUnavailable
from apps.checkout.services import ReservationSweeper


class Command(BaseCommand):
    help = "Release or commit HELD reservations older than the grace period, based on their order status."

    def add_arguments(self, parser):
        parser.add_argument(
            "--grace-seconds",
            type=int,
            default=None,
            help="Only consider reservations older than this (defaults to RESERVATION_GRACE_SECONDS).",
        )

    def handle(self, *args, **options):
        services = providers.get_services()
        sweeper = services.sweeper
        if options["grace_seconds"] is not None:
            sweeper = ReservationSweeper(
                inventory=services.inventory,
                orders=services.orders,
                grace=timedelta(seconds=options["grace_seconds"]),
            )
        try:
            counts = sweeper.sweep()
        except InventoryUnavailable as e:
            raise CommandError("inventory service unavailable") from e
        self.stdout.write(
            "released={released} committed={committed} kept={kept} failed={failed}".format(**counts)
        )
