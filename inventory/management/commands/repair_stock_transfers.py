from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand

from inventory.transfers import repair_pending_transfers


class Command(BaseCommand):
    help = "Complete stock transfers left half-applied by an interrupted process."

    def add_arguments(self, parser):
        parser.add_argument(
            "--older-than",
            dest="older_than",
            type=int,
            default=None,
            help="Minimum age in seconds of a pending transfer (default: STOCK_TRANSFER_REPAIR_AFTER_SECONDS).",
        )

    def handle(self, *args, **options):
        seconds = options.get("older_than")
        if seconds is None:
            seconds = getattr(settings, "STOCK_TRANSFER_REPAIR_AFTER_SECONDS", 300)

        summary = repair_pending_transfers(older_than=timedelta(seconds=max(seconds, 0)))

        for number in summary["repaired"]:
            self.stdout.write(f"- repaired {number}")
        for number in summary["failed"]:
            self.stdout.write(self.style.WARNING(f"- could not repair {number}"))

        self.stdout.write(
            self.style.SUCCESS(
                f"Transfer repair complete. Repaired: {len(summary['repaired'])}, failed: {len(summary['failed'])}."
            )
        )
