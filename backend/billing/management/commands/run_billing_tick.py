from __future__ import annotations

from datetime import date

from django.core.management.base import BaseCommand, CommandError

from billing.scheduler import tick_overdue, tick_recurring


class Command(BaseCommand):
    help = "Run the recurring billing and overdue sweeps for one day."

    def add_arguments(self, parser):
        parser.add_argument(
            "--today",
            help="ISO date to bill as (defaults to the current date).",
        )
        parser.add_argument(
            "--only",
            choices=["recurring", "overdue"],
            help="Run a single sweep instead of both.",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=None,
            help="Maximum memberships handled per sweep.",
        )
        parser.add_argument(
            "--grace-days",
            type=int,
            default=None,
            help="Override PAYMENT_GRACE_DAYS for the overdue sweep.",
        )

    def handle(self, *args, **options):
        today = None
        if options["today"]:
            try:
                today = date.fromisoformat(options["today"])
            except ValueError as exc:
                raise CommandError("--today must be an ISO date (YYYY-MM-DD).") from exc
        batch_size = options["batch_size"]
        if batch_size is not None and batch_size < 1:
            raise CommandError("--batch-size must be >= 1.")
        grace_days = options["grace_days"]
        if grace_days is not None and grace_days < 0:
            raise CommandError("--grace-days must be >= 0.")

        only = options["only"]
        if only in (None, "recurring"):
            summary = tick_recurring(today, batch_size=batch_size)
            self.stdout.write(
                "recurring: "
                + " ".join(f"{key}={value}" for key, value in summary.items())
            )
        if only in (None, "overdue"):
            summary = tick_overdue(today, grace_days=grace_days, batch_size=batch_size)
            self.stdout.write(
                "overdue: " + " ".join(f"{key}={value}" for key, value in summary.items())
            )
