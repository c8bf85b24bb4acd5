from django.core.management.base import BaseCommand, CommandError

from fulfillment.services import lifecycle


class Command(BaseCommand):
    help = (
        "Flag open requests older than --days with no committed funding and no "
        "allocations for admin review. Schedule monthly (1st, 01:00)."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Age in days after which an unmatched request is flagged (default: 30).",
        )

    def handle(self, *args, **options):
        days = options.get("days")
        if days is not None and days < 0:
            raise CommandError("--days must be zero or positive.")
        count = lifecycle.flag_unmatched_requests(days=days)
        self.stdout.write(self.style.SUCCESS(f"Flagged {count} request(s) for review."))
