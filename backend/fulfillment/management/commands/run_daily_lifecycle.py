from django.core.management.base import BaseCommand

from fulfillment.services import lifecycle


class Command(BaseCommand):
    help = "Expire past-date donations and close expired open requests. Schedule daily."

    def handle(self, *args, **options):
        counts = lifecycle.run_daily()
        self.stdout.write(
            self.style.SUCCESS(
                "Expired {donations_expired} donation(s); "
                "closed {requests_expired} expired request(s).".format(**counts)
            )
        )
