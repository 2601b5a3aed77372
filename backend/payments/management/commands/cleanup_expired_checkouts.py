from django.core.management.base import BaseCommand

from payments.workers import cleanup_expired_checkouts


class Command(BaseCommand):
    help = "Delete unpaid bookings whose checkout session was abandoned."

    def add_arguments(self, parser):
        parser.add_argument("--batch-size", type=int, default=None)

    def handle(self, *args, **options):
        report = cleanup_expired_checkouts(batch_size=options["batch_size"])
        self.stdout.write(self.style.SUCCESS(f"Removed {report.processed} abandoned bookings ({report.errors} errors)"))
