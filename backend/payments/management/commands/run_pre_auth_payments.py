from django.core.management.base import BaseCommand

from payments.workers import run_pre_auth


class Command(BaseCommand):
    help = "Place authorization holds for bookings whose pre-auth date has arrived."

    def add_arguments(self, parser):
        parser.add_argument("--batch-size", type=int, default=None)

    def handle(self, *args, **options):
        report = run_pre_auth(batch_size=options["batch_size"])
        for detail in report.error_details:
            self.stderr.write(f"booking {detail['booking_id']}: {detail['error']}")
        self.stdout.write(
            self.style.SUCCESS(
                f"Authorized {report.processed} payments ({report.errors} errors, {report.duration_ms}ms)"
            )
        )
