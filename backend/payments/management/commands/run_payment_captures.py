from django.core.management.base import BaseCommand

from payments.workers import run_captures


class Command(BaseCommand):
    help = "Capture authorized payments for appointments that have ended."

    def add_arguments(self, parser):
        parser.add_argument("--batch-size", type=int, default=None)

    def handle(self, *args, **options):
        report = run_captures(batch_size=options["batch_size"])
        for detail in report.error_details:
            self.stderr.write(f"booking {detail['booking_id']}: {detail['error']}")
        self.stdout.write(
            self.style.SUCCESS(
                f"Captured {report.processed} payments ({report.errors} errors, {report.duration_ms}ms)"
            )
        )
