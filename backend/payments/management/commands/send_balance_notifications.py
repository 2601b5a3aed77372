from django.core.management.base import BaseCommand

from payments.workers import send_balance_notifications


class Command(BaseCommand):
    help = "Email clients about balances still owed after their appointment."

    def add_arguments(self, parser):
        parser.add_argument("--batch-size", type=int, default=None)

    def handle(self, *args, **options):
        report = send_balance_notifications(batch_size=options["batch_size"])
        self.stdout.write(self.style.SUCCESS(f"Sent {report.processed} balance notifications ({report.errors} errors)"))
