import signal, threading

from django.core.management.base import BaseCommand

from payments.conf import payments_setting
from payments.scheduler import ReconciliationScheduler


class Command(BaseCommand):
    help = "Retry failed payments, start due installment debits and poll stale orders/refunds"

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
        parser.add_argument("--interval", type=float, default=None)

    def handle(self, *args, **opts):
        scheduler = ReconciliationScheduler()
        if opts["once"]:
            report = scheduler.tick()
            for key, error in report.errors:
                self.stdout.write(self.style.WARNING(f"{key}: {error}"))
            self.stdout.write(self.style.SUCCESS(report.summary()))
            return

        interval = opts["interval"] or payments_setting("SCHEDULER_INTERVAL_SECONDS")
        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        self.stdout.write(self.style.SUCCESS(f"Payment scheduler running every {interval}s"))
        try:
            scheduler.run_forever(interval, stop)
        except KeyboardInterrupt:
            stop.set()
