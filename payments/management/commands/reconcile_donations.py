import time

import structlog
from django.core.management.base import BaseCommand

from payments.services import get_services

logger = structlog.get_logger(__name__)


class Command(BaseCommand):
    help = "Poll the payment provider for open donations and settle or expire them."

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run a single pass and exit.')
        parser.add_argument('--interval', type=float, default=None,
                            help='Seconds between passes (defaults to PAYMENT_POLL_INTERVAL).')
        parser.add_argument('--limit', type=int, default=100, help='Maximum tasks per pass.')

    def handle(self, *args, **options):
        services = get_services()
        interval = options['interval'] or services.ledger.poll_interval
        logger.info('reconciler_started', provider=services.provider.name, interval=interval, once=options['once'])
        while True:
            summary = services.reconciler.reconcile_due(limit=options['limit'])
            if options['once']:
                done = ', '.join(f'{k}={v}' for k, v in sorted(summary.items())) or 'nothing due'
                self.stdout.write(self.style.SUCCESS(f'Reconciliation pass: {done}'))
                return
            try:
                time.sleep(interval)
            except KeyboardInterrupt:
                logger.info('reconciler_stopped')
                return
