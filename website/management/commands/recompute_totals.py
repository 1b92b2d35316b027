from django.core.management.base import BaseCommand

from payments.services import get_services


class Command(BaseCommand):
    help = "Re-derive every project's current_amount from its completed donations."

    def handle(self, *args, **options):
        drifted = get_services().ledger.recompute_all()
        for pk, before, after in drifted:
            self.stdout.write(f'Project #{pk}: {before} -> {after}')
        self.stdout.write(self.style.SUCCESS(f'{len(drifted)} project total(s) corrected.'))
