from django.core.management.base import BaseCommand

from escrow.models import LedgerEntry
from escrow.services import ReleaseEngine


class Command(BaseCommand):
    help = "Retries gateway refunds for ledger entries stuck in refund_pending."

    def handle(self, *args, **options):
        engine = ReleaseEngine()
        pending = LedgerEntry.objects.filter(
            status=LedgerEntry.Status.REFUND_PENDING,
        ).select_related('deal').order_by('refund_requested_at', 'id')

        settled = failed = 0
        for entry in pending:
            if engine.settle_refund(entry):
                settled += 1
            else:
                failed += 1
                self.stdout.write(self.style.ERROR(f"Refund for ledger entry {entry.id} is still pending."))

        self.stdout.write(self.style.SUCCESS(f"Refunded {settled} entr{'y' if settled == 1 else 'ies'}; {failed} still pending."))
