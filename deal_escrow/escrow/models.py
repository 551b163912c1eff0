from django.db import models
from django.db.models import Q
from auditlog.registry import auditlog
from auditlog.models import AuditlogHistoryField

from deals.models import Deal, Milestone


class LedgerEntry(models.Model):
    """
    One unit of money held on behalf of the payee ("earning").

    Source of truth for whether money is still escrowed. A milestone has at
    most one `escrowed` entry; once an entry leaves `escrowed` only its
    terminal bookkeeping fields change. Entries are never deleted.
    """
    class Status(models.TextChoices):
        ESCROWED = 'escrowed', 'Escrowed'
        COMPLETED = 'completed', 'Completed'
        REFUND_PENDING = 'refund_pending', 'Refund Pending'
        REFUNDED = 'refunded', 'Refunded'

    class ReleaseType(models.TextChoices):
        MANUAL = 'manual', 'Manual'
        AUTOMATIC = 'automatic', 'Automatic'
        DISPUTE_RESOLUTION = 'dispute_resolution', 'Dispute Resolution'

    deal = models.ForeignKey(Deal, on_delete=models.PROTECT, related_name='ledger_entries')
    milestone = models.ForeignKey(
        Milestone,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_entries',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='USD')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ESCROWED)
    provider = models.CharField(max_length=50, blank=True)
    transaction_reference = models.CharField(max_length=255, blank=True)
    # Written by the request settling this entry before any gateway call.
    claim_token = models.CharField(max_length=32, blank=True)
    transfer_reference = models.CharField(max_length=255, blank=True)
    refund_reference = models.CharField(max_length=255, blank=True)
    split_from = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='split_entries',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    released_at = models.DateTimeField(null=True, blank=True)
    release_type = models.CharField(max_length=20, choices=ReleaseType.choices, blank=True)
    release_reason = models.CharField(max_length=255, blank=True)
    refund_requested_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_reason = models.CharField(max_length=255, blank=True)

    history = AuditlogHistoryField()

    class Meta:
        ordering = ['created_at', 'id']
        verbose_name_plural = "ledger entries"
        constraints = [
            models.UniqueConstraint(
                fields=['milestone'],
                condition=Q(status='escrowed'),
                name='one_escrowed_entry_per_milestone',
            ),
        ]
        indexes = [
            models.Index(fields=['deal', 'status']),
            models.Index(fields=['milestone', 'status']),
        ]

    def __str__(self):
        return f"{self.status} {self.amount} {self.currency} for deal {self.deal_id}"


auditlog.register(LedgerEntry)
