from django.db import models
from django.contrib.auth import get_user_model

from deals.models import Deal, Milestone
from escrow.models import LedgerEntry

User = get_user_model()

PROVIDER_CHOICES = (
    ('stripe', 'Stripe'),
)


class PayoutRecord(models.Model):
    """
    Payer-side expense mirror of ledger movements.

    One `funding` record per funded milestone, one `release` record per
    successful release, one `refund` record per settled refund.
    """
    TYPE_CHOICES = (
        ('funding', 'Funding'),
        ('release', 'Release'),
        ('refund', 'Refund'),
    )

    STATUS_CHOICES = (
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    )

    deal = models.ForeignKey(Deal, on_delete=models.PROTECT, related_name='payout_records')
    milestone = models.ForeignKey(
        Milestone,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payout_records'
    )
    ledger_entry = models.ForeignKey(LedgerEntry, on_delete=models.PROTECT, related_name='payout_records')
    payer = models.ForeignKey(User, on_delete=models.PROTECT, related_name='payout_records')
    record_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    fee_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default='USD')
    provider = models.CharField(max_length=50, blank=True)
    provider_transaction_id = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='completed')
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['deal', 'milestone']),
        ]

    def __str__(self):
        return f"{self.record_type} of {self.amount} for deal {self.deal_id}"


class PaymentMethod(models.Model):
    """
    A payer's saved payment instrument (e.g. a Stripe payment method).
    """
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='payment_methods')
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES)
    provider_token = models.CharField(max_length=255) # Secure token from the provider
    customer_reference = models.CharField(max_length=255, blank=True)
    display_info = models.CharField(max_length=100, blank=True) # e.g., "Visa ending in 4242"
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.user}'s {self.provider} - {self.display_info}"


class PayoutMethod(models.Model):
    """
    Where a payee receives released funds (e.g. a Stripe Connect account).
    """
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='payout_methods')
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES)
    account_reference = models.CharField(max_length=255, help_text="Provider account ID (e.g. acct_...)")
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Payout Method"
        verbose_name_plural = "Payout Methods"

    def __str__(self):
        return f"{self.user.email} - {self.provider}"
