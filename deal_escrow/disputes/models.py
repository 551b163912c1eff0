from django.db import models
from django.utils import timezone
from django.utils.crypto import get_random_string
from auditlog.registry import auditlog
from auditlog.models import AuditlogHistoryField

from accounts.models import CustomUser
from deals.models import Deal, Milestone


def generate_dispute_number():
    stamp = timezone.now().strftime('%Y%m%d%H%M%S')
    return f"D-{stamp}-{get_random_string(5, allowed_chars='ABCDEFGHJKLMNPQRSTUVWXYZ23456789')}"


class Dispute(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        UNDER_REVIEW = 'under_review', 'Under Review'
        MEDIATION = 'mediation', 'Mediation'
        ESCALATED = 'escalated', 'Escalated'
        RESOLVED = 'resolved', 'Resolved'
        CANCELLED = 'cancelled', 'Cancelled'

    class Category(models.TextChoices):
        QUALITY_ISSUE = 'quality_issue', 'Quality Issue'
        DEADLINE_MISSED = 'deadline_missed', 'Deadline Missed'
        SCOPE_DISAGREEMENT = 'scope_disagreement', 'Scope Disagreement'
        PAYMENT_ISSUE = 'payment_issue', 'Payment Issue'
        COMMUNICATION_BREAKDOWN = 'communication_breakdown', 'Communication Breakdown'
        OTHER = 'other', 'Other'

    class Urgency(models.TextChoices):
        LOW = 'low', 'Low'
        MEDIUM = 'medium', 'Medium'
        HIGH = 'high', 'High'

    class Outcome(models.TextChoices):
        RELEASE_FULL = 'release_full', 'Release Full Payment'
        RELEASE_PARTIAL = 'release_partial', 'Release Partial Payment'
        REFUND_FULL = 'refund_full', 'Full Refund'
        REFUND_PARTIAL = 'refund_partial', 'Partial Refund'
        CONTINUE_WORK = 'continue_work', 'Continue Work'
        CANCEL_DEAL = 'cancel_deal', 'Cancel Deal'

    OPEN_STATUSES = (Status.PENDING, Status.UNDER_REVIEW, Status.MEDIATION, Status.ESCALATED)

    # Mediator-driven moves; resolution and cancellation have their own paths.
    MEDIATOR_TRANSITIONS = {
        Status.PENDING: {Status.UNDER_REVIEW, Status.MEDIATION},
        Status.UNDER_REVIEW: {Status.MEDIATION},
        Status.ESCALATED: {Status.UNDER_REVIEW, Status.MEDIATION},
    }

    ESCALATION_DAYS = {
        Urgency.HIGH: 3,
        Urgency.MEDIUM: 7,
        Urgency.LOW: 14,
    }

    dispute_number = models.CharField(max_length=40, unique=True, default=generate_dispute_number, editable=False)
    deal = models.ForeignKey(Deal, on_delete=models.PROTECT, related_name='disputes')
    milestone = models.ForeignKey(
        Milestone, on_delete=models.PROTECT, null=True, blank=True, related_name='disputes'
    )
    raised_by = models.ForeignKey(CustomUser, on_delete=models.PROTECT, related_name='disputes')

    category = models.CharField(max_length=30, choices=Category.choices, default=Category.OTHER)
    title = models.CharField(max_length=255)
    description = models.TextField()
    urgency = models.CharField(max_length=10, choices=Urgency.choices, default=Urgency.MEDIUM)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    escalation_deadline = models.DateTimeField()

    outcome = models.CharField(max_length=20, choices=Outcome.choices, blank=True)
    resolution_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    resolution_summary = models.TextField(blank=True)
    mediator_notes = models.TextField(blank=True)
    resolved_by = models.ForeignKey(
        CustomUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='resolved_disputes'
    )
    resolved_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    history = AuditlogHistoryField()

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.dispute_number} on {self.deal.title} by {self.raised_by}"

    @property
    def is_open(self):
        return self.status in self.OPEN_STATUSES

    @property
    def days_open(self):
        end = self.resolved_at or self.cancelled_at or timezone.now()
        return (end - self.created_at).days

    @property
    def days_until_escalation(self):
        if not self.is_open or self.status == self.Status.ESCALATED:
            return None
        return max((self.escalation_deadline - timezone.now()).days, 0)


class DisputeMessage(models.Model):
    dispute = models.ForeignKey(Dispute, on_delete=models.PROTECT, related_name='messages')
    sender = models.ForeignKey(CustomUser, on_delete=models.PROTECT, related_name='dispute_messages')
    sender_role = models.CharField(max_length=20)
    message = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']


class DisputeTimelineEvent(models.Model):
    class Action(models.TextChoices):
        DISPUTE_CREATED = 'dispute_created', 'Dispute Created'
        MESSAGE_ADDED = 'message_added', 'Message Added'
        STATUS_CHANGED = 'status_changed', 'Status Changed'
        ESCALATED = 'escalated', 'Escalated'
        RESOLVED = 'resolved', 'Resolved'
        CANCELLED = 'cancelled', 'Cancelled'

    dispute = models.ForeignKey(Dispute, on_delete=models.PROTECT, related_name='timeline')
    action = models.CharField(max_length=30, choices=Action.choices)
    actor = models.ForeignKey(CustomUser, on_delete=models.SET_NULL, null=True, blank=True)
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']


auditlog.register(Dispute)
