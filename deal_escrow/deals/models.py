from decimal import Decimal

from django.db import models
from django.contrib.auth import get_user_model
from django.utils import timezone
from auditlog.registry import auditlog
from auditlog.models import AuditlogHistoryField

from escrow.exceptions import StateConflictError
from .splits import TEMPLATE_CHOICES, EQUAL_SPLIT

User = get_user_model()


class Deal(models.Model):
    """
    One collaboration agreement between a payer and a payee.

    Owns its milestones and disputes. Deals are never deleted; they are
    archived once completed or cancelled.
    """
    class Status(models.TextChoices):
        NEGOTIATING = 'negotiating', 'Negotiating'
        ACTIVE = 'active', 'Active'
        DISPUTED = 'disputed', 'Disputed'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'

    payer = models.ForeignKey(User, related_name='paying_deals', on_delete=models.PROTECT)
    payee = models.ForeignKey(User, related_name='earning_deals', on_delete=models.PROTECT)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='USD')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.NEGOTIATING)
    split_template = models.CharField(max_length=20, choices=TEMPLATE_CHOICES, default=EQUAL_SPLIT)
    auto_release_days = models.PositiveIntegerField(
        null=True, blank=True,
        help_text="Days after approval before funds auto-release. Falls back to the release rules.",
    )
    is_archived = models.BooleanField(default=False)
    cancellation_reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    history = AuditlogHistoryField()

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.title} ({self.payer} -> {self.payee})"

    def role_of(self, user):
        """Return 'payer', 'payee', 'mediator' or None for `user` on this deal."""
        if user is None or not user.is_authenticated:
            return None
        if user.id == self.payer_id:
            return 'payer'
        if user.id == self.payee_id:
            return 'payee'
        if user.is_mediator:
            return 'mediator'
        return None

    def is_party(self, user):
        return user is not None and user.id in (self.payer_id, self.payee_id)

    @property
    def is_closed(self):
        return self.status in (self.Status.COMPLETED, self.Status.CANCELLED)

    def has_open_disputes(self):
        return self.disputes.filter(status__in=OPEN_DISPUTE_STATUSES).exists()

    def outstanding_milestones(self):
        return self.milestones.exclude(state__in=Milestone.CLOSED_STATES)

    def settle_status(self):
        """
        Recompute the deal status after a milestone or dispute changed.

        A deal with no outstanding milestones and no open dispute is completed;
        a deal with an open dispute stays disputed; otherwise it is active.
        """
        if self.status == self.Status.CANCELLED:
            return self.status

        milestones_exist = self.milestones.exists()
        if self.has_open_disputes():
            new_status = self.Status.DISPUTED
        elif milestones_exist and not self.outstanding_milestones().exists():
            new_status = self.Status.COMPLETED
        elif self.status == self.Status.NEGOTIATING:
            new_status = self.Status.NEGOTIATING
        else:
            new_status = self.Status.ACTIVE

        if new_status != self.status:
            self.status = new_status
            update_fields = ['status', 'updated_at']
            if new_status == self.Status.COMPLETED:
                self.completed_at = timezone.now()
                self.is_archived = True
                update_fields += ['completed_at', 'is_archived']
            self.save(update_fields=update_fields)
        return self.status


# Mirrors disputes.Dispute.OPEN_STATUSES.
OPEN_DISPUTE_STATUSES = ('pending', 'under_review', 'mediation', 'escalated')


class Milestone(models.Model):
    """
    One payable unit of work within a deal.

    State machine:
        pending -> funded -> submitted -> approved | revision_required -> completed
        funded | submitted | revision_required | approved -> disputed
        disputed -> completed | refunded | cancelled | <state before the dispute>
    """
    class State(models.TextChoices):
        PENDING = 'pending', 'Pending'
        FUNDED = 'funded', 'Funded'
        SUBMITTED = 'submitted', 'Submitted'
        REVISION_REQUIRED = 'revision_required', 'Revision Required'
        APPROVED = 'approved', 'Approved'
        DISPUTED = 'disputed', 'Disputed'
        COMPLETED = 'completed', 'Completed'
        REFUNDED = 'refunded', 'Refunded'
        CANCELLED = 'cancelled', 'Cancelled'

    CLOSED_STATES = (State.COMPLETED, State.REFUNDED, State.CANCELLED)
    ESCROWED_STATES = (State.FUNDED, State.SUBMITTED, State.REVISION_REQUIRED, State.APPROVED)
    DISPUTABLE_STATES = ESCROWED_STATES

    TRANSITIONS = {
        State.PENDING: {State.FUNDED, State.CANCELLED},
        State.FUNDED: {State.SUBMITTED, State.DISPUTED, State.COMPLETED, State.CANCELLED, State.REFUNDED},
        State.SUBMITTED: {
            State.APPROVED, State.REVISION_REQUIRED, State.DISPUTED,
            State.COMPLETED, State.CANCELLED, State.REFUNDED,
        },
        State.REVISION_REQUIRED: {State.SUBMITTED, State.DISPUTED, State.COMPLETED, State.CANCELLED, State.REFUNDED},
        State.APPROVED: {State.COMPLETED, State.DISPUTED, State.CANCELLED, State.REFUNDED},
        State.DISPUTED: {
            State.COMPLETED, State.REFUNDED, State.CANCELLED,
            State.FUNDED, State.SUBMITTED, State.REVISION_REQUIRED, State.APPROVED,
        },
        State.COMPLETED: set(),
        State.REFUNDED: set(),
        State.CANCELLED: set(),
    }

    deal = models.ForeignKey(Deal, on_delete=models.PROTECT, related_name='milestones')
    order = models.PositiveSmallIntegerField()
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    percentage = models.DecimalField(max_digits=5, decimal_places=2)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    bonus_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    due_date = models.DateField(null=True, blank=True)
    auto_release_at = models.DateTimeField(null=True, blank=True)
    dispute_flag = models.BooleanField(default=False)
    state = models.CharField(max_length=20, choices=State.choices, default=State.PENDING)
    state_before_dispute = models.CharField(max_length=20, choices=State.choices, blank=True)

    funded_at = models.DateTimeField(null=True, blank=True)
    funding_reference = models.CharField(max_length=255, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    history = AuditlogHistoryField()

    class Meta:
        ordering = ['deal_id', 'order']
        constraints = [
            models.UniqueConstraint(fields=['deal', 'order'], name='unique_milestone_order_per_deal'),
        ]

    def __str__(self):
        return f"#{self.order} {self.title} ({self.state})"

    @property
    def payable_amount(self):
        """Amount held for the payee: milestone amount plus bonus."""
        return self.amount + (self.bonus_amount or Decimal('0'))

    @property
    def is_closed(self):
        return self.state in self.CLOSED_STATES

    def can_transition_to(self, new_state):
        return new_state in self.TRANSITIONS.get(self.state, set())

    def transition_to(self, new_state):
        """
        Move to `new_state` and stamp the matching timestamp.

        Only sets attributes; the caller saves inside its own transaction.
        Raises StateConflictError for transitions the state machine forbids.
        """
        if not self.can_transition_to(new_state):
            raise StateConflictError(
                f"Milestone {self.order} cannot move from '{self.state}' to '{new_state}'."
            )

        now = timezone.now()
        if new_state == self.State.DISPUTED:
            self.state_before_dispute = self.state
        elif self.state == self.State.DISPUTED:
            self.state_before_dispute = ''

        self.state = new_state
        if new_state == self.State.FUNDED and self.funded_at is None:
            self.funded_at = now
        elif new_state == self.State.SUBMITTED:
            self.submitted_at = now
        elif new_state == self.State.APPROVED:
            self.approved_at = now
        elif new_state == self.State.COMPLETED:
            self.completed_at = now
            self.auto_release_at = None
        elif new_state in (self.State.CANCELLED, self.State.REFUNDED):
            self.cancelled_at = now
            self.auto_release_at = None
        return self


class Deliverable(models.Model):
    milestone = models.ForeignKey(Milestone, on_delete=models.PROTECT, related_name='deliverables')
    submitted_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name='deliverables')
    title = models.CharField(max_length=255)
    link = models.URLField(blank=True)
    notes = models.TextField(blank=True)
    submitted_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['submitted_at', 'id']

    def __str__(self):
        return f"{self.title} for {self.milestone}"


class MilestoneFeedback(models.Model):
    milestone = models.ForeignKey(Milestone, on_delete=models.PROTECT, related_name='feedback')
    author = models.ForeignKey(User, on_delete=models.PROTECT, related_name='milestone_feedback')
    text = models.TextField()
    decision = models.CharField(
        max_length=20,
        choices=[('approved', 'Approved'), ('revision_required', 'Revision Required'), ('comment', 'Comment')],
        default='comment',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']


auditlog.register(Deal)
auditlog.register(Milestone)
