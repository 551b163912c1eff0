import logging

from django.db import transaction

from escrow.exceptions import (
    AuthorizationError,
    DuplicateSubmissionError,
    EscrowValidationError,
    StateConflictError,
)
from escrow.services import MANUAL, ReleaseEngine
from .models import Deal, Deliverable, Milestone, MilestoneFeedback
from .notifications import notify
from .splits import calculate_split

logger = logging.getLogger(__name__)


class ReviewService:
    """
    Milestone structure and the submit / approve / reject workflow.

    Approval hands over to the ReleaseEngine; with `release_on_approval` the
    release happens in the same transaction as the approval.
    """

    def __init__(self, engine=None):
        self.engine = engine or ReleaseEngine()

    def create_structure(self, deal, actor, template, percentages=None, count=None, details=None):
        """
        Split the deal total into milestones and persist them in order.

        `details` is an optional list of per-milestone dicts (title,
        description, due_date, bonus_amount); its length fixes the count.
        """
        if actor.id != deal.payer_id:
            raise AuthorizationError("Only the deal payer can define milestones.")
        if deal.is_closed:
            raise StateConflictError(f"Deal is {deal.status}.")

        details = details or []
        if count is None and details:
            count = len(details)

        portions = calculate_split(
            deal.total_amount, template, percentages=percentages, count=count, currency=deal.currency,
        )
        if details and len(details) != len(portions):
            raise EscrowValidationError(
                f"Got details for {len(details)} milestones but the split has {len(portions)}."
            )

        with transaction.atomic():
            deal = Deal.objects.select_for_update().get(pk=deal.pk)
            if deal.milestones.exists():
                raise StateConflictError("This deal already has a milestone structure.")

            milestones = []
            for portion in portions:
                detail = details[portion.order - 1] if details else {}
                milestones.append(Milestone.objects.create(
                    deal=deal,
                    order=portion.order,
                    title=detail.get('title') or f"Milestone {portion.order}",
                    description=detail.get('description', ''),
                    due_date=detail.get('due_date'),
                    bonus_amount=detail.get('bonus_amount') or 0,
                    percentage=portion.percentage,
                    amount=portion.amount,
                ))

            deal.split_template = template
            deal.save(update_fields=['split_template', 'updated_at'])

        logger.info(f"Deal {deal.id}: created {len(milestones)} milestones using {template}")
        notify(deal.payee, 'milestone_structure_created', {
            'deal': deal.title,
            'milestones': [f"{m.title}: {m.amount} {deal.currency}" for m in milestones],
        })
        return milestones

    def submit(self, milestone, actor, deliverables):
        """Record the payee's deliverables and move the milestone to `submitted`."""
        deal = milestone.deal
        if actor.id != deal.payee_id:
            raise AuthorizationError("Only the deal payee can submit work.")
        if not deliverables:
            raise EscrowValidationError("Submit at least one deliverable.")

        with transaction.atomic():
            milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
            if milestone.state in (Milestone.State.SUBMITTED, Milestone.State.APPROVED, Milestone.State.COMPLETED):
                raise DuplicateSubmissionError(f"Milestone {milestone.order} is already {milestone.state}.")
            if milestone.state not in (Milestone.State.FUNDED, Milestone.State.REVISION_REQUIRED):
                raise StateConflictError(f"Milestone {milestone.order} is '{milestone.state}' and cannot take submissions.")

            for item in deliverables:
                Deliverable.objects.create(
                    milestone=milestone,
                    submitted_by=actor,
                    title=item['title'],
                    link=item.get('link', ''),
                    notes=item.get('notes', ''),
                )

            milestone.transition_to(Milestone.State.SUBMITTED)
            milestone.save()

        logger.info(f"Milestone {milestone.id} submitted with {len(deliverables)} deliverable(s)")
        notify(deal.payer, 'milestone_submitted', {'deal': deal.title, 'milestone': milestone.title})
        return milestone

    def approve(self, milestone, actor, feedback=''):
        deal = milestone.deal
        if actor.id != deal.payer_id:
            raise AuthorizationError("Only the deal payer can approve work.")

        with transaction.atomic():
            milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
            if milestone.state != Milestone.State.SUBMITTED:
                raise StateConflictError(f"Milestone {milestone.order} is '{milestone.state}', not submitted.")

            milestone.transition_to(Milestone.State.APPROVED)
            if not self.engine.rules.release_on_approval:
                milestone.auto_release_at = self.engine.auto_release_time(milestone)
            milestone.save()

            if feedback:
                MilestoneFeedback.objects.create(milestone=milestone, author=actor, text=feedback, decision='approved')

            release = None
            if self.engine.rules.release_on_approval:
                release = self.engine.release(milestone, MANUAL, actor)

        milestone.refresh_from_db()
        logger.info(f"Milestone {milestone.id} approved by payer {actor.id}")
        notify(deal.payee, 'milestone_approved', {
            'deal': deal.title,
            'milestone': milestone.title,
            'auto_release_at': milestone.auto_release_at.isoformat() if milestone.auto_release_at else None,
        })
        return milestone, release

    def reject(self, milestone, actor, feedback):
        """Send the milestone back for revision; funds stay escrowed."""
        deal = milestone.deal
        if actor.id != deal.payer_id:
            raise AuthorizationError("Only the deal payer can request revisions.")
        if not feedback or not feedback.strip():
            raise EscrowValidationError("Feedback is required when requesting a revision.")

        with transaction.atomic():
            milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
            if milestone.state != Milestone.State.SUBMITTED:
                raise StateConflictError(f"Milestone {milestone.order} is '{milestone.state}', not submitted.")

            milestone.transition_to(Milestone.State.REVISION_REQUIRED)
            milestone.save()
            MilestoneFeedback.objects.create(
                milestone=milestone, author=actor, text=feedback.strip(), decision='revision_required',
            )

        logger.info(f"Milestone {milestone.id} sent back for revision")
        notify(deal.payee, 'milestone_revision_required', {
            'deal': deal.title,
            'milestone': milestone.title,
            'feedback': feedback.strip(),
        })
        return milestone
