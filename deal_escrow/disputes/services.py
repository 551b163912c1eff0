from datetime import timedelta
from decimal import Decimal, InvalidOperation
import logging

from django.db import transaction
from django.utils import timezone

from accounts.models import CustomUser
from deals.models import Deal, Milestone
from deals.notifications import notify
from escrow.exceptions import AuthorizationError, EscrowValidationError, StateConflictError
from escrow.services import ReleaseEngine, ReleaseInstruction
from .models import Dispute, DisputeMessage, DisputeTimelineEvent

logger = logging.getLogger(__name__)

Outcome = Dispute.Outcome
DEAL_LEVEL_OUTCOMES = (Outcome.CONTINUE_WORK, Outcome.CANCEL_DEAL)


class DisputeEngine:
    """
    Opens, mediates and resolves disputes.

    A resolution never moves money itself: it turns the outcome into a
    ReleaseInstruction and hands it to the ReleaseEngine.
    """

    def __init__(self, engine=None):
        self.engine = engine or ReleaseEngine()

    def open(self, deal, actor, category, title, description, urgency=Dispute.Urgency.MEDIUM, milestone=None):
        role = deal.role_of(actor)
        if role not in ('payer', 'payee'):
            raise AuthorizationError("Only the deal payer or payee can open a dispute.")
        if deal.is_closed:
            raise StateConflictError(f"Cannot open a dispute on a {deal.status} deal.")
        if category not in Dispute.Category.values:
            raise EscrowValidationError(f"Unknown dispute category '{category}'.")
        if urgency not in Dispute.Urgency.values:
            raise EscrowValidationError(f"Unknown urgency '{urgency}'.")
        if milestone is not None and milestone.deal_id != deal.id:
            raise EscrowValidationError("Milestone does not belong to this deal.")

        now = timezone.now()
        with transaction.atomic():
            if milestone is not None:
                milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
                if milestone.dispute_flag or milestone.state == Milestone.State.DISPUTED:
                    raise StateConflictError(f"Milestone {milestone.order} is already under dispute.")
                if milestone.state not in Milestone.DISPUTABLE_STATES:
                    raise StateConflictError(
                        f"Milestone {milestone.order} is '{milestone.state}' and cannot be disputed."
                    )

            dispute = Dispute.objects.create(
                deal=deal,
                milestone=milestone,
                raised_by=actor,
                category=category,
                title=title,
                description=description,
                urgency=urgency,
                escalation_deadline=now + timedelta(days=Dispute.ESCALATION_DAYS[urgency]),
            )

            if milestone is not None:
                milestone.transition_to(Milestone.State.DISPUTED)
                milestone.dispute_flag = True
                milestone.auto_release_at = None
                milestone.save()

            deal.status = Deal.Status.DISPUTED
            deal.save(update_fields=['status', 'updated_at'])

            self._log_event(dispute, DisputeTimelineEvent.Action.DISPUTE_CREATED, actor,
                            f"Dispute opened by the {role}: {title}")

        logger.info(f"Dispute {dispute.dispute_number} opened on deal {deal.id} by {role} {actor.id}")
        other_party = deal.payee if role == 'payer' else deal.payer
        notify(other_party, 'dispute_opened', {
            'dispute': dispute.dispute_number,
            'deal': deal.title,
            'milestone': milestone.title if milestone else 'whole deal',
            'category': dispute.get_category_display(),
        })
        self._notify_mediators('dispute_opened', dispute)
        return dispute

    def add_message(self, dispute, author, text):
        """Append a message. Allowed on resolved disputes too."""
        role = dispute.deal.role_of(author)
        if role is None:
            raise AuthorizationError("Only the deal parties or a mediator can post on this dispute.")
        if not text or not text.strip():
            raise EscrowValidationError("Message cannot be empty.")

        with transaction.atomic():
            message = DisputeMessage.objects.create(
                dispute=dispute, sender=author, sender_role=role, message=text.strip(),
            )
            self._log_event(dispute, DisputeTimelineEvent.Action.MESSAGE_ADDED, author, f"Message from the {role}")

        deal = dispute.deal
        for user in (deal.payer, deal.payee):
            if user.id != author.id:
                notify(user, 'dispute_message', {'dispute': dispute.dispute_number, 'from': role})
        return message

    def update_status(self, dispute, mediator, new_status, notes=''):
        """Mediator workflow moves: pending -> under_review -> mediation, escalated -> mediation."""
        self._require_mediator(mediator)
        with transaction.atomic():
            dispute = Dispute.objects.select_for_update().get(pk=dispute.pk)
            allowed = Dispute.MEDIATOR_TRANSITIONS.get(dispute.status, set())
            if new_status not in allowed:
                raise StateConflictError(f"Cannot move a dispute from '{dispute.status}' to '{new_status}'.")

            old_status = dispute.status
            dispute.status = new_status
            if notes:
                dispute.mediator_notes = f"{dispute.mediator_notes}\n{notes}".strip()
            dispute.save()
            self._log_event(dispute, DisputeTimelineEvent.Action.STATUS_CHANGED, mediator,
                            f"{old_status} -> {new_status}")

        logger.info(f"Dispute {dispute.dispute_number} moved to {new_status} by mediator {mediator.id}")
        return dispute

    def instruction_for(self, dispute, outcome, amount=None):
        """Map a money outcome to the ReleaseInstruction the ReleaseEngine executes."""
        reason = f"Dispute {dispute.dispute_number}: {Outcome(outcome).label}"
        if outcome == Outcome.RELEASE_FULL:
            return ReleaseInstruction(
                action=ReleaseInstruction.RELEASE, reason=reason, dispute_id=dispute.id,
            )
        if outcome == Outcome.REFUND_FULL:
            return ReleaseInstruction(
                action=ReleaseInstruction.REFUND, final_state=Milestone.State.REFUNDED,
                reason=reason, dispute_id=dispute.id,
            )
        if outcome == Outcome.RELEASE_PARTIAL:
            return ReleaseInstruction(
                action=ReleaseInstruction.RELEASE, amount=amount, remainder=ReleaseInstruction.REFUND,
                reason=reason, dispute_id=dispute.id,
            )
        if outcome == Outcome.REFUND_PARTIAL:
            return ReleaseInstruction(
                action=ReleaseInstruction.REFUND, amount=amount, remainder=ReleaseInstruction.RELEASE,
                reason=reason, dispute_id=dispute.id,
            )
        return None

    def resolve(self, dispute, outcome, mediator, amount=None, summary='', notes=''):
        """
        Resolve an open dispute exactly once.

        Raises:
            AuthorizationError: `mediator` is not a mediator
            StateConflictError: the dispute is already resolved or cancelled
            EscrowValidationError: bad outcome or amount for this dispute
        """
        self._require_mediator(mediator)
        if outcome not in Outcome.values:
            raise EscrowValidationError(f"Unknown outcome '{outcome}'.")
        if outcome in (Outcome.RELEASE_PARTIAL, Outcome.REFUND_PARTIAL):
            amount = self._parse_amount(amount)

        results = []
        with transaction.atomic():
            dispute = Dispute.objects.select_for_update().get(pk=dispute.pk)
            if not dispute.is_open:
                raise StateConflictError(f"Dispute {dispute.dispute_number} is already {dispute.status}.")
            if dispute.milestone_id is None and outcome not in DEAL_LEVEL_OUTCOMES:
                raise EscrowValidationError("A deal-level dispute can only continue work or cancel the deal.")

            deal = Deal.objects.select_for_update().get(pk=dispute.deal_id)

            if outcome == Outcome.CANCEL_DEAL:
                results = self._cancel_deal(deal, dispute, mediator, summary)
            elif outcome == Outcome.CONTINUE_WORK:
                if dispute.milestone_id is not None:
                    self._restore_milestone(dispute.milestone)
            else:
                instruction = self.instruction_for(dispute, outcome, amount)
                results.append(self.engine.execute(dispute.milestone, instruction, mediator))

            dispute.status = Dispute.Status.RESOLVED
            dispute.outcome = outcome
            dispute.resolution_amount = amount
            dispute.resolution_summary = summary
            if notes:
                dispute.mediator_notes = f"{dispute.mediator_notes}\n{notes}".strip()
            dispute.resolved_by = mediator
            dispute.resolved_at = timezone.now()
            dispute.save()
            self._log_event(dispute, DisputeTimelineEvent.Action.RESOLVED, mediator,
                            f"Resolved: {Outcome(outcome).label}. {summary}".strip())

            deal.refresh_from_db()
            deal.settle_status()

        logger.info(f"Dispute {dispute.dispute_number} resolved with {outcome} by mediator {mediator.id}")
        for user in (deal.payer, deal.payee):
            notify(user, 'dispute_resolved', {
                'dispute': dispute.dispute_number,
                'outcome': Outcome(outcome).label,
                'summary': summary,
            })
            if deal.status == Deal.Status.COMPLETED:
                notify(user, 'deal_completed', {'deal': deal.title})
        return dispute, results

    def cancel(self, dispute, actor):
        """The filer withdraws a dispute that no mediator has picked up yet."""
        if actor.id != dispute.raised_by_id:
            raise AuthorizationError("Only the user who opened the dispute can cancel it.")

        with transaction.atomic():
            dispute = Dispute.objects.select_for_update().get(pk=dispute.pk)
            if dispute.status != Dispute.Status.PENDING:
                raise StateConflictError(f"Only pending disputes can be cancelled (this one is {dispute.status}).")

            if dispute.milestone_id is not None:
                self._restore_milestone(dispute.milestone)

            dispute.status = Dispute.Status.CANCELLED
            dispute.cancelled_at = timezone.now()
            dispute.save()
            self._log_event(dispute, DisputeTimelineEvent.Action.CANCELLED, actor, "Withdrawn by the filer")
            dispute.deal.settle_status()

        logger.info(f"Dispute {dispute.dispute_number} cancelled by {actor.id}")
        return dispute

    def escalate_overdue(self, now=None):
        """Escalate open disputes whose escalation deadline has passed."""
        now = now or timezone.now()
        overdue = Dispute.objects.filter(
            status__in=[Dispute.Status.PENDING, Dispute.Status.UNDER_REVIEW, Dispute.Status.MEDIATION],
            escalation_deadline__lte=now,
        )

        escalated = []
        for dispute in overdue:
            with transaction.atomic():
                updated = Dispute.objects.filter(
                    pk=dispute.pk, status=dispute.status,
                ).update(status=Dispute.Status.ESCALATED, updated_at=now)
                if not updated:
                    continue
                self._log_event(dispute, DisputeTimelineEvent.Action.ESCALATED, None,
                                f"Escalated after passing the {dispute.get_urgency_display().lower()} urgency deadline")
            escalated.append(dispute.id)
            logger.warning(f"Dispute {dispute.dispute_number} escalated (deadline {dispute.escalation_deadline})")
            self._notify_mediators('dispute_escalated', dispute)
        return escalated

    def _cancel_deal(self, deal, dispute, mediator, summary):
        results = []
        reason = f"Dispute {dispute.dispute_number}: deal cancelled"
        for milestone in deal.milestones.all():
            if milestone.is_closed:
                continue
            if milestone.state == Milestone.State.PENDING:
                milestone.transition_to(Milestone.State.CANCELLED)
                milestone.save()
                continue
            instruction = ReleaseInstruction(
                action=ReleaseInstruction.REFUND,
                final_state=Milestone.State.CANCELLED,
                reason=reason,
                dispute_id=dispute.id,
            )
            results.append(self.engine.refund(milestone, instruction, mediator))

        deal.refresh_from_db()
        deal.status = Deal.Status.CANCELLED
        deal.cancelled_at = timezone.now()
        deal.cancellation_reason = summary or reason
        deal.is_archived = True
        deal.save()

        siblings = Dispute.objects.select_for_update().filter(
            deal=deal, status__in=Dispute.OPEN_STATUSES,
        ).exclude(pk=dispute.pk)
        for sibling in siblings:
            sibling.status = Dispute.Status.CANCELLED
            sibling.cancelled_at = timezone.now()
            sibling.save(update_fields=['status', 'cancelled_at', 'updated_at'])
            self._log_event(sibling, DisputeTimelineEvent.Action.CANCELLED, mediator,
                            f"Closed because dispute {dispute.dispute_number} cancelled the deal.")
            logger.info(f"Dispute {sibling.dispute_number} closed with the cancellation of deal {deal.id}")

        for user in (deal.payer, deal.payee):
            notify(user, 'deal_cancelled', {'deal': deal.title, 'reason': deal.cancellation_reason})
        return results

    def _restore_milestone(self, milestone):
        milestone = Milestone.objects.select_for_update().get(pk=milestone.pk)
        if milestone.state != Milestone.State.DISPUTED:
            return milestone
        previous = milestone.state_before_dispute or Milestone.State.FUNDED
        milestone.transition_to(previous)
        milestone.dispute_flag = False
        if previous == Milestone.State.APPROVED:
            milestone.auto_release_at = self.engine.auto_release_time(milestone)
        milestone.save()
        return milestone

    def _require_mediator(self, user):
        if user is None or not user.is_mediator:
            raise AuthorizationError("Only a mediator can do this.")

    def _parse_amount(self, amount):
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise EscrowValidationError("A partial outcome requires a numeric amount.")
        if amount <= 0:
            raise EscrowValidationError("Amount must be greater than zero.")
        return amount

    def _log_event(self, dispute, action, actor, description=''):
        return DisputeTimelineEvent.objects.create(
            dispute=dispute, action=action, actor=actor, description=description,
        )

    def _notify_mediators(self, event_type, dispute):
        for mediator in CustomUser.objects.mediators():
            notify(mediator, event_type, {
                'dispute': dispute.dispute_number,
                'deal': dispute.deal.title,
                'urgency': dispute.get_urgency_display(),
            })
