from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.management import call_command
from django.utils import timezone

from deals.models import Deal, Milestone
from disputes.models import Dispute, DisputeTimelineEvent
from escrow.exceptions import AuthorizationError, EscrowValidationError, StateConflictError
from escrow.models import LedgerEntry
from payments.models import PayoutRecord


pytestmark = pytest.mark.django_db


@pytest.fixture
def both_funded(milestones, funding, payment_method, payer, payout_method):
    for milestone in milestones:
        funding.fund(milestone, payment_method, payer)
    return [Milestone.objects.get(pk=m.pk) for m in milestones]


@pytest.fixture
def milestone_dispute(funded_milestone, disputes, payee):
    return disputes.open(
        funded_milestone.deal, payee, 'payment_issue', 'Payment held back', 'Work was delivered on time',
        milestone=funded_milestone,
    )


def entries_for(milestone):
    return {entry.status: entry for entry in LedgerEntry.objects.filter(milestone=milestone)}


def test_opening_a_dispute_freezes_the_milestone(milestone_dispute, funded_milestone, deal):
    funded_milestone.refresh_from_db()
    deal.refresh_from_db()

    assert milestone_dispute.status == Dispute.Status.PENDING
    assert milestone_dispute.dispute_number.startswith('D-')
    assert funded_milestone.state == Milestone.State.DISPUTED
    assert funded_milestone.dispute_flag is True
    assert funded_milestone.state_before_dispute == Milestone.State.FUNDED
    assert deal.status == Deal.Status.DISPUTED
    assert milestone_dispute.timeline.get().action == DisputeTimelineEvent.Action.DISPUTE_CREATED
    assert milestone_dispute.days_until_escalation in (6, 7)


def test_open_guards(funded_milestone, milestones, disputes, payee, outsider, deal, payer):
    with pytest.raises(AuthorizationError):
        disputes.open(deal, outsider, 'other', 'Nope', 'Not my deal', milestone=funded_milestone)
    with pytest.raises(StateConflictError):
        disputes.open(deal, payee, 'other', 'Unfunded', 'Nothing escrowed', milestone=milestones[1])
    with pytest.raises(EscrowValidationError):
        disputes.open(deal, payee, 'bribery', 'Bad category', 'Unknown', milestone=funded_milestone)

    other_deal = Deal.objects.create(payer=payer, payee=payee, title='Other', total_amount=Decimal('50.00'))
    with pytest.raises(EscrowValidationError):
        disputes.open(other_deal, payee, 'other', 'Wrong deal', 'Mismatch', milestone=funded_milestone)

    disputes.open(deal, payee, 'other', 'First', 'First dispute', milestone=funded_milestone)
    with pytest.raises(StateConflictError):
        disputes.open(deal, payer, 'other', 'Second', 'Second dispute', milestone=funded_milestone)


def test_release_full(milestone_dispute, funded_milestone, disputes, mediator, gateway, deal):
    dispute, results = disputes.resolve(milestone_dispute, 'release_full', mediator, summary='Work accepted')

    funded_milestone.refresh_from_db()
    deal.refresh_from_db()
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert dispute.status == Dispute.Status.RESOLVED
    assert dispute.outcome == 'release_full'
    assert dispute.resolved_by == mediator
    assert results[0]['released_amount'] == '700.00'
    assert entry.status == LedgerEntry.Status.COMPLETED
    assert entry.release_type == LedgerEntry.ReleaseType.DISPUTE_RESOLUTION
    assert funded_milestone.state == Milestone.State.COMPLETED
    assert funded_milestone.dispute_flag is False
    assert deal.status == Deal.Status.ACTIVE
    assert len(gateway.calls_of('transfer')) == 1


def test_release_partial_splits_the_escrow(both_funded, disputes, payer, mediator, gateway, deal):
    second = both_funded[1]
    dispute = disputes.open(deal, payer, 'quality_issue', 'Half done', 'Only half delivered', milestone=second)

    disputes.resolve(dispute, 'release_partial', mediator, amount='150')

    second.refresh_from_db()
    entries = entries_for(second)
    assert set(entries) == {LedgerEntry.Status.COMPLETED, LedgerEntry.Status.REFUNDED}
    assert entries[LedgerEntry.Status.COMPLETED].amount == Decimal('150.00')
    assert entries[LedgerEntry.Status.REFUNDED].amount == Decimal('150.00')
    assert entries[LedgerEntry.Status.COMPLETED].split_from == entries[LedgerEntry.Status.REFUNDED]
    assert second.state == Milestone.State.COMPLETED
    assert gateway.calls_of('transfer')[0]['amount'] == Decimal('150.00')
    assert gateway.calls_of('refund')[0]['amount'] == Decimal('150.00')
    assert PayoutRecord.objects.filter(milestone=second, record_type='refund').count() == 1


def test_refund_full(milestone_dispute, funded_milestone, disputes, mediator, gateway):
    disputes.resolve(milestone_dispute, 'refund_full', mediator)

    funded_milestone.refresh_from_db()
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert funded_milestone.state == Milestone.State.REFUNDED
    assert entry.status == LedgerEntry.Status.REFUNDED
    assert entry.refund_reference
    assert gateway.calls_of('transfer') == []
    assert gateway.calls_of('refund')[0]['transaction_id'] == entry.transaction_reference


def test_refund_partial(milestone_dispute, funded_milestone, disputes, mediator):
    disputes.resolve(milestone_dispute, 'refund_partial', mediator, amount=Decimal('200'))

    funded_milestone.refresh_from_db()
    entries = entries_for(funded_milestone)
    assert entries[LedgerEntry.Status.REFUNDED].amount == Decimal('200.00')
    assert entries[LedgerEntry.Status.COMPLETED].amount == Decimal('500.00')
    assert funded_milestone.state == Milestone.State.COMPLETED


def test_partial_amount_must_fit_the_escrow(milestone_dispute, funded_milestone, disputes, mediator, gateway):
    with pytest.raises(EscrowValidationError):
        disputes.resolve(milestone_dispute, 'release_partial', mediator)
    with pytest.raises(EscrowValidationError):
        disputes.resolve(milestone_dispute, 'release_partial', mediator, amount='900')

    milestone_dispute.refresh_from_db()
    assert milestone_dispute.is_open
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED
    assert gateway.calls_of('transfer') == []


def test_continue_work_restores_the_milestone(funded_milestone, disputes, review, payee, payer, mediator, deal):
    review.submit(funded_milestone, payee, [{'title': 'Draft'}])
    dispute = disputes.open(deal, payer, 'scope_disagreement', 'Scope', 'Out of scope', milestone=funded_milestone)

    disputes.resolve(dispute, 'continue_work', mediator)

    funded_milestone.refresh_from_db()
    deal.refresh_from_db()
    assert funded_milestone.state == Milestone.State.SUBMITTED
    assert funded_milestone.dispute_flag is False
    assert deal.status == Deal.Status.ACTIVE
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED


def test_cancel_deal_refunds_escrow_and_cancels_the_rest(funded_milestone, milestones, disputes, payer, mediator, deal):
    dispute = disputes.open(deal, payer, 'communication_breakdown', 'Stop', 'Payee went silent')

    disputes.resolve(dispute, 'cancel_deal', mediator, summary='Parties agreed to stop')

    deal.refresh_from_db()
    states = list(deal.milestones.values_list('state', flat=True))
    assert states == [Milestone.State.CANCELLED, Milestone.State.CANCELLED]
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.REFUNDED
    assert deal.status == Deal.Status.CANCELLED
    assert deal.is_archived is True
    assert deal.cancellation_reason == 'Parties agreed to stop'


def test_cancel_deal_closes_the_other_open_disputes(milestone_dispute, funded_milestone, disputes, payer, mediator, deal):
    dispute = disputes.open(deal, payer, 'communication_breakdown', 'Stop', 'Payee went silent')

    disputes.resolve(dispute, 'cancel_deal', mediator, summary='Parties agreed to stop')

    milestone_dispute.refresh_from_db()
    funded_milestone.refresh_from_db()
    assert milestone_dispute.status == Dispute.Status.CANCELLED
    assert milestone_dispute.cancelled_at is not None
    assert milestone_dispute.timeline.filter(action=DisputeTimelineEvent.Action.CANCELLED).exists()
    assert funded_milestone.state == Milestone.State.CANCELLED
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.REFUNDED
    assert not Dispute.objects.filter(deal=deal, status__in=Dispute.OPEN_STATUSES).exists()


def test_deal_level_dispute_rejects_money_outcomes(funded_milestone, disputes, payer, mediator, deal):
    dispute = disputes.open(deal, payer, 'other', 'General', 'General unhappiness')
    with pytest.raises(EscrowValidationError):
        disputes.resolve(dispute, 'release_full', mediator)


def test_dispute_resolves_once(milestone_dispute, disputes, mediator, gateway):
    disputes.resolve(milestone_dispute, 'release_full', mediator)
    with pytest.raises(StateConflictError):
        disputes.resolve(milestone_dispute, 'refund_full', mediator)
    assert len(gateway.calls_of('transfer')) == 1
    assert gateway.calls_of('refund') == []


def test_only_mediators_resolve(milestone_dispute, disputes, payer):
    with pytest.raises(AuthorizationError):
        disputes.resolve(milestone_dispute, 'release_full', payer)


def test_filer_cancels_a_pending_dispute(milestone_dispute, funded_milestone, disputes, payee, payer, deal):
    with pytest.raises(AuthorizationError):
        disputes.cancel(milestone_dispute, payer)

    dispute = disputes.cancel(milestone_dispute, payee)

    funded_milestone.refresh_from_db()
    deal.refresh_from_db()
    assert dispute.status == Dispute.Status.CANCELLED
    assert funded_milestone.state == Milestone.State.FUNDED
    assert funded_milestone.dispute_flag is False
    assert deal.status == Deal.Status.ACTIVE


def test_dispute_under_review_cannot_be_withdrawn(milestone_dispute, disputes, payee, mediator):
    disputes.update_status(milestone_dispute, mediator, Dispute.Status.UNDER_REVIEW)
    with pytest.raises(StateConflictError):
        disputes.cancel(milestone_dispute, payee)


def test_mediator_status_transitions(milestone_dispute, disputes, mediator, payer):
    with pytest.raises(AuthorizationError):
        disputes.update_status(milestone_dispute, payer, Dispute.Status.UNDER_REVIEW)

    dispute = disputes.update_status(milestone_dispute, mediator, Dispute.Status.UNDER_REVIEW, notes='Reviewing')
    assert dispute.mediator_notes == 'Reviewing'
    with pytest.raises(StateConflictError):
        disputes.update_status(dispute, mediator, Dispute.Status.PENDING)
    assert disputes.update_status(dispute, mediator, Dispute.Status.MEDIATION).status == Dispute.Status.MEDIATION


def test_messages_record_the_sender_role(milestone_dispute, disputes, mediator, outsider):
    message = disputes.add_message(milestone_dispute, mediator, 'Please share the contract')
    assert message.sender_role == 'mediator'
    with pytest.raises(AuthorizationError):
        disputes.add_message(milestone_dispute, outsider, 'Hello')
    with pytest.raises(EscrowValidationError):
        disputes.add_message(milestone_dispute, mediator, '  ')


def test_overdue_disputes_escalate(funded_milestone, disputes, payee, deal):
    dispute = disputes.open(deal, payee, 'deadline_missed', 'Late', 'Late review', urgency='high',
                            milestone=funded_milestone)

    assert disputes.escalate_overdue(now=timezone.now() + timedelta(days=2)) == []
    assert disputes.escalate_overdue(now=timezone.now() + timedelta(days=4)) == [dispute.id]
    dispute.refresh_from_db()
    assert dispute.status == Dispute.Status.ESCALATED
    assert disputes.escalate_overdue(now=timezone.now() + timedelta(days=5)) == []


def test_failed_refunds_are_retried(milestone_dispute, funded_milestone, disputes, mediator, gateway):
    gateway.failing.add('refund')
    disputes.resolve(milestone_dispute, 'refund_full', mediator)
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert entry.status == LedgerEntry.Status.REFUND_PENDING

    gateway.failing.clear()
    call_command('process_pending_refunds')

    entry.refresh_from_db()
    assert entry.status == LedgerEntry.Status.REFUNDED
