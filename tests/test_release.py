from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from deals.models import Deal, Milestone
from escrow.exceptions import (
    AlreadyReleasedError,
    AuthorizationError,
    ExternalGatewayError,
    NotFundedError,
    ReleaseNotEligibleError,
    StateConflictError,
)
from escrow.models import LedgerEntry
from escrow.services import AUTOMATIC, DISPUTE_RESOLUTION, MANUAL, ReleaseInstruction, ReleaseRules
from payments.models import PayoutRecord


pytestmark = pytest.mark.django_db


def test_payer_releases_a_funded_milestone(funded_milestone, engine, payer, gateway, deal):
    result = engine.release(funded_milestone, MANUAL, payer)

    funded_milestone.refresh_from_db()
    deal.refresh_from_db()
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert result['status'] == 'success'
    assert result['already_released'] is False
    assert result['released_amount'] == '700.00'
    assert entry.status == LedgerEntry.Status.COMPLETED
    assert entry.release_type == MANUAL
    assert entry.released_at is not None
    assert funded_milestone.state == Milestone.State.COMPLETED
    assert deal.status == Deal.Status.ACTIVE
    assert gateway.calls_of('transfer') == [{'amount': Decimal('700.00'), 'currency': 'USD', 'account': 'acct_payee'}]
    assert PayoutRecord.objects.filter(milestone=funded_milestone, record_type='release').count() == 1


def test_double_release_moves_money_once(funded_milestone, engine, payer, gateway):
    engine.release(funded_milestone, MANUAL, payer)
    second = engine.release(funded_milestone, MANUAL, payer)

    assert second['status'] == 'success'
    assert second['already_released'] is True
    assert len(gateway.calls_of('transfer')) == 1
    assert PayoutRecord.objects.filter(record_type='release').count() == 1
    assert LedgerEntry.objects.filter(milestone=funded_milestone).count() == 1


def test_payee_cannot_release_before_the_auto_release_date(funded_milestone, engine, payee):
    funded_milestone.auto_release_at = timezone.now() + timedelta(days=3)
    funded_milestone.save()

    with pytest.raises(ReleaseNotEligibleError):
        engine.release(funded_milestone, MANUAL, payee)
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED


def test_payee_can_release_after_the_auto_release_date(funded_milestone, engine, payee):
    funded_milestone.auto_release_at = timezone.now() - timedelta(hours=1)
    funded_milestone.save()

    result = engine.release(funded_milestone, MANUAL, payee)
    assert result['released_amount'] == '700.00'


def test_strangers_cannot_release(funded_milestone, engine, outsider):
    with pytest.raises(AuthorizationError):
        engine.release(funded_milestone, MANUAL, outsider)


def test_disputed_milestone_is_not_released_manually(funded_milestone, engine, disputes, payer, payee, gateway):
    disputes.open(funded_milestone.deal, payee, 'quality_issue', 'Late work', 'Nothing delivered', milestone=funded_milestone)

    with pytest.raises(ReleaseNotEligibleError):
        engine.release(funded_milestone, MANUAL, payer)
    assert gateway.calls_of('transfer') == []
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED


def test_dispute_resolution_release_needs_an_instruction(funded_milestone, engine, mediator):
    with pytest.raises(ReleaseNotEligibleError):
        engine.release(funded_milestone, DISPUTE_RESOLUTION, mediator)
    with pytest.raises(ReleaseNotEligibleError):
        engine.release(
            funded_milestone, DISPUTE_RESOLUTION, mediator,
            instruction=ReleaseInstruction(action=ReleaseInstruction.RELEASE),
        )


def test_unfunded_milestone_cannot_be_released(milestones, engine, payer):
    with pytest.raises(NotFundedError):
        engine.release(milestones[1], MANUAL, payer)


def test_transfer_failure_keeps_funds_escrowed(funded_milestone, engine, payer, gateway):
    gateway.failing.add('transfer')

    with pytest.raises(ExternalGatewayError):
        engine.release(funded_milestone, MANUAL, payer)

    funded_milestone.refresh_from_db()
    assert funded_milestone.state == Milestone.State.FUNDED
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert entry.status == LedgerEntry.Status.ESCROWED
    assert entry.claim_token == ''
    assert not PayoutRecord.objects.filter(record_type='release').exists()


def test_entry_claimed_by_another_request_is_not_transferred(funded_milestone, engine, payer, gateway):
    LedgerEntry.objects.filter(milestone=funded_milestone).update(claim_token='in-flight')

    with pytest.raises(StateConflictError):
        engine.release(funded_milestone, MANUAL, payer)

    funded_milestone.refresh_from_db()
    assert gateway.calls_of('transfer') == []
    assert funded_milestone.state == Milestone.State.FUNDED
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED


def test_automatic_release_waits_for_deal_level_disputes(funded_milestone, engine, disputes, payee, deal):
    now = timezone.now()
    Milestone.objects.filter(pk=funded_milestone.pk).update(auto_release_at=now - timedelta(days=1))
    funded_milestone.refresh_from_db()
    disputes.open(deal, payee, 'payment_issue', 'Stalled', 'Payer stopped responding')
    funded_milestone.refresh_from_db()

    decision = engine.check_eligibility(funded_milestone, AUTOMATIC, now=now)

    assert not decision
    assert decision.reason == "Deal has an open dispute."
    with pytest.raises(ReleaseNotEligibleError):
        engine.release(funded_milestone, AUTOMATIC, None, now=now)


def test_release_without_a_payout_method_fails(milestones, funding, engine, payment_method, payer, gateway):
    funding.fund(milestones[0], payment_method, payer)

    with pytest.raises(ExternalGatewayError):
        engine.release(milestones[0], MANUAL, payer)
    assert gateway.calls_of('transfer') == []


def test_refunded_milestone_reports_already_released(funded_milestone, engine, disputes, payee, payer, mediator):
    dispute = disputes.open(funded_milestone.deal, payee, 'payment_issue', 'Refund', 'Cancel it', milestone=funded_milestone)
    disputes.resolve(dispute, 'refund_full', mediator)

    with pytest.raises(AlreadyReleasedError):
        engine.release(funded_milestone, MANUAL, payer)


def test_deal_completes_when_every_milestone_is_released(milestones, funding, engine, payment_method, payer, payout_method, deal):
    for milestone in milestones:
        funding.fund(milestone, payment_method, payer)
        engine.release(milestone, MANUAL, payer)

    deal.refresh_from_db()
    assert deal.status == Deal.Status.COMPLETED
    assert deal.is_archived is True
    assert deal.completed_at is not None


def test_automatic_eligibility_follows_the_auto_release_date(funded_milestone, engine):
    now = timezone.now()
    assert not engine.check_eligibility(funded_milestone, AUTOMATIC, now=now)

    funded_milestone.auto_release_at = now + timedelta(days=1)
    decision = engine.check_eligibility(funded_milestone, AUTOMATIC, now=now)
    assert not decision
    assert decision.reason == "Auto-release date not reached."

    assert engine.check_eligibility(funded_milestone, AUTOMATIC, now=now + timedelta(days=2))

    funded_milestone.dispute_flag = True
    assert not engine.check_eligibility(funded_milestone, AUTOMATIC, now=now + timedelta(days=2))


def test_grace_period_rules(deal):
    rules = ReleaseRules()
    assert rules.grace_period_for(deal) == timedelta(days=7)

    deal.total_amount = Decimal('6000.00')
    assert rules.grace_period_for(deal) == timedelta(days=14)

    deal.auto_release_days = 3
    assert rules.grace_period_for(deal) == timedelta(days=3)
