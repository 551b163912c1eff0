from decimal import Decimal

import pytest

from deals.models import Deal, Milestone
from escrow.exceptions import AlreadyFundedError, AuthorizationError, ExternalGatewayError, StateConflictError
from escrow.models import LedgerEntry
from escrow.services import FundingService
from payments.models import PaymentMethod, PayoutRecord


pytestmark = pytest.mark.django_db


def test_funding_escrows_the_milestone(milestones, funding, payment_method, payer, gateway, deal):
    milestone = milestones[0]

    result = funding.fund(milestone, payment_method, payer)

    milestone.refresh_from_db()
    deal.refresh_from_db()
    entry = LedgerEntry.objects.get(milestone=milestone)
    assert result['status'] == 'success'
    assert milestone.state == Milestone.State.FUNDED
    assert milestone.funded_at is not None
    assert milestone.funding_reference == result['transaction_reference']
    assert entry.status == LedgerEntry.Status.ESCROWED
    assert entry.amount == Decimal('700.00')
    assert deal.status == Deal.Status.ACTIVE
    assert gateway.calls_of('capture')[0]['amount'] == Decimal('700.00')

    record = PayoutRecord.objects.get(milestone=milestone)
    assert record.record_type == 'funding'
    assert record.amount == Decimal('700.00')


def test_funding_charges_bonus_and_platform_fee(milestones, payment_method, payer, gateway):
    milestone = milestones[1]
    milestone.bonus_amount = Decimal('50.00')
    milestone.save()

    result = FundingService(fee_rate=Decimal('0.05')).fund(milestone, payment_method, payer)

    entry = LedgerEntry.objects.get(milestone=milestone)
    assert entry.amount == Decimal('350.00')
    assert result['fee_amount'] == '17.50'
    assert gateway.calls_of('capture')[0]['amount'] == Decimal('367.50')
    assert PayoutRecord.objects.get(milestone=milestone).amount == Decimal('367.50')


def test_only_the_payer_can_fund(milestones, funding, payee, payment_method):
    with pytest.raises(AuthorizationError):
        funding.fund(milestones[0], payment_method, payee)
    assert not LedgerEntry.objects.exists()


def test_payment_method_must_belong_to_the_payer(milestones, funding, payer, outsider):
    foreign = PaymentMethod.objects.create(user=outsider, provider='stripe', provider_token='pm_other')
    with pytest.raises(AuthorizationError):
        funding.fund(milestones[0], foreign, payer)


def test_funding_twice_fails_without_a_second_entry(funded_milestone, funding, payment_method, payer, gateway):
    with pytest.raises(AlreadyFundedError):
        funding.fund(funded_milestone, payment_method, payer)

    assert LedgerEntry.objects.filter(milestone=funded_milestone).count() == 1
    assert len(gateway.calls_of('capture')) == 1


def test_gateway_failure_persists_nothing(milestones, funding, payment_method, payer, gateway, deal):
    gateway.failing.add('capture')

    with pytest.raises(ExternalGatewayError):
        funding.fund(milestones[0], payment_method, payer)

    milestones[0].refresh_from_db()
    deal.refresh_from_db()
    assert milestones[0].state == Milestone.State.PENDING
    assert milestones[0].funding_reference == ''
    assert not LedgerEntry.objects.exists()
    assert not PayoutRecord.objects.exists()
    assert deal.status == Deal.Status.NEGOTIATING


def test_a_milestone_claimed_by_another_request_is_not_charged(milestones, funding, payment_method, payer, gateway):
    Milestone.objects.filter(pk=milestones[0].pk).update(funding_reference='claim:in-flight')

    with pytest.raises(AlreadyFundedError):
        funding.fund(milestones[0], payment_method, payer)

    assert gateway.calls_of('capture') == []
    assert not LedgerEntry.objects.exists()


def test_cannot_fund_a_cancelled_deal(milestones, funding, payment_method, payer, deal):
    Deal.objects.filter(pk=deal.pk).update(status=Deal.Status.CANCELLED)
    with pytest.raises(StateConflictError):
        funding.fund(milestones[0], payment_method, payer)
