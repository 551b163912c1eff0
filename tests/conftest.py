import itertools
import time
from decimal import Decimal

import pytest
from django.conf import settings
from django.contrib.auth.models import Group
from rest_framework.test import APIClient

from accounts.models import CustomUser
from deals.models import Deal
from deals.services import ReviewService
from disputes.services import DisputeEngine
from escrow.services import FundingService, ReleaseEngine, ReleaseRules
from payments.models import PaymentMethod, PayoutMethod
from payments.providers.base import BasePaymentProvider


class FakeGateway(BasePaymentProvider):
    """
    In-memory gateway that records every call.

    Add 'capture', 'transfer' or 'refund' to `failing` to make that kind of
    call report an error. Set `delay` to hold every call open for that many
    seconds.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = []
        self.failing = set()
        self.delay = 0
        self._ids = itertools.count(1)

    def _respond(self, kind, **details):
        if self.delay:
            time.sleep(self.delay)
        self.calls.append((kind, details))
        if kind in self.failing:
            return {'status': 'error', 'message': f'{kind} declined'}
        return {'status': 'success', 'transaction_id': f'{kind}_{next(self._ids)}', 'provider': 'stripe'}

    def capture(self, instrument, amount, currency, metadata=None):
        return self._respond('capture', amount=amount, currency=currency, token=instrument.provider_token)

    def transfer(self, account, amount, currency, metadata=None):
        return self._respond('transfer', amount=amount, currency=currency, account=account.account_reference)

    def refund(self, provider_transaction_id, amount, reason="Escrow refund"):
        return self._respond('refund', amount=amount, transaction_id=provider_transaction_id)

    def calls_of(self, kind):
        return [details for name, details in self.calls if name == kind]


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr('payments.services.get_payment_provider', lambda name, **kwargs: fake)
    return fake


@pytest.fixture
def payer(db):
    return CustomUser.objects.create_user(
        email='payer@example.com', password='s3cret-pass', user_type='payer', first_name='Pat', last_name='Payer',
    )


@pytest.fixture
def payee(db):
    return CustomUser.objects.create_user(
        email='payee@example.com', password='s3cret-pass', user_type='payee', first_name='Lee', last_name='Payee',
    )


@pytest.fixture
def outsider(db):
    return CustomUser.objects.create_user(email='outsider@example.com', password='s3cret-pass', user_type='payer')


@pytest.fixture
def mediator(db):
    user = CustomUser.objects.create_user(email='mediator@example.com', password='s3cret-pass', user_type='payee')
    group, _ = Group.objects.get_or_create(name=settings.MEDIATOR_GROUP_NAME)
    user.groups.add(group)
    return user


@pytest.fixture
def payment_method(payer):
    return PaymentMethod.objects.create(
        user=payer, provider='stripe', provider_token='pm_card_visa', display_info='Visa ending in 4242',
    )


@pytest.fixture
def payout_method(payee):
    return PayoutMethod.objects.create(user=payee, provider='stripe', account_reference='acct_payee', is_default=True)


@pytest.fixture
def deal(payer, payee):
    return Deal.objects.create(
        payer=payer, payee=payee, title='Launch campaign', total_amount=Decimal('1000.00'), currency='USD',
    )


@pytest.fixture
def rules():
    return ReleaseRules()


@pytest.fixture
def engine(gateway, rules):
    return ReleaseEngine(rules=rules)


@pytest.fixture
def review(engine):
    return ReviewService(engine=engine)


@pytest.fixture
def funding(gateway):
    return FundingService(fee_rate=Decimal('0'))


@pytest.fixture
def disputes(engine):
    return DisputeEngine(engine=engine)


@pytest.fixture
def milestones(deal, payer, review):
    """The front-loaded two-milestone structure: $700 then $300."""
    return review.create_structure(deal, payer, 'front_loaded', count=2)


@pytest.fixture
def funded_milestone(milestones, funding, payment_method, payer, payout_method):
    milestone = milestones[0]
    funding.fund(milestone, payment_method, payer)
    milestone.refresh_from_db()
    return milestone


@pytest.fixture
def api_client():
    return APIClient()
