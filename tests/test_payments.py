import pytest
from django.urls import reverse

from escrow.services import MANUAL
from payments.models import PaymentMethod, PayoutMethod
from payments.providers import get_payment_provider
from payments.providers.stripe import StripeProvider, to_minor_units


pytestmark = pytest.mark.django_db


def test_saving_a_payment_method_hides_the_token(api_client, payer):
    api_client.force_authenticate(user=payer)
    response = api_client.post(reverse('payment-methods'), {
        'provider': 'stripe', 'provider_token': 'pm_card_mastercard', 'display_info': 'Mastercard 4444', 'is_default': True,
    }, format='json')

    assert response.status_code == 201, response.data
    assert 'provider_token' not in response.data
    assert PaymentMethod.objects.get(user=payer).is_default is True

    duplicate = api_client.post(reverse('payment-methods'), {
        'provider': 'stripe', 'provider_token': 'pm_card_mastercard',
    }, format='json')
    assert duplicate.status_code == 400


def test_payment_methods_are_private(api_client, payment_method, outsider):
    api_client.force_authenticate(user=outsider)
    assert api_client.get(reverse('payment-methods')).data == []
    response = api_client.delete(reverse('payment-method-detail', args=[payment_method.id]))
    assert response.status_code == 404


def test_one_default_payout_method(api_client, payee, payout_method):
    api_client.force_authenticate(user=payee)
    response = api_client.post(reverse('payout-methods'), {
        'provider': 'stripe', 'account_reference': 'acct_second', 'is_default': True,
    }, format='json')
    assert response.status_code == 201, response.data

    payout_method.refresh_from_db()
    assert payout_method.is_default is False

    response = api_client.patch(
        reverse('payout-method-detail', args=[payout_method.id]), {'is_default': True}, format='json',
    )
    assert response.status_code == 200
    assert list(PayoutMethod.objects.filter(user=payee, is_default=True).values_list('id', flat=True)) == [payout_method.id]


def test_removing_a_payout_method_deactivates_it(api_client, payee, payout_method):
    api_client.force_authenticate(user=payee)
    response = api_client.delete(reverse('payout-method-detail', args=[payout_method.id]))

    assert response.status_code == 204
    payout_method.refresh_from_db()
    assert payout_method.is_active is False


def test_records_follow_the_money(api_client, funded_milestone, engine, payer, payee):
    engine.release(funded_milestone, MANUAL, payer)
    api_client.force_authenticate(user=payee)
    response = api_client.get(reverse('payout-records'), {'record_type': 'release'})

    assert response.status_code == 200
    assert [(r['record_type'], r['amount']) for r in response.data['results']] == [('release', '700.00')]


def test_provider_factory(settings):
    settings.STRIPE_SECRET_KEY = 'sk_test_dummy'
    assert isinstance(get_payment_provider('stripe'), StripeProvider)
    assert isinstance(get_payment_provider(), StripeProvider)
    with pytest.raises(ValueError):
        get_payment_provider('paypal')


def test_minor_units():
    assert to_minor_units('12.34', 'USD') == 1234
    assert to_minor_units('500', 'JPY') == 500
