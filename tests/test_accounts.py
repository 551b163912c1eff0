import pytest
from django.conf import settings
from django.contrib.auth.models import Group
from django.core.management import CommandError, call_command
from django.urls import reverse
from rest_framework_simplejwt.tokens import AccessToken


pytestmark = pytest.mark.django_db


def test_token_carries_the_user_type(api_client, payer):
    response = api_client.post(reverse('token-obtain-pair'), {
        'email': 'payer@example.com', 'password': 's3cret-pass',
    }, format='json')

    assert response.status_code == 200
    token = AccessToken(response.data['access'])
    assert token['user_type'] == 'payer'
    assert token['email'] == 'payer@example.com'
    assert token['is_mediator'] is False


def test_deactivated_accounts_get_no_token(api_client, payer):
    payer.is_active = False
    payer.save()

    response = api_client.post(reverse('token-obtain-pair'), {
        'email': 'payer@example.com', 'password': 's3cret-pass',
    }, format='json')
    assert response.status_code == 401


def test_profile_update_keeps_identity_fields(api_client, payee):
    api_client.force_authenticate(user=payee)
    response = api_client.patch(reverse('profile-retrieve-update'), {
        'phone_number': '+15550100', 'user_type': 'payer', 'country': 'KE',
    }, format='json')

    assert response.status_code == 200
    payee.refresh_from_db()
    assert payee.phone_number == '+15550100'
    assert payee.country == 'KE'
    assert payee.user_type == 'payee'
    assert response.data['is_mediator'] is False
    assert response.data['can_receive_payouts'] is False
    assert response.data['open_deals'] == 0


def test_mediator_group_command(payee):
    call_command('create_mediator_group', email=payee.email)

    group = Group.objects.get(name=settings.MEDIATOR_GROUP_NAME)
    assert group.permissions.filter(codename='change_dispute').exists()
    assert payee.is_mediator


def test_mediator_group_command_removes_members(mediator):
    call_command('create_mediator_group', email=mediator.email, remove=True)
    assert not mediator.is_mediator


def test_mediator_group_command_rejects_unknown_users(db):
    with pytest.raises(CommandError):
        call_command('create_mediator_group', email='ghost@example.com')


def test_profile_reports_payout_readiness(api_client, payee, payout_method, deal):
    api_client.force_authenticate(user=payee)
    response = api_client.get(reverse('profile-retrieve-update'))

    assert response.data['can_receive_payouts'] is True
    assert response.data['open_deals'] == 1
