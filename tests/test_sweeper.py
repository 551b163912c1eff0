from datetime import timedelta

import pytest
from django.core.management import call_command
from django.utils import timezone

from deals.models import Milestone
from escrow.models import LedgerEntry
from escrow.sweeper import due_milestones, sweep_auto_releases


pytestmark = pytest.mark.django_db


def schedule(milestone, when):
    Milestone.objects.filter(pk=milestone.pk).update(auto_release_at=when)
    milestone.refresh_from_db()
    return milestone


def test_due_milestone_is_released_automatically(funded_milestone, engine, gateway):
    now = timezone.now()
    schedule(funded_milestone, now - timedelta(minutes=5))

    report = sweep_auto_releases(now=now, engine=engine)

    funded_milestone.refresh_from_db()
    entry = LedgerEntry.objects.get(milestone=funded_milestone)
    assert report == {'released': [funded_milestone.id], 'skipped': [], 'failed': {}}
    assert funded_milestone.state == Milestone.State.COMPLETED
    assert entry.release_type == LedgerEntry.ReleaseType.AUTOMATIC
    assert len(gateway.calls_of('transfer')) == 1


def test_future_milestones_are_left_alone(funded_milestone, engine):
    now = timezone.now()
    schedule(funded_milestone, now + timedelta(days=1))

    assert list(due_milestones(now)) == []
    assert sweep_auto_releases(now=now, engine=engine)['released'] == []


def test_disputed_milestones_are_never_swept(funded_milestone, engine, disputes, payer, gateway, deal):
    now = timezone.now()
    schedule(funded_milestone, now - timedelta(days=1))
    disputes.open(deal, payer, 'quality_issue', 'Broken', 'Does not work', milestone=funded_milestone)

    report = sweep_auto_releases(now=now + timedelta(days=1), engine=engine)

    assert report['released'] == []
    assert gateway.calls_of('transfer') == []
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED


def test_deal_level_dispute_holds_every_milestone(funded_milestone, engine, disputes, payee, gateway, deal):
    now = timezone.now()
    schedule(funded_milestone, now - timedelta(days=1))
    dispute = disputes.open(deal, payee, 'payment_issue', 'Stalled', 'Payer stopped responding')

    assert list(due_milestones(now)) == []
    report = sweep_auto_releases(now=now, engine=engine)

    assert report['released'] == []
    assert gateway.calls_of('transfer') == []
    assert LedgerEntry.objects.get(milestone=funded_milestone).status == LedgerEntry.Status.ESCROWED

    disputes.cancel(dispute, payee)
    assert sweep_auto_releases(now=now, engine=engine)['released'] == [funded_milestone.id]


def test_one_failure_does_not_stop_the_sweep(milestones, funding, payment_method, payer, payout_method, engine, gateway):
    now = timezone.now()
    for milestone in milestones:
        funding.fund(milestone, payment_method, payer)
        schedule(milestone, now - timedelta(hours=1))

    gateway.failing.add('transfer')
    report = sweep_auto_releases(now=now, engine=engine)

    assert report['released'] == []
    assert set(report['failed']) == {m.id for m in milestones}
    assert LedgerEntry.objects.filter(status=LedgerEntry.Status.ESCROWED).count() == 2

    gateway.failing.clear()
    report = sweep_auto_releases(now=now, engine=engine)
    assert sorted(report['released']) == sorted(m.id for m in milestones)


def test_release_command_runs_the_sweep(funded_milestone, gateway):
    schedule(funded_milestone, timezone.now() - timedelta(minutes=1))

    call_command('release_due_milestones')

    funded_milestone.refresh_from_db()
    assert funded_milestone.state == Milestone.State.COMPLETED
