import logging

from django.utils import timezone

from deals.models import OPEN_DISPUTE_STATUSES, Milestone
from .services import AUTO_RELEASE_STATES, AUTOMATIC, ReleaseEngine

logger = logging.getLogger(__name__)


def due_milestones(now=None):
    now = now or timezone.now()
    return Milestone.objects.filter(
        state__in=AUTO_RELEASE_STATES,
        auto_release_at__isnull=False,
        auto_release_at__lte=now,
        dispute_flag=False,
    ).exclude(
        deal__disputes__status__in=OPEN_DISPUTE_STATUSES,
    ).select_related('deal').order_by('auto_release_at', 'id')


def sweep_auto_releases(now=None, engine=None):
    """
    Release every milestone whose auto-release time has passed.

    Each milestone goes through the same guarded ReleaseEngine.release as a
    manual release, so a milestone disputed or released between the query and
    the call is skipped by the engine. One failure never stops the sweep.

    Returns {'released': [ids], 'skipped': [ids], 'failed': {id: message}}.
    """
    now = now or timezone.now()
    engine = engine or ReleaseEngine()
    report = {'released': [], 'skipped': [], 'failed': {}}

    for milestone in due_milestones(now):
        try:
            result = engine.release(milestone, AUTOMATIC, None, now=now)
        except Exception as e:
            logger.error(f"Auto-release of milestone {milestone.id} failed: {str(e)}")
            report['failed'][milestone.id] = str(e)
            continue

        if result.get('already_released'):
            report['skipped'].append(milestone.id)
        else:
            report['released'].append(milestone.id)

    logger.info(
        f"Auto-release sweep at {now.isoformat()}: {len(report['released'])} released, "
        f"{len(report['skipped'])} skipped, {len(report['failed'])} failed"
    )
    return report
