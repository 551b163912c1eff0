import logging

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

logger = logging.getLogger(__name__)

SUBJECTS = {
    'milestone_structure_created': "Milestone payments set up for your deal",
    'milestone_funded': "A milestone has been funded",
    'milestone_submitted': "Deliverables submitted for review",
    'milestone_approved': "Your milestone was approved",
    'milestone_revision_required': "Revisions requested on your milestone",
    'milestone_released': "Escrowed funds released",
    'milestone_refunded': "Escrowed funds refunded",
    'deal_completed': "Your deal is complete",
    'deal_cancelled': "Your deal was cancelled",
    'dispute_opened': "A dispute was opened on your deal",
    'dispute_message': "New message on a dispute",
    'dispute_resolved': "A dispute has been resolved",
    'dispute_escalated': "A dispute has been escalated",
}


def notify(user, event_type, payload=None):
    """
    Fire-and-forget notification to a deal participant.

    The email is queued with transaction.on_commit, so an operation that rolls
    back never announces itself; outside a transaction it goes out at once.
    Delivery failures are logged and swallowed; they must never fail or roll
    back the business operation that triggered them.
    """
    if user is None or not getattr(user, 'email', None):
        return False

    payload = payload or {}
    subject = SUBJECTS.get(event_type, event_type.replace('_', ' ').capitalize())
    details = "\n".join(f"    {key}: {value}" for key, value in payload.items())
    message = f"""
    Hello {user.get_full_name() or user.email},

    {subject}.

{details}

    The {settings.SITE_NAME} Team
    """

    recipient = user.email
    transaction.on_commit(lambda: _deliver(event_type, recipient, subject, message.strip()))
    return True


def _deliver(event_type, recipient, subject, message):
    try:
        send_mail(
            subject=subject,
            message=message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[recipient],
            fail_silently=False,
        )
    except Exception as e:
        logger.error(f"Notification '{event_type}' to {recipient} failed: {str(e)}")
