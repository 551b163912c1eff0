from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group, Permission
from django.contrib.contenttypes.models import ContentType
from django.core.management.base import BaseCommand, CommandError

from disputes.models import Dispute, DisputeMessage, DisputeTimelineEvent

User = get_user_model()

MEDIATOR_PERMISSIONS = {
    Dispute: ('view_dispute', 'change_dispute'),
    DisputeMessage: ('view_disputemessage', 'add_disputemessage'),
    DisputeTimelineEvent: ('view_disputetimelineevent',),
}


class Command(BaseCommand):
    help = "Sets up the mediator group with dispute permissions and optionally adds or removes a member."

    def add_arguments(self, parser):
        parser.add_argument('--email', type=str, help='Email of the user to add to the mediator group')
        parser.add_argument('--remove', action='store_true', help='Remove --email from the group instead')

    def handle(self, *args, **options):
        group, created = Group.objects.get_or_create(name=settings.MEDIATOR_GROUP_NAME)
        if created:
            self.stdout.write(self.style.SUCCESS(f"Created group '{group.name}'."))

        granted = 0
        for model, codenames in MEDIATOR_PERMISSIONS.items():
            perms = Permission.objects.filter(
                content_type=ContentType.objects.get_for_model(model), codename__in=codenames,
            )
            group.permissions.add(*perms)
            granted += perms.count()
        self.stdout.write(f"Mediator group holds {granted} dispute permission(s).")

        email = options['email']
        if not email:
            return
        user = User.objects.filter(email__iexact=email).first()
        if user is None:
            raise CommandError(f"No user with email {email}.")

        if options['remove']:
            user.groups.remove(group)
            self.stdout.write(self.style.WARNING(f"{user.email} is no longer a mediator."))
        else:
            user.groups.add(group)
            self.stdout.write(self.style.SUCCESS(f"{user.email} can now mediate disputes."))
