from django.conf import settings
from django.db import models
from django.db.models import Q
from django.contrib.auth.models import AbstractUser, BaseUserManager
from country_list import countries_for_language
from auditlog.registry import auditlog
from auditlog.models import AuditlogHistoryField


class CustomUserManager(BaseUserManager):
    """
    Email-keyed user manager.
    """
    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError("Email is required.")
        user = self.model(email=self.normalize_email(email), **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('is_active', True)
        return self.create_user(email, password, **extra_fields)

    def mediators(self):
        """Active staff users and members of the mediator group."""
        return self.filter(
            Q(is_staff=True) | Q(groups__name=settings.MEDIATOR_GROUP_NAME),
            is_active=True,
        ).distinct()


class CustomUser(AbstractUser):
    """
    Platform user. Uses email as the unique identifier.

    `user_type` says which side of a deal the user usually sits on (the payer
    funds milestones, the payee delivers work). Mediators are staff users or
    members of the mediator group, independent of user_type.
    """
    USER_TYPE_CHOICES = (
        ('payer', 'Payer'),
        ('payee', 'Payee'),
    )

    user_type = models.CharField(max_length=20, choices=USER_TYPE_CHOICES)
    phone_number = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=50, choices=countries_for_language('en'), blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    email = models.EmailField(unique=True, blank=False)
    username = None

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['first_name', 'last_name']

    objects = CustomUserManager()

    history = AuditlogHistoryField()

    def __str__(self):
        return self.email

    @property
    def is_mediator(self):
        if self.is_staff:
            return True
        return self.groups.filter(name=settings.MEDIATOR_GROUP_NAME).exists()

    @property
    def can_receive_payouts(self):
        """True once the user has an active payout account to release funds to."""
        return self.payout_methods.filter(is_active=True).exists()


auditlog.register(CustomUser, exclude_fields=['password', 'last_login'])
