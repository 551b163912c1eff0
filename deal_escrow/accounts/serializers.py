from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework_simplejwt.exceptions import AuthenticationFailed

from .models import CustomUser


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    """
    Email/password login.

    Tokens carry the user's email, user_type and mediator flag so clients can
    pick the payer, payee or mediator views without an extra request.
    """
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token['email'] = user.email
        token['user_type'] = user.user_type
        token['is_mediator'] = user.is_mediator
        return token

    def validate(self, attrs):
        user = CustomUser.objects.filter(email=attrs.get('email')).first()
        if user is not None and not user.is_active:
            raise AuthenticationFailed("Your account is deactivated.")
        return super().validate(attrs)


class UserSummarySerializer(serializers.ModelSerializer):
    full_name = serializers.CharField(source='get_full_name', read_only=True)

    class Meta:
        model = CustomUser
        fields = ['id', 'email', 'full_name', 'user_type']
        read_only_fields = fields


class UserProfileSerializer(serializers.ModelSerializer):
    """
    The current user's profile plus where they stand in the escrow flow.

    Editable: first_name, last_name, phone_number, country.
    """
    is_mediator = serializers.BooleanField(read_only=True)
    can_receive_payouts = serializers.BooleanField(read_only=True)
    open_deals = serializers.SerializerMethodField()

    class Meta:
        model = CustomUser
        fields = (
            'id', 'first_name', 'last_name', 'email', 'phone_number', 'user_type', 'country',
            'is_mediator', 'can_receive_payouts', 'open_deals',
        )
        read_only_fields = ('id', 'email', 'user_type', 'is_mediator', 'can_receive_payouts', 'open_deals')

    def get_open_deals(self, obj):
        return (
            obj.paying_deals.filter(is_archived=False).count()
            + obj.earning_deals.filter(is_archived=False).count()
        )
