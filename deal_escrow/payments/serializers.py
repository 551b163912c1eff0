from rest_framework import serializers
from django.db import transaction

from .models import PayoutRecord, PaymentMethod, PayoutMethod


class PayoutRecordSerializer(serializers.ModelSerializer):
    deal_id = serializers.IntegerField(read_only=True)
    milestone_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = PayoutRecord
        fields = ['id', 'deal_id', 'milestone_id', 'record_type', 'amount', 'fee_amount', 'currency', 'provider', 'provider_transaction_id', 'status', 'timestamp']
        read_only_fields = fields


class PaymentMethodSerializer(serializers.ModelSerializer):
    """
    A payer's saved instrument. `provider_token` is write-only; only the
    display string is echoed back.
    """
    class Meta:
        model = PaymentMethod
        fields = ['id', 'provider', 'provider_token', 'customer_reference', 'display_info', 'is_default', 'created_at']
        read_only_fields = ['id', 'created_at']
        extra_kwargs = {'provider_token': {'write_only': True}}

    def validate(self, attrs):
        user = self.context['request'].user
        if PaymentMethod.objects.filter(user=user, provider=attrs['provider'], provider_token=attrs['provider_token']).exists():
            raise serializers.ValidationError('This payment method is already saved.')
        return attrs

    def create(self, validated_data):
        user = self.context['request'].user
        with transaction.atomic():
            if validated_data.get('is_default'):
                PaymentMethod.objects.filter(user=user, is_default=True).update(is_default=False)
            return PaymentMethod.objects.create(user=user, **validated_data)


class PayoutMethodSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutMethod
        fields = ['id', 'provider', 'account_reference', 'is_default', 'is_active', 'created_at', 'updated_at']
        read_only_fields = ['id', 'is_active', 'created_at', 'updated_at']

    def validate(self, attrs):
        user = self.context['request'].user
        existing = PayoutMethod.objects.filter(
            user=user,
            provider=attrs['provider'],
            account_reference=attrs['account_reference'],
        ).first()
        if existing:
            raise serializers.ValidationError(f"This {attrs['provider']} account is already added as a payout method.")
        return attrs

    def create(self, validated_data):
        user = self.context['request'].user
        with transaction.atomic():
            if validated_data.get('is_default'):
                PayoutMethod.objects.filter(user=user, is_default=True).update(is_default=False)
            return PayoutMethod.objects.create(user=user, **validated_data)


class SetPayoutMethodFlagsSerializer(serializers.Serializer):
    is_default = serializers.BooleanField(required=False)
    is_active = serializers.BooleanField(required=False)
