from rest_framework import serializers

from .models import LedgerEntry
from payments.models import PaymentMethod, PayoutRecord


class PayoutRecordSummarySerializer(serializers.ModelSerializer):
    milestone_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = PayoutRecord
        fields = (
            "id",
            "record_type",
            "amount",
            "fee_amount",
            "provider",
            "provider_transaction_id",
            "milestone_id",
            "status",
            "timestamp",
        )
        read_only_fields = fields


class LedgerEntrySerializer(serializers.ModelSerializer):
    deal_id = serializers.IntegerField(read_only=True)
    milestone_id = serializers.IntegerField(read_only=True)
    milestone_order = serializers.IntegerField(source="milestone.order", read_only=True, default=None)
    split_from_id = serializers.IntegerField(read_only=True)
    payout_records = PayoutRecordSummarySerializer(many=True, read_only=True)

    class Meta:
        model = LedgerEntry
        fields = (
            "id",
            "deal_id",
            "milestone_id",
            "milestone_order",
            "amount",
            "currency",
            "status",
            "provider",
            "transaction_reference",
            "transfer_reference",
            "refund_reference",
            "split_from_id",
            "release_type",
            "release_reason",
            "created_at",
            "released_at",
            "refund_requested_at",
            "refunded_at",
            "payout_records",
        )
        read_only_fields = fields


class FundMilestoneSerializer(serializers.Serializer):
    payment_method_id = serializers.IntegerField()

    def validate_payment_method_id(self, value):
        user = self.context["request"].user
        try:
            return PaymentMethod.objects.get(id=value, user=user)
        except PaymentMethod.DoesNotExist:
            raise serializers.ValidationError("Payment method not found.")
