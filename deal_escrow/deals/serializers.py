from decimal import Decimal

from rest_framework import serializers
from django.contrib.auth import get_user_model

from accounts.serializers import UserSummarySerializer
from .models import Deal, Milestone, Deliverable, MilestoneFeedback
from .splits import TEMPLATE_CHOICES, MAX_MILESTONES, EQUAL_SPLIT


User = get_user_model()


class DeliverableSerializer(serializers.ModelSerializer):
    submitted_by = serializers.StringRelatedField(read_only=True)

    class Meta:
        model = Deliverable
        fields = ['id', 'title', 'link', 'notes', 'submitted_by', 'submitted_at']
        read_only_fields = ['id', 'submitted_by', 'submitted_at']


class MilestoneFeedbackSerializer(serializers.ModelSerializer):
    author = serializers.StringRelatedField(read_only=True)

    class Meta:
        model = MilestoneFeedback
        fields = ['id', 'author', 'text', 'decision', 'created_at']
        read_only_fields = fields


class MilestoneSerializer(serializers.ModelSerializer):
    """
    Serializer outlining milestone progress and escrow state.

    Deliverables and the feedback thread are embedded, oldest first.
    """
    deliverables = DeliverableSerializer(many=True, read_only=True)
    feedback = MilestoneFeedbackSerializer(many=True, read_only=True)

    class Meta:
        model = Milestone
        fields = [
            'id', 'order', 'title', 'description', 'percentage', 'amount', 'bonus_amount',
            'due_date', 'state', 'dispute_flag', 'auto_release_at', 'funded_at', 'submitted_at',
            'approved_at', 'completed_at', 'cancelled_at', 'deliverables', 'feedback',
        ]
        read_only_fields = fields


class DealSerializer(serializers.ModelSerializer):
    payer = UserSummarySerializer(read_only=True)
    payee = UserSummarySerializer(read_only=True)
    milestones = MilestoneSerializer(many=True, read_only=True)

    class Meta:
        model = Deal
        fields = [
            'id', 'title', 'description', 'payer', 'payee', 'total_amount', 'currency', 'status',
            'split_template', 'auto_release_days', 'is_archived', 'cancellation_reason',
            'created_at', 'updated_at', 'completed_at', 'cancelled_at', 'milestones',
        ]
        read_only_fields = fields


class DealListSerializer(serializers.ModelSerializer):
    payer = serializers.StringRelatedField()
    payee = serializers.StringRelatedField()

    class Meta:
        model = Deal
        fields = ['id', 'title', 'payer', 'payee', 'total_amount', 'currency', 'status', 'is_archived', 'created_at']
        read_only_fields = fields


class CreateDealSerializer(serializers.ModelSerializer):
    """
    Serializer for payers to open a new deal with a payee.

    The authenticated user becomes the payer; the payee is looked up by email.
    """
    payee_email = serializers.EmailField(write_only=True)

    class Meta:
        model = Deal
        fields = ['id', 'payee_email', 'title', 'description', 'total_amount', 'currency', 'split_template', 'auto_release_days']
        read_only_fields = ['id']

    def validate_payee_email(self, value):
        try:
            payee = User.objects.get(email__iexact=value, is_active=True)
        except User.DoesNotExist:
            raise serializers.ValidationError("No active user with this email.")
        if payee == self.context['request'].user:
            raise serializers.ValidationError("You cannot open a deal with yourself.")
        return payee

    def validate_total_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Please enter a valid amount.")
        return value

    def validate_currency(self, value):
        value = value.upper()
        if len(value) != 3 or not value.isalpha():
            raise serializers.ValidationError("Use a three-letter ISO currency code.")
        return value

    def create(self, validated_data):
        payee = validated_data.pop('payee_email')
        return Deal.objects.create(
            payer=self.context['request'].user,
            payee=payee,
            **validated_data
        )


class SplitPreviewSerializer(serializers.Serializer):
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    template = serializers.ChoiceField(choices=TEMPLATE_CHOICES, default=EQUAL_SPLIT)
    percentages = serializers.ListField(
        child=serializers.DecimalField(max_digits=5, decimal_places=2),
        required=False,
        max_length=MAX_MILESTONES,
    )
    count = serializers.IntegerField(required=False, min_value=1, max_value=MAX_MILESTONES)
    currency = serializers.CharField(max_length=3, default='USD')


class MilestoneDetailSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    due_date = serializers.DateField(required=False, allow_null=True)
    bonus_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, min_value=Decimal('0'), default=Decimal('0'),
    )


class MilestoneStructureSerializer(serializers.Serializer):
    """
    Input for deriving a deal's milestones from a split template.

    `milestones` optionally names each milestone; its length sets the count.
    """
    template = serializers.ChoiceField(choices=TEMPLATE_CHOICES)
    percentages = serializers.ListField(
        child=serializers.DecimalField(max_digits=5, decimal_places=2),
        required=False,
        max_length=MAX_MILESTONES,
    )
    count = serializers.IntegerField(required=False, min_value=1, max_value=MAX_MILESTONES)
    milestones = MilestoneDetailSerializer(many=True, required=False)

    def validate_milestones(self, value):
        if len(value) > MAX_MILESTONES:
            raise serializers.ValidationError(f"A deal can have at most {MAX_MILESTONES} milestones.")
        return value


class SubmitMilestoneSerializer(serializers.Serializer):
    deliverables = DeliverableSerializer(many=True)

    def validate_deliverables(self, value):
        if not value:
            raise serializers.ValidationError("Submit at least one deliverable.")
        return value


class ApproveMilestoneSerializer(serializers.Serializer):
    feedback = serializers.CharField(required=False, allow_blank=True, default='')


class RejectMilestoneSerializer(serializers.Serializer):
    feedback = serializers.CharField()
