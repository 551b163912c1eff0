from decimal import Decimal

from rest_framework import serializers

from .models import Dispute, DisputeMessage, DisputeTimelineEvent


class DisputeCreateSerializer(serializers.Serializer):
    """
    Input for opening a dispute. The deal comes from the URL; leave
    `milestone_id` out to dispute the deal as a whole.
    """
    milestone_id = serializers.IntegerField(required=False, allow_null=True)
    category = serializers.ChoiceField(choices=Dispute.Category.choices)
    title = serializers.CharField(max_length=255)
    description = serializers.CharField()
    urgency = serializers.ChoiceField(choices=Dispute.Urgency.choices, default=Dispute.Urgency.MEDIUM)

    def validate_milestone_id(self, value):
        if value is None:
            return value
        deal = self.context['deal']
        if not deal.milestones.filter(id=value).exists():
            raise serializers.ValidationError("Milestone does not belong to this deal.")
        return value


class DisputeMessageSerializer(serializers.ModelSerializer):
    sender = serializers.StringRelatedField(read_only=True)

    class Meta:
        model = DisputeMessage
        fields = ['id', 'sender', 'sender_role', 'message', 'created_at']
        read_only_fields = ['id', 'sender', 'sender_role', 'created_at']


class DisputeTimelineEventSerializer(serializers.ModelSerializer):
    actor = serializers.StringRelatedField()

    class Meta:
        model = DisputeTimelineEvent
        fields = ['action', 'actor', 'description', 'created_at']
        read_only_fields = fields


class DisputeListSerializer(serializers.ModelSerializer):
    deal_id = serializers.IntegerField(source='deal.id', read_only=True)
    deal_title = serializers.CharField(source='deal.title', read_only=True)
    milestone_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = Dispute
        fields = [
            'id', 'dispute_number', 'deal_id', 'deal_title', 'milestone_id', 'category',
            'urgency', 'status', 'title', 'escalation_deadline', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class DisputeDetailSerializer(serializers.ModelSerializer):
    """
    Full dispute with its messages and timeline.
    """
    deal_id = serializers.IntegerField(source='deal.id', read_only=True)
    deal_title = serializers.CharField(source='deal.title', read_only=True)
    milestone_id = serializers.IntegerField(read_only=True)
    milestone_title = serializers.CharField(source='milestone.title', read_only=True, default=None)
    raised_by = serializers.StringRelatedField()
    resolved_by = serializers.StringRelatedField()
    messages = DisputeMessageSerializer(many=True, read_only=True)
    timeline = DisputeTimelineEventSerializer(many=True, read_only=True)
    days_open = serializers.IntegerField(read_only=True)
    days_until_escalation = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = Dispute
        fields = [
            'id', 'dispute_number', 'deal_id', 'deal_title', 'milestone_id', 'milestone_title',
            'raised_by', 'category', 'title', 'description', 'urgency', 'status',
            'escalation_deadline', 'days_open', 'days_until_escalation',
            'outcome', 'resolution_amount', 'resolution_summary', 'mediator_notes',
            'resolved_by', 'resolved_at', 'cancelled_at', 'created_at', 'updated_at',
            'messages', 'timeline',
        ]
        read_only_fields = fields


class DisputeResolveSerializer(serializers.Serializer):
    outcome = serializers.ChoiceField(choices=Dispute.Outcome.choices)
    amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, allow_null=True, min_value=Decimal('0.01'),
    )
    summary = serializers.CharField(required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        partial = attrs['outcome'] in (Dispute.Outcome.RELEASE_PARTIAL, Dispute.Outcome.REFUND_PARTIAL)
        if partial and attrs.get('amount') is None:
            raise serializers.ValidationError({'amount': "An amount is required for partial outcomes."})
        if not partial:
            attrs['amount'] = None
        return attrs


class MediatorStatusSerializer(serializers.Serializer):
    """Mediator workflow moves that do not settle the dispute."""
    status = serializers.ChoiceField(choices=[
        (Dispute.Status.UNDER_REVIEW, 'Under Review'),
        (Dispute.Status.MEDIATION, 'Mediation'),
    ])
    notes = serializers.CharField(required=False, allow_blank=True, default='')
