from django.contrib import admin

from .models import Dispute, DisputeMessage, DisputeTimelineEvent


class DisputeMessageInline(admin.TabularInline):
    model = DisputeMessage
    extra = 0
    readonly_fields = ('sender', 'sender_role', 'message', 'created_at')


class DisputeTimelineInline(admin.TabularInline):
    model = DisputeTimelineEvent
    extra = 0
    readonly_fields = ('action', 'actor', 'description', 'created_at')
    can_delete = False


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ('dispute_number', 'deal', 'milestone', 'category', 'urgency', 'status', 'escalation_deadline', 'created_at')
    list_filter = ('status', 'category', 'urgency')
    search_fields = ('dispute_number', 'title', 'deal__title')
    readonly_fields = ('dispute_number', 'status', 'outcome', 'resolution_amount', 'resolved_by', 'resolved_at')
    inlines = [DisputeMessageInline, DisputeTimelineInline]
