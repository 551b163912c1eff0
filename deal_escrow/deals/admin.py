from django.contrib import admin

from .models import Deal, Milestone, Deliverable, MilestoneFeedback


class MilestoneInline(admin.TabularInline):
    model = Milestone
    extra = 0
    fields = ('order', 'title', 'percentage', 'amount', 'bonus_amount', 'state', 'auto_release_at', 'dispute_flag')
    readonly_fields = fields
    can_delete = False


@admin.register(Deal)
class DealAdmin(admin.ModelAdmin):
    list_display = ('id', 'title', 'payer', 'payee', 'total_amount', 'currency', 'status', 'is_archived', 'created_at')
    list_filter = ('status', 'split_template', 'is_archived', 'currency')
    search_fields = ('title', 'payer__email', 'payee__email')
    inlines = [MilestoneInline]


@admin.register(Milestone)
class MilestoneAdmin(admin.ModelAdmin):
    list_display = ('id', 'deal', 'order', 'title', 'amount', 'state', 'auto_release_at', 'dispute_flag')
    list_filter = ('state', 'dispute_flag')
    search_fields = ('title', 'deal__title')
    # State changes go through the services so the ledger stays consistent.
    readonly_fields = ('state', 'state_before_dispute', 'dispute_flag', 'amount', 'percentage')


@admin.register(Deliverable)
class DeliverableAdmin(admin.ModelAdmin):
    list_display = ('id', 'milestone', 'title', 'submitted_by', 'submitted_at')
    search_fields = ('title', 'milestone__title')


@admin.register(MilestoneFeedback)
class MilestoneFeedbackAdmin(admin.ModelAdmin):
    list_display = ('id', 'milestone', 'author', 'decision', 'created_at')
    list_filter = ('decision',)
