from django.contrib import admin

from .models import LedgerEntry


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    list_display = ('id', 'deal', 'milestone', 'amount', 'currency', 'status', 'release_type', 'created_at', 'released_at')
    list_filter = ('status', 'release_type', 'provider')
    search_fields = ('transaction_reference', 'transfer_reference', 'deal__title')

    def has_delete_permission(self, request, obj=None):
        return False

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]
