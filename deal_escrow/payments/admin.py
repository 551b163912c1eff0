from django.contrib import admin
from .models import (
    PayoutRecord,
    PaymentMethod,
    PayoutMethod,
)


@admin.register(PayoutRecord)
class PayoutRecordAdmin(admin.ModelAdmin):
    list_display = ('id', 'deal', 'milestone', 'payer', 'record_type', 'amount', 'fee_amount', 'provider', 'status', 'timestamp')
    list_filter = ('provider', 'record_type', 'status')
    search_fields = ('provider_transaction_id', 'payer__email')


@admin.register(PaymentMethod)
class PaymentMethodAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'provider', 'display_info', 'is_default', 'created_at')
    list_filter = ('provider', 'is_default')
    search_fields = ('user__email', 'display_info')


@admin.register(PayoutMethod)
class PayoutMethodAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'provider', 'account_reference', 'is_default', 'is_active', 'created_at')
    list_filter = ('provider', 'is_default', 'is_active')
    search_fields = ('user__email', 'account_reference')
