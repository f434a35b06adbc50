from django.contrib import admin
from .models import Transaction


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = ['id', 'vehicle', 'buyer', 'amount', 'remaining_amount', 'status', 'payment_type', 'delivery_status', 'created_at']
    list_filter = ['status', 'payment_type', 'payment_shape', 'delivery_status', 'created_at']
    search_fields = ['gateway_session_id', 'gateway_payment_id', 'payment_reference', 'buyer__username']
    ordering = ['-created_at']
    readonly_fields = ['status', 'amount', 'booking_amount', 'remaining_amount', 'manual_amount', 'payment_shape', 'settles']
