"""
Django Admin configuration for FINANCE app.

Orders and ledger rows are read-only here: payments are recorded through
POST /api/orders/<order_id>/payments/ so they go through the ledger.
"""

from django.contrib import admin
from django.db.models import Sum

from .ledger import derive_status
from .models import OrderItemRecord, OrderRecord, PaymentEventRecord, PaymentEvidenceRecord


class ReadOnlyInline(admin.TabularInline):
    extra = 0
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False


class OrderItemInline(ReadOnlyInline):
    model = OrderItemRecord
    fields = ('position', 'product_id', 'title', 'unit_price_tzs', 'quantity')


class PaymentEventInline(ReadOnlyInline):
    model = PaymentEventRecord
    fields = ('event_id', 'amount_tzs', 'method', 'reference', 'received_at')


class PaymentEvidenceInline(ReadOnlyInline):
    model = PaymentEvidenceRecord
    fields = ('text', 'media_id', 'caption', 'received_at')


@admin.register(OrderRecord)
class OrderRecordAdmin(admin.ModelAdmin):
    """Admin for orders with their derived payment status."""

    list_display = (
        'order_id',
        'customer_id',
        'customer_name',
        'fulfillment',
        'formatted_total',
        'paid_tzs',
        'payment_status',
        'created_at'
    )
    list_filter = ('fulfillment', 'created_at')
    search_fields = ('order_id', 'customer_id', 'customer_name', 'contact_phone')
    ordering = ('-created_at',)
    date_hierarchy = 'created_at'
    inlines = [OrderItemInline, PaymentEventInline, PaymentEvidenceInline]

    def get_queryset(self, request):
        return super().get_queryset(request).annotate(_paid=Sum('payment_events__amount_tzs'))

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def formatted_total(self, obj):
        return f"{obj.total_tzs:,} TZS"
    formatted_total.short_description = "Total"

    def paid_tzs(self, obj):
        return f"{obj._paid or 0:,} TZS"
    paid_tzs.short_description = "Paid"

    def payment_status(self, obj):
        return derive_status(obj._paid or 0, obj.total_tzs)
    payment_status.short_description = "Status"

    def has_add_permission(self, request):
        return False


@admin.register(PaymentEventRecord)
class PaymentEventRecordAdmin(admin.ModelAdmin):
    list_display = ('event_id', 'order', 'amount_tzs', 'method', 'reference', 'received_at')
    list_filter = ('method', 'received_at')
    search_fields = ('event_id', 'order__order_id', 'reference')
    ordering = ('-received_at',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
