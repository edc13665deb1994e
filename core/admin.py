"""
Django Admin configuration for CORE app.
"""

from django.contrib import admin

from .models import DeliveryFailure


@admin.register(DeliveryFailure)
class DeliveryFailureAdmin(admin.ModelAdmin):
    """Outbound sends and PSP requests that gave up."""

    list_display = ('created_at', 'channel', 'recipient', 'reference', 'short_error')
    list_filter = ('channel', 'created_at')
    search_fields = ('recipient', 'reference', 'error')
    readonly_fields = ('channel', 'recipient', 'reference', 'error', 'created_at')
    ordering = ('-created_at',)

    def short_error(self, obj):
        return obj.error[:80]
    short_error.short_description = "Error"

    def has_add_permission(self, request):
        return False
