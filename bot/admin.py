"""
Django Admin configuration for BOT app.
"""

from django.contrib import admin

from .models import ConversationSession


@admin.register(ConversationSession)
class ConversationSessionAdmin(admin.ModelAdmin):
    list_display = ('customer_id', 'state', 'language', 'updated_at')
    search_fields = ('customer_id',)
    readonly_fields = ('customer_id', 'data', 'updated_at')
    ordering = ('-updated_at',)

    def state(self, obj):
        return obj.data.get('state', '-')

    def language(self, obj):
        return obj.data.get('language', '-')
