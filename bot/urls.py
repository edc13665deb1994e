"""
BOT App URL Configuration

- /webhooks/meta/ - Meta WhatsApp Cloud API integration
"""

from django.urls import path
from .views import MetaWebhookView

urlpatterns = [
    path('meta/', MetaWebhookView.as_view(), name='meta-webhook'),
]
