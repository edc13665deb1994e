"""
UJANI Main URL Configuration
"""

from django.contrib import admin
from django.urls import path, include


# ===========================================
# ADMIN SITE CUSTOMIZATION
# ===========================================
admin.site.site_header = "Ujani WhatsApp Shop"
admin.site.site_title = "Ujani Admin"
admin.site.index_title = "Orders & Payments"


urlpatterns = [
    # Admin
    path('admin/', admin.site.urls),

    # Liveness
    path('health/', include('core.urls')),

    # Orders, payments, delivery failures, PSP callbacks
    path('api/', include('finance.urls')),

    # Webhooks (WhatsApp Bot)
    path('webhooks/', include('bot.urls')),
]
