"""
Finance App URLs
"""

from django.urls import path

from . import payment_api

urlpatterns = [
    # Admin
    path('orders/', payment_api.list_orders, name='order-list'),
    path('orders/<str:order_id>/', payment_api.order_detail, name='order-detail'),
    path('orders/<str:order_id>/payments/', payment_api.record_payment, name='order-record-payment'),
    path('delivery-failures/', payment_api.list_delivery_failures, name='delivery-failure-list'),

    # Payment provider callbacks
    path('payments/clickpesa/webhook/', payment_api.clickpesa_webhook, name='clickpesa-webhook'),
    path('payments/clickpesa/return/', payment_api.clickpesa_return, name='clickpesa-return'),
]
