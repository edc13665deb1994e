"""
Payment API for UJANI

- ClickPesa webhook (USSD push and checkout results)
- ClickPesa hosted checkout return page
- Admin endpoints for orders, manual payment reconciliation and delivery failures
"""

import hashlib
import json
import logging
import uuid
from decimal import Decimal, InvalidOperation
from urllib.parse import quote

from django.conf import settings
from django.http import HttpResponse, HttpResponseBadRequest, HttpResponseRedirect, JsonResponse
from django.utils.html import escape
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from core.persistence import get_store
from finance.clickpesa_service import ClickPesaService, verify_webhook
from finance.ledger import OrderNotFound, PaymentLedger
from finance.models import PAYMENT_ID_MAX_LENGTH
from finance.orders import PaymentEvent, PaymentMethod

logger = logging.getLogger(__name__)

PAID_STATUSES = ('SUCCESS', 'SETTLED')


def _parse_amount(value) -> int:
    """Amounts arrive as numbers or strings such as "15000.00"."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return 0
    if not amount.is_finite():
        return 0
    return int(amount)


def _provider_event_id(provider_id, raw: bytes) -> str:
    """ClickPesa payment id, or a digest of the raw record when it is missing or too long."""
    provider_id = str(provider_id or '').strip()
    if provider_id and len(provider_id) <= PAYMENT_ID_MAX_LENGTH:
        return provider_id
    return f"cp_{hashlib.sha256(raw).hexdigest()[:32]}"


def _whatsapp_deeplink(message: str) -> str:
    number = ''.join(filter(str.isdigit, settings.BUSINESS_WA_NUMBER))
    if not number:
        return ''
    return f"https://wa.me/{number}?text={quote(message)}"


def _notify_customer(order_id: str, snapshot) -> None:
    from bot.messages import payment_update_messages
    from bot.tasks import enqueue_outbound

    order = get_store().get_order(order_id)
    if order is None:
        return
    enqueue_outbound(order.customer_id, payment_update_messages(order, snapshot), reference=order_id)


def _order_payload(order, snapshot) -> dict:
    payload = order.to_dict()
    payload['payment'] = snapshot.to_dict()
    return payload


# ===========================================
# CLICKPESA WEBHOOK
# ===========================================

@csrf_exempt
@require_http_methods(['POST'])
def clickpesa_webhook(request):
    """
    Webhook callback for ClickPesa.

    POST /api/payments/clickpesa/webhook/

    Body:
    {
        "event": "PAYMENT RECEIVED",
        "data": {"orderReference": "UJANI-2025-0001", "collectedAmount": "15000",
                 "status": "SUCCESS", "paymentId": "...", "checksum": "..."}
    }

    Invalid signatures are acknowledged (no retry storm) and ignored.
    """
    try:
        payload = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("[CLICKPESA WEBHOOK] Malformed JSON body")
        return JsonResponse({'error': 'Invalid JSON'}, status=400)

    if not isinstance(payload, dict):
        return JsonResponse({'error': 'Invalid payload'}, status=400)

    if not verify_webhook(request.body, payload, request.headers.get('X-ClickPesa-Signature')):
        logger.warning("[CLICKPESA WEBHOOK] Invalid signature, event ignored")
        return JsonResponse({'received': True, 'verified': False})

    event = str(payload.get('event') or payload.get('eventType') or '').upper()
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    order_id = str(data.get('orderReference') or '').strip()

    if not order_id:
        logger.info(f"[CLICKPESA WEBHOOK] {event or 'event'} without orderReference ignored")
        return JsonResponse({'received': True, 'verified': True, 'applied': False})

    is_paid = 'RECEIVED' in event or str(data.get('status') or '').upper() in PAID_STATUSES
    amount = _parse_amount(data.get('collectedAmount') or data.get('amount') or 0)

    if not is_paid or amount <= 0:
        logger.info(f"[CLICKPESA WEBHOOK] {order_id}: {event} / {data.get('status')} - nothing to apply")
        return JsonResponse({'received': True, 'verified': True, 'applied': False})

    # Retries of one callback carry the same body, hence the same id
    event_id = _provider_event_id(data.get('paymentId'), request.body)
    payment = PaymentEvent(
        event_id=event_id,
        order_id=order_id,
        amount_tzs=amount,
        method=PaymentMethod.USSD,
        reference=str(data.get('paymentReference') or data.get('id') or '')[:PAYMENT_ID_MAX_LENGTH],
    )

    try:
        snapshot = PaymentLedger().apply(payment)
    except OrderNotFound:
        logger.warning(f"[CLICKPESA WEBHOOK] Unknown order {order_id}, payment {event_id} not applied")
        return JsonResponse({'received': True, 'verified': True, 'applied': False})

    if snapshot.applied:
        _notify_customer(order_id, snapshot)

    return JsonResponse({
        'received': True,
        'verified': True,
        'applied': snapshot.applied,
        'status': str(snapshot.status),
    })


@require_GET
def clickpesa_return(request):
    """
    Customer lands here from the ClickPesa hosted checkout page.

    GET /api/payments/clickpesa/return/?ref=UJANI-2025-0001

    Paid records ClickPesa holds for the order are applied to the ledger,
    each once (keyed by the ClickPesa payment id, shared with the webhook),
    then the customer is sent back to WhatsApp.
    """
    order_id = request.GET.get('ref', '').strip()
    if not order_id:
        return HttpResponseBadRequest('Missing ref')

    result = ClickPesaService.query_payments(order_id)
    if not result.get('success'):
        logger.warning(f"[CLICKPESA RETURN] Could not query payments for {order_id}: {result.get('error')}")
        return HttpResponse(f"<h3>We could not confirm the payment for {escape(order_id)} yet.</h3>")

    ledger = PaymentLedger()
    paid = False
    for record in result['payments']:
        if str(record.get('status') or '').upper() not in PAID_STATUSES:
            continue
        paid = True
        amount = _parse_amount(record.get('collectedAmount') or record.get('amount') or 0)
        if amount <= 0:
            continue

        raw = json.dumps(record, sort_keys=True, default=str).encode()
        payment = PaymentEvent(
            event_id=_provider_event_id(record.get('id') or record.get('paymentId'), raw),
            order_id=order_id,
            amount_tzs=amount,
            method=PaymentMethod.CHECKOUT,
            reference=str(record.get('paymentReference') or '')[:PAYMENT_ID_MAX_LENGTH],
        )
        try:
            snapshot = ledger.apply(payment)
        except OrderNotFound:
            logger.warning(f"[CLICKPESA RETURN] Unknown order {order_id}")
            return HttpResponse(f"<h3>Unknown order {escape(order_id)}</h3>", status=404)
        if snapshot.applied:
            _notify_customer(order_id, snapshot)

    if not paid:
        return HttpResponse(f"<h3>Payment pending for {escape(order_id)}</h3>")

    deeplink = _whatsapp_deeplink(f"Paid Order {order_id}")
    if deeplink:
        return HttpResponseRedirect(deeplink)
    return HttpResponse(f"<h3>Payment received for {escape(order_id)}. You can go back to WhatsApp.</h3>")


# ===========================================
# ADMIN API
# ===========================================

@api_view(['GET'])
@permission_classes([IsAdminUser])
def list_orders(request):
    """
    GET /api/orders/?customer=+255712345678
    """
    store = get_store()
    ledger = PaymentLedger(store=store)
    orders = store.list_orders(customer_id=request.query_params.get('customer') or None)
    return Response([_order_payload(order, ledger.snapshot(order.order_id)) for order in orders])


@api_view(['GET'])
@permission_classes([IsAdminUser])
def order_detail(request, order_id):
    """
    GET /api/orders/<order_id>/

    Order, ledger status, payment events and payment evidence.
    """
    store = get_store()
    order = store.get_order(order_id)
    if order is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)

    payload = _order_payload(order, PaymentLedger(store=store).snapshot(order_id))
    payload['payment_events'] = [e.to_dict() for e in store.list_payment_events(order_id)]
    payload['evidence'] = [e.to_dict() for e in store.list_evidence(order_id)]
    return Response(payload)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def record_payment(request, order_id):
    """
    Manual reconciliation of a payment the admin has verified.

    POST /api/orders/<order_id>/payments/

    Body:
    {
        "amount_tzs": 15000,
        "reference": "QK72HD81JS",   (optional, M-Pesa/Tigo transaction id)
        "event_id": "..."             (optional, defaults from reference)
    }

    Returns 201 when applied, 200 when the event was already recorded.
    """
    amount = _parse_amount(request.data.get('amount_tzs'))
    if amount <= 0:
        return Response({'error': 'amount_tzs must be a positive integer'},
                        status=status.HTTP_400_BAD_REQUEST)

    reference = str(request.data.get('reference') or '').strip()
    event_id = str(request.data.get('event_id') or '').strip()
    if not event_id:
        event_id = f"manual-{reference}" if reference else f"manual-{uuid.uuid4().hex}"
    if len(reference) > PAYMENT_ID_MAX_LENGTH or len(event_id) > PAYMENT_ID_MAX_LENGTH:
        return Response({'error': f'reference and event_id are limited to {PAYMENT_ID_MAX_LENGTH} characters'},
                        status=status.HTTP_400_BAD_REQUEST)

    payment = PaymentEvent(
        event_id=event_id,
        order_id=order_id,
        amount_tzs=amount,
        method=PaymentMethod.MANUAL,
        reference=reference,
    )
    try:
        snapshot = PaymentLedger().apply(payment)
    except OrderNotFound:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)

    logger.info(f"[PAYMENT] Manual payment {event_id} on {order_id} by {request.user}")
    if snapshot.applied:
        _notify_customer(order_id, snapshot)

    return Response(
        snapshot.to_dict(),
        status=status.HTTP_201_CREATED if snapshot.applied else status.HTTP_200_OK
    )


@api_view(['GET'])
@permission_classes([IsAdminUser])
def list_delivery_failures(request):
    """
    GET /api/delivery-failures/
    """
    return Response(get_store().list_delivery_failures())
