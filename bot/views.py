"""
BOT App - WhatsApp Webhook Views for UJANI

- MetaWebhookView: Meta WhatsApp Cloud API (verification handshake + inbound messages)
"""

import json
import logging

from django.conf import settings
from django.http import HttpResponse
from rest_framework.permissions import AllowAny
from rest_framework.views import APIView

from .dispatcher import Dispatcher
from .services import parse_incoming_data, verify_signature
from .sessions import normalize_customer_id
from .tasks import enqueue_outbound

logger = logging.getLogger(__name__)


class MetaWebhookView(APIView):
    """
    Meta WhatsApp Cloud API Webhook endpoint.

    GET /webhooks/meta/ - Webhook verification handshake
    POST /webhooks/meta/ - Incoming messages from WhatsApp

    Meta retries anything that is not a 2xx, so every accepted envelope is
    answered "OK", including ones with a bad signature (discarded).
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        """
        Webhook verification handshake for Meta.

        Meta sends:
        - hub.mode: 'subscribe'
        - hub.verify_token: Your configured token
        - hub.challenge: Random string to return
        """
        mode = request.GET.get('hub.mode')
        token = request.GET.get('hub.verify_token')
        challenge = request.GET.get('hub.challenge', '')

        verify_token = settings.META_VERIFY_TOKEN

        if mode == 'subscribe' and verify_token and token == verify_token:
            logger.info("[META] Webhook verification successful")
            return HttpResponse(challenge, content_type='text/plain')

        logger.warning(f"[META] Webhook verification failed: mode={mode}, token_match={token == verify_token}")
        return HttpResponse("Verification failed", status=403)

    def post(self, request):
        """Process incoming Meta WhatsApp webhook."""
        raw_body = request.body

        secret = settings.META_APP_SECRET
        if secret and not verify_signature(raw_body, request.headers.get('X-Hub-Signature-256'), secret):
            logger.warning("[META] Invalid X-Hub-Signature-256, envelope discarded")
            return HttpResponse("OK")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            logger.warning("[META] Malformed JSON body")
            return HttpResponse("Invalid JSON", status=400)

        messages = parse_incoming_data(payload)
        if not messages:
            # Delivery/read receipts carry no messages
            logger.debug("[META] Received webhook without messages (possibly status update)")
            return HttpResponse("OK")

        dispatcher = Dispatcher()
        for inbound in messages:
            replies = dispatcher.handle(inbound)
            enqueue_outbound(normalize_customer_id(inbound.sender), replies, reference=inbound.message_id)

        return HttpResponse("OK")
