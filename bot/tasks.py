"""
BOT App - Celery Tasks for outbound WhatsApp messages

Replies are produced synchronously by the dispatcher and sent here, so a slow
or failing Cloud API never holds a customer lock or the webhook response.
"""

import logging
from typing import List

from celery import shared_task

logger = logging.getLogger(__name__)


def _record_failure(recipient: str, error: str, reference: str = '') -> None:
    from core.models import FailureChannel
    from core.persistence import get_store

    get_store().record_delivery_failure(
        channel=FailureChannel.WHATSAPP,
        recipient=recipient,
        error=error,
        reference=reference,
    )


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def send_outbound_messages(self, messages: List[dict], reference: str = ''):
    """
    Send serialized OutboundMessage dicts in order.

    Messages already sent are dropped before a retry so a customer never
    receives the same reply twice. After the last retry the remaining
    messages are recorded as delivery failures.
    """
    from bot.messages import OutboundMessage
    from bot.services import MetaWhatsAppService, WhatsAppSendError

    sent = []
    for index, data in enumerate(messages):
        message = OutboundMessage.from_dict(data)
        try:
            sent.append(MetaWhatsAppService.send(message))
        except WhatsAppSendError as e:
            remaining = messages[index:]
            if self.request.retries < self.max_retries:
                logger.warning(f"[TASK] Send to {message.to} failed, retrying {len(remaining)} message(s): {e}")
                raise self.retry(args=[remaining], kwargs={'reference': reference}, exc=e)

            logger.error(f"[TASK] Giving up on {len(remaining)} message(s) to {message.to}: {e}")
            for failed in remaining:
                _record_failure(failed['to'], str(e), reference)
            return {'sent': sent, 'failed': len(remaining)}

    return {'sent': sent, 'failed': 0}


def enqueue_outbound(customer_id: str, messages: List, reference: str = '') -> None:
    """
    Queue messages for sending. Never raises: a broker failure is logged and
    recorded against the customer so the admin can follow up.
    """
    if not messages:
        return

    payload = [m.to_dict() for m in messages]
    try:
        send_outbound_messages.delay(payload, reference=reference)
    except Exception as e:
        logger.error(f"[TASK] Could not enqueue {len(payload)} message(s) for {customer_id}: {e}")
        _record_failure(customer_id, f"enqueue failed: {e}", reference)
