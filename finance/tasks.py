"""
FINANCE App - Celery Tasks for payment provider requests (USSD push, checkout links)
"""

import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=2, default_retry_delay=20)
def request_ussd_push(self, order_id: str, phone: str, amount_tzs: int):
    """
    Ask ClickPesa to prompt the customer's phone for payment.

    The order is already committed; a failure here is recorded for the admin
    and the customer can still pay manually.
    """
    from core.persistence import get_store
    from core.models import FailureChannel
    from finance.clickpesa_service import ClickPesaService

    result = ClickPesaService.initiate_ussd_push(phone, amount_tzs, order_id)
    if result.get('success'):
        return result

    if self.request.retries < self.max_retries:
        logger.warning(f"[TASK] USSD push for {order_id} failed, retrying: {result.get('error')}")
        raise self.retry()

    logger.error(f"[TASK] USSD push for {order_id} gave up: {result.get('error')}")
    get_store().record_delivery_failure(
        channel=FailureChannel.PSP,
        recipient=phone,
        error=result.get('error', 'unknown error'),
        reference=order_id,
    )
    return result


@shared_task(bind=True, max_retries=2, default_retry_delay=20)
def send_checkout_link(self, order_id: str, customer_id: str, amount_tzs: int,
                       customer_name: str = '', phone: str = '', lang: str = 'sw'):
    """
    Create a ClickPesa hosted checkout page and send its link to the customer.
    The payment itself is confirmed by clickpesa_return or the webhook.
    """
    from bot.messages import BotMessageBuilder
    from bot.tasks import enqueue_outbound
    from core.persistence import get_store
    from core.models import FailureChannel
    from finance.clickpesa_service import ClickPesaService

    result = ClickPesaService.generate_checkout_url(amount_tzs, order_id, customer_name, phone)
    if result.get('success'):
        enqueue_outbound(customer_id, [BotMessageBuilder.checkout_link(customer_id, lang, order_id, result['url'])],
                         reference=order_id)
        return {'success': True, 'url': result['url']}

    if self.request.retries < self.max_retries:
        logger.warning(f"[TASK] Checkout link for {order_id} failed, retrying: {result.get('error')}")
        raise self.retry()

    logger.error(f"[TASK] Checkout link for {order_id} gave up: {result.get('error')}")
    get_store().record_delivery_failure(
        channel=FailureChannel.PSP,
        recipient=customer_id,
        error=result.get('error', 'unknown error'),
        reference=order_id,
    )
    return result
