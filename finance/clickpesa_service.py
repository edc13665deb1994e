"""
ClickPesa Service for UJANI

Handles USSD push payment requests (M-Pesa, Tigo Pesa, Airtel Money) in Tanzania,
hosted checkout links, payment queries and the checksum scheme shared by
requests and webhooks.
"""

import hashlib
import hmac
import logging
from typing import Optional
from urllib.parse import quote

import requests
from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)


def compute_checksum(payload: dict, secret: str) -> str:
    """
    HMAC-SHA256 over the values of `payload`, concatenated in sorted-key order.
    The `checksum` key itself is never part of the signed data.
    """
    keys = sorted(k for k in payload if k != 'checksum')
    concat = ''.join('' if payload[k] is None else str(payload[k]) for k in keys)
    return hmac.new(secret.encode(), concat.encode(), hashlib.sha256).hexdigest()


def verify_webhook(raw_body: bytes, payload: dict, signature_header: str = None,
                   secret: str = None) -> bool:
    """
    Verify a ClickPesa webhook.

    Accepted forms:
        - X-ClickPesa-Signature header: HMAC-SHA256 of the raw body
        - data.checksum: sorted-keys checksum of the `data` object

    Verification is disabled (always True) when no secret is configured.
    """
    if secret is None:
        secret = settings.CLICKPESA_CHECKSUM_SECRET
    if not secret:
        return True

    if signature_header:
        expected = hmac.new(secret.encode(), raw_body or b'', hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature_header.strip().encode(), expected.encode())

    data = payload.get('data') if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return False
    provided = data.get('checksum')
    if not provided:
        return False
    return hmac.compare_digest(str(provided).encode(), compute_checksum(data, secret).encode())


class ClickPesaService:
    """
    ClickPesa API integration.

    Flow:
    1. Get access token (cached)
    2. Initiate USSD push to the customer's phone, or generate a hosted checkout link
    3. Receive webhook (finance.payment_api.clickpesa_webhook), or the customer
       comes back from the checkout page (finance.payment_api.clickpesa_return)
    """

    TOKEN_CACHE_KEY = "clickpesa_access_token"
    TOKEN_CACHE_TTL = 55 * 60  # Tokens live one hour

    @staticmethod
    def is_enabled() -> bool:
        return bool(settings.CLICKPESA_CLIENT_ID and settings.CLICKPESA_API_KEY)

    @classmethod
    def _get_access_token(cls) -> Optional[str]:
        cached_token = cache.get(cls.TOKEN_CACHE_KEY)
        if cached_token:
            return cached_token

        if not cls.is_enabled():
            logger.error("[CLICKPESA] Missing credentials")
            return None

        try:
            response = requests.post(
                f"{settings.CLICKPESA_BASE_URL}/generate-token",
                headers={
                    'client-id': settings.CLICKPESA_CLIENT_ID,
                    'api-key': settings.CLICKPESA_API_KEY,
                },
                timeout=15
            )
            response.raise_for_status()
            token = response.json().get('token')
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[CLICKPESA] Token request failed: {e}")
            return None

        if not token:
            logger.error("[CLICKPESA] No token in response")
            return None

        cache.set(cls.TOKEN_CACHE_KEY, token, cls.TOKEN_CACHE_TTL)
        logger.info("[CLICKPESA] Access token obtained and cached")
        return token

    @staticmethod
    def _msisdn(phone: str) -> str:
        """ClickPesa expects 255XXXXXXXXX without '+'."""
        digits = ''.join(filter(str.isdigit, phone or ''))
        if digits.startswith('0') and len(digits) == 10:
            digits = '255' + digits[1:]
        return digits

    @classmethod
    def initiate_ussd_push(cls, phone: str, amount_tzs: int, order_reference: str) -> dict:
        """
        Send a USSD payment prompt to the customer's phone.

        Args:
            phone: Customer phone (+255..., 255... or 0...)
            amount_tzs: Amount to collect
            order_reference: Our order code, echoed back in the webhook

        Returns:
            Dict with success status and the provider response
        """
        token = cls._get_access_token()
        if not token:
            return {'success': False, 'error': 'Could not get access token'}

        payload = {
            'amount': str(int(amount_tzs)),
            'currency': 'TZS',
            'orderReference': order_reference,
            'phoneNumber': cls._msisdn(phone),
        }
        if settings.CLICKPESA_CHECKSUM_SECRET:
            payload['checksum'] = compute_checksum(payload, settings.CLICKPESA_CHECKSUM_SECRET)

        try:
            response = requests.post(
                f"{settings.CLICKPESA_BASE_URL}/payments/initiate-ussd-push-request",
                headers={'Authorization': token, 'Content-Type': 'application/json'},
                json=payload,
                timeout=30
            )
        except requests.RequestException as e:
            logger.error(f"[CLICKPESA] USSD push exception for {order_reference}: {e}")
            return {'success': False, 'error': str(e)}

        if response.ok:
            logger.info(f"[CLICKPESA] USSD push sent for {order_reference} ({amount_tzs} TZS)")
            try:
                data = response.json()
            except ValueError:
                data = {}
            return {'success': True, 'data': data}

        logger.error(f"[CLICKPESA] USSD push failed for {order_reference}: {response.status_code} - {response.text[:200]}")
        return {'success': False, 'error': f'HTTP {response.status_code}'}

    @classmethod
    def generate_checkout_url(cls, amount_tzs: int, order_reference: str, customer_name: str = '',
                              customer_phone: str = '') -> dict:
        """
        Create a hosted checkout page for an order (card and mobile money).

        Returns:
            Dict with success status and, on success, the checkout `url`
        """
        token = cls._get_access_token()
        if not token:
            return {'success': False, 'error': 'Could not get access token'}

        payload = {
            'totalPrice': str(int(amount_tzs)),
            'orderReference': order_reference,
            'orderCurrency': 'TZS',
            'customerName': customer_name or '',
            'customerEmail': '',
            'customerPhone': cls._msisdn(customer_phone) if customer_phone else '',
        }
        if settings.CLICKPESA_CHECKSUM_SECRET:
            payload['checksum'] = compute_checksum(payload, settings.CLICKPESA_CHECKSUM_SECRET)

        try:
            response = requests.post(
                f"{settings.CLICKPESA_BASE_URL}/checkout-link/generate-checkout-url",
                headers={'Authorization': token, 'Content-Type': 'application/json'},
                json=payload,
                timeout=30
            )
        except requests.RequestException as e:
            logger.error(f"[CLICKPESA] Checkout link exception for {order_reference}: {e}")
            return {'success': False, 'error': str(e)}

        if not response.ok:
            logger.error(f"[CLICKPESA] Checkout link failed for {order_reference}: {response.status_code} - {response.text[:200]}")
            return {'success': False, 'error': f'HTTP {response.status_code}'}

        try:
            data = response.json()
        except ValueError:
            data = {}
        url = (data.get('checkoutLink') or data.get('checkoutUrl')) if isinstance(data, dict) else None
        if not url:
            logger.error(f"[CLICKPESA] No checkout link in response for {order_reference}")
            return {'success': False, 'error': 'No checkout link in response'}

        logger.info(f"[CLICKPESA] Checkout link created for {order_reference} ({amount_tzs} TZS)")
        return {'success': True, 'url': url, 'data': data}

    @classmethod
    def query_payments(cls, order_reference: str) -> dict:
        """
        Payments ClickPesa holds for an order reference.

        Returns:
            Dict with success status and the list of payment records as `payments`
        """
        token = cls._get_access_token()
        if not token:
            return {'success': False, 'error': 'Could not get access token'}

        try:
            response = requests.get(
                f"{settings.CLICKPESA_BASE_URL}/payments/{quote(order_reference, safe='')}",
                headers={'Authorization': token},
                timeout=15
            )
        except requests.RequestException as e:
            logger.error(f"[CLICKPESA] Payment query exception for {order_reference}: {e}")
            return {'success': False, 'error': str(e)}

        if not response.ok:
            logger.error(f"[CLICKPESA] Payment query failed for {order_reference}: {response.status_code}")
            return {'success': False, 'error': f'HTTP {response.status_code}'}

        try:
            data = response.json()
        except ValueError:
            data = []
        if isinstance(data, dict):
            data = [data]
        payments = [p for p in data if isinstance(p, dict)] if isinstance(data, list) else []
        return {'success': True, 'payments': payments}
