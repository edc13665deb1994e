"""
BOT App - Meta WhatsApp Cloud API integration for UJANI

- Outbound sends (text, interactive list, reply buttons)
- Inbound webhook normalization
- X-Hub-Signature-256 verification
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class WhatsAppSendError(Exception):
    """Raised when the Cloud API rejects or cannot receive a message."""


# ===========================================
# SIGNATURE
# ===========================================

def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the X-Hub-Signature-256 header against the exact raw request body.

    The header looks like "sha256=<hexdigest>"; the prefix is optional.
    Any missing input is a failed verification, never an exception.
    """
    if not raw_body or not signature_header or not secret:
        return False

    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')

    received = signature_header.strip()
    if received.lower().startswith('sha256='):
        received = received[len('sha256='):]

    expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode('ascii'), received.lower().encode('utf-8'))


# ===========================================
# INBOUND
# ===========================================

@dataclass(frozen=True)
class InboundMessage:
    """One customer message, normalized from the Meta envelope."""
    message_id: str
    sender: str
    kind: str  # text | interactive | location | image | other
    text: str = ''
    reply_id: str = ''
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    media_id: str = ''
    caption: str = ''
    profile_name: str = ''

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_message(message: Dict, contacts: Dict[str, str]) -> Optional[InboundMessage]:
    sender = str(message.get('from') or '').strip()
    message_id = str(message.get('id') or '').strip()
    if not sender or not message_id:
        return None

    msg_type = message.get('type', 'text')
    fields = {'message_id': message_id, 'sender': sender, 'profile_name': contacts.get(sender, '')}

    if msg_type == 'text':
        return InboundMessage(kind='text', text=(message.get('text') or {}).get('body', ''), **fields)

    if msg_type == 'interactive':
        interactive = message.get('interactive') or {}
        reply = interactive.get('button_reply') or interactive.get('list_reply') or {}
        return InboundMessage(kind='interactive', reply_id=reply.get('id', ''), text=reply.get('title', ''),
                              **fields)

    if msg_type == 'button':
        # Template quick-reply buttons
        button = message.get('button') or {}
        return InboundMessage(kind='interactive', reply_id=button.get('payload', ''), text=button.get('text', ''),
                              **fields)

    if msg_type == 'location':
        location = message.get('location') or {}
        return InboundMessage(
            kind='location',
            latitude=_to_float(location.get('latitude')),
            longitude=_to_float(location.get('longitude')),
            text=location.get('name') or location.get('address') or '',
            **fields
        )

    if msg_type in ('image', 'document'):
        media = message.get(msg_type) or {}
        return InboundMessage(kind='image', media_id=media.get('id', ''), caption=media.get('caption', ''),
                              **fields)

    return InboundMessage(kind='other', **fields)


def parse_incoming_data(request_data: Dict) -> List[InboundMessage]:
    """
    Parse a Meta webhook envelope.

    {"object": "whatsapp_business_account",
     "entry": [{"changes": [{"value": {"contacts": [...], "messages": [...]}}]}]}

    Status-only envelopes (delivery receipts) yield an empty list.
    """
    parsed = []
    if not isinstance(request_data, dict):
        return parsed

    for entry in request_data.get('entry') or []:
        for change in (entry or {}).get('changes') or []:
            value = (change or {}).get('value') or {}
            contacts = {
                c.get('wa_id', ''): (c.get('profile') or {}).get('name', '')
                for c in value.get('contacts') or [] if isinstance(c, dict)
            }
            for message in value.get('messages') or []:
                if not isinstance(message, dict):
                    continue
                inbound = _parse_message(message, contacts)
                if inbound is not None:
                    parsed.append(inbound)

    if parsed:
        logger.info(f"[META] Parsed {len(parsed)} message(s): "
                    + ', '.join(f"{m.sender}/{m.kind}" for m in parsed))
    return parsed


# ===========================================
# OUTBOUND
# ===========================================

class MetaWhatsAppService:
    """
    Meta WhatsApp Cloud API client.

    Takes OutboundMessage intents from bot.messages and posts their payloads.
    """

    TIMEOUT_SECONDS = 30

    @classmethod
    def is_configured(cls) -> bool:
        return bool(settings.META_PHONE_NUMBER_ID and settings.META_API_TOKEN)

    @classmethod
    def send(cls, message) -> str:
        """
        Send one message.

        Returns:
            The WhatsApp message id

        Raises:
            WhatsAppSendError: missing credentials or API/network failure
        """
        if not cls.is_configured():
            raise WhatsAppSendError("Missing META_PHONE_NUMBER_ID or META_API_TOKEN")

        url = f"{settings.META_API_URL}/{settings.META_PHONE_NUMBER_ID}/messages"
        headers = {
            "Authorization": f"Bearer {settings.META_API_TOKEN}",
            "Content-Type": "application/json"
        }

        try:
            response = requests.post(url, headers=headers, json=message.to_payload(), timeout=cls.TIMEOUT_SECONDS)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"[META] Failed to send {message.kind} to {message.to}: {e}")
            raise WhatsAppSendError(str(e)) from e

        message_id = (data.get('messages') or [{}])[0].get('id', '')
        logger.info(f"[META] Message sent: ID={message_id} to={message.to} kind={message.kind}")
        return message_id
