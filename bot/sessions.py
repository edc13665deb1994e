"""
BOT App - Conversation sessions for UJANI

One Session per customer (normalized WhatsApp id). The checkout in progress is
a tagged union: each stage record is only valid in the state named by its
STATE attribute, and carries only the fields collected so far.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Union

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from logistics.services.pricing import DeliveryQuote

logger = logging.getLogger(__name__)


class BotState(str, Enum):
    """Conversation state enumeration for the WhatsApp bot."""
    IDLE = 'IDLE'
    COLLECTING_CART = 'COLLECTING_CART'
    ASK_FULFILLMENT = 'ASK_FULFILLMENT'
    ASK_PICKUP_PHONE = 'ASK_PICKUP_PHONE'
    ASK_DELIVERY_LOCATION = 'ASK_DELIVERY_LOCATION'
    ASK_DELIVERY_CONFIRM = 'ASK_DELIVERY_CONFIRM'
    ASK_CUSTOMER_NAME = 'ASK_CUSTOMER_NAME'
    SHOW_QUOTE_AND_PAYMENT_OPTIONS = 'SHOW_QUOTE_AND_PAYMENT_OPTIONS'
    WAIT_PAYMENT_PROOF = 'WAIT_PAYMENT_PROOF'
    ASK_AGENT_HANDOFF = 'ASK_AGENT_HANDOFF'
    TRACK_ORDER_BY_ID = 'TRACK_ORDER_BY_ID'


# ===========================================
# PHONE NUMBERS
# ===========================================

_TZ_MOBILE = re.compile(r'^(?:\+?255|0)([67]\d{8})$')


def normalize_tz_phone(raw: str) -> Optional[str]:
    """
    Tanzanian mobile number in +255 form, or None.
    Ex: '0712 345 678' -> '+255712345678', '255612345678' -> '+255612345678'
    """
    compact = re.sub(r'[\s\-()]', '', raw or '')
    match = _TZ_MOBILE.match(compact)
    return f"+255{match.group(1)}" if match else None


def normalize_customer_id(wa_id: str) -> str:
    """WhatsApp ids arrive as digits ('255712345678'); sessions are keyed '+255712345678'."""
    digits = ''.join(filter(str.isdigit, wa_id or ''))
    if digits.startswith('0') and len(digits) == 10:
        digits = '255' + digits[1:]
    return f"+{digits}" if digits else ''


# ===========================================
# SESSION PARTS
# ===========================================

@dataclass
class CartItem:
    product_id: str
    title: str
    unit_price_tzs: int
    quantity: int = 1

    @property
    def line_total_tzs(self) -> int:
        return self.unit_price_tzs * self.quantity


@dataclass
class SelectionCursor:
    """Where the customer is in the district -> ward -> street menus."""
    district: str = ''
    ward: str = ''
    page: int = 0


@dataclass(frozen=True)
class GpsPin:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class DeliveryLocation:
    district: str = ''
    ward: str = ''
    street: str = ''
    gps: Optional[GpsPin] = None
    outside_dar: bool = False

    def to_dict(self) -> dict:
        return {
            'district': self.district,
            'ward': self.ward,
            'street': self.street,
            'gps': [self.gps.latitude, self.gps.longitude] if self.gps else None,
            'outside_dar': self.outside_dar,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['DeliveryLocation']:
        if not data:
            return None
        gps = data.get('gps')
        return cls(
            district=data.get('district', ''),
            ward=data.get('ward', ''),
            street=data.get('street', ''),
            gps=GpsPin(float(gps[0]), float(gps[1])) if gps else None,
            outside_dar=bool(data.get('outside_dar', False)),
        )


# ===========================================
# CHECKOUT STAGES
# ===========================================

@dataclass(frozen=True)
class FulfillmentChoice:
    STATE = BotState.ASK_FULFILLMENT

    def to_dict(self) -> dict:
        return {}

    @classmethod
    def from_dict(cls, data: dict) -> 'FulfillmentChoice':
        return cls()


@dataclass(frozen=True)
class PickupContact:
    STATE = BotState.ASK_PICKUP_PHONE

    def to_dict(self) -> dict:
        return {}

    @classmethod
    def from_dict(cls, data: dict) -> 'PickupContact':
        return cls()


@dataclass(frozen=True)
class LocationEntry:
    STATE = BotState.ASK_DELIVERY_LOCATION

    def to_dict(self) -> dict:
        return {}

    @classmethod
    def from_dict(cls, data: dict) -> 'LocationEntry':
        return cls()


@dataclass(frozen=True)
class LocationConfirm:
    STATE = BotState.ASK_DELIVERY_CONFIRM
    location: DeliveryLocation

    def to_dict(self) -> dict:
        return {'location': self.location.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> 'LocationConfirm':
        return cls(location=DeliveryLocation.from_dict(data['location']))


@dataclass(frozen=True)
class NameEntry:
    STATE = BotState.ASK_CUSTOMER_NAME
    fulfillment: str
    contact_phone: str
    location: Optional[DeliveryLocation] = None

    def to_dict(self) -> dict:
        return {
            'fulfillment': self.fulfillment,
            'contact_phone': self.contact_phone,
            'location': self.location.to_dict() if self.location else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'NameEntry':
        return cls(
            fulfillment=data['fulfillment'],
            contact_phone=data['contact_phone'],
            location=DeliveryLocation.from_dict(data.get('location')),
        )


@dataclass(frozen=True)
class QuoteShown:
    """Quote is computed once, on entry, and reused for the rest of the checkout."""
    STATE = BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS
    fulfillment: str
    customer_name: str
    contact_phone: str
    location: Optional[DeliveryLocation] = None
    quote: Optional[DeliveryQuote] = None
    order_id: str = ''

    def to_dict(self) -> dict:
        return {
            'fulfillment': self.fulfillment,
            'customer_name': self.customer_name,
            'contact_phone': self.contact_phone,
            'location': self.location.to_dict() if self.location else None,
            'quote': self.quote.to_dict() if self.quote else None,
            'order_id': self.order_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'QuoteShown':
        return cls(
            fulfillment=data['fulfillment'],
            customer_name=data['customer_name'],
            contact_phone=data['contact_phone'],
            location=DeliveryLocation.from_dict(data.get('location')),
            quote=DeliveryQuote.from_dict(data.get('quote')),
            order_id=data.get('order_id', ''),
        )


@dataclass(frozen=True)
class ProofPending:
    STATE = BotState.WAIT_PAYMENT_PROOF
    order_id: str
    payment_option: str
    quote_view: QuoteShown

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'payment_option': self.payment_option,
            'quote_view': self.quote_view.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ProofPending':
        return cls(
            order_id=data['order_id'],
            payment_option=data['payment_option'],
            quote_view=QuoteShown.from_dict(data['quote_view']),
        )


Checkout = Union[FulfillmentChoice, PickupContact, LocationEntry, LocationConfirm,
                 NameEntry, QuoteShown, ProofPending]

CHECKOUT_STAGES = {
    cls.__name__: cls
    for cls in (FulfillmentChoice, PickupContact, LocationEntry, LocationConfirm,
                NameEntry, QuoteShown, ProofPending)
}

STATES_WITHOUT_CHECKOUT = {
    BotState.IDLE,
    BotState.COLLECTING_CART,
    BotState.ASK_AGENT_HANDOFF,
    BotState.TRACK_ORDER_BY_ID,
}


# ===========================================
# SESSION
# ===========================================

@dataclass
class Session:
    customer_id: str
    state: BotState = BotState.IDLE
    language: str = 'sw'
    cart: List[CartItem] = field(default_factory=list)
    checkout: Optional[Checkout] = None
    cursor: SelectionCursor = field(default_factory=SelectionCursor)
    last_pin: Optional[GpsPin] = None
    last_order_id: str = ''
    updated_at: datetime = field(default_factory=timezone.now)

    def transition(self, state: BotState, checkout: Checkout = None) -> None:
        """
        Move to `state`. The checkout record must be the one bound to that state,
        or None for states that have no checkout in progress.
        """
        if checkout is None:
            if state not in STATES_WITHOUT_CHECKOUT:
                raise ValueError(f"{state.value} needs a checkout record")
        elif checkout.STATE != state:
            raise ValueError(f"{type(checkout).__name__} is not valid in {state.value}")
        if state != BotState.ASK_DELIVERY_LOCATION:
            self.cursor = SelectionCursor()
        self.state = state
        self.checkout = checkout

    def reset(self) -> None:
        """Back to IDLE; the cart survives."""
        self.transition(BotState.IDLE)

    # Cart

    def add_to_cart(self, product_id: str, title: str, unit_price_tzs: int, quantity: int = 1) -> CartItem:
        quantity = max(1, int(quantity))
        for item in self.cart:
            if item.product_id == product_id:
                item.quantity += quantity
                item.unit_price_tzs = unit_price_tzs
                item.title = title
                return item
        item = CartItem(product_id=product_id, title=title, unit_price_tzs=unit_price_tzs, quantity=quantity)
        self.cart.append(item)
        return item

    @property
    def cart_total_tzs(self) -> int:
        return sum(item.line_total_tzs for item in self.cart)

    def clear_cart(self) -> None:
        self.cart = []

    # Serialization

    def to_dict(self) -> dict:
        return {
            'customer_id': self.customer_id,
            'state': self.state.value,
            'language': self.language,
            'cart': [
                {
                    'product_id': item.product_id,
                    'title': item.title,
                    'unit_price_tzs': item.unit_price_tzs,
                    'quantity': item.quantity,
                }
                for item in self.cart
            ],
            'checkout': (
                {'stage': type(self.checkout).__name__, **self.checkout.to_dict()}
                if self.checkout else None
            ),
            'cursor': {
                'district': self.cursor.district,
                'ward': self.cursor.ward,
                'page': self.cursor.page,
            },
            'last_pin': [self.last_pin.latitude, self.last_pin.longitude] if self.last_pin else None,
            'last_order_id': self.last_order_id,
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Session':
        pin = data.get('last_pin')
        session = cls(
            customer_id=data['customer_id'],
            language=data.get('language') or 'sw',
            cart=[CartItem(**item) for item in data.get('cart', [])],
            cursor=SelectionCursor(**(data.get('cursor') or {})),
            last_pin=GpsPin(float(pin[0]), float(pin[1])) if pin else None,
            last_order_id=data.get('last_order_id', ''),
            updated_at=parse_datetime(data['updated_at']) if data.get('updated_at') else timezone.now(),
        )

        try:
            state = BotState(data.get('state', BotState.IDLE.value))
        except ValueError:
            state = BotState.IDLE

        checkout = None
        raw_checkout = data.get('checkout')
        if raw_checkout:
            stage = CHECKOUT_STAGES.get(raw_checkout.get('stage'))
            try:
                checkout = stage.from_dict(raw_checkout) if stage else None
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[SESSION] Dropping unreadable checkout for {session.customer_id}: {e}")

        session.state = state
        session.checkout = checkout
        if (checkout is None and state not in STATES_WITHOUT_CHECKOUT) or (
                checkout is not None and checkout.STATE != state):
            logger.warning(f"[SESSION] Inconsistent stored session for {session.customer_id}, back to IDLE")
            session.state, session.checkout = BotState.IDLE, None
        return session


class SessionStore:
    """
    Loads and saves sessions through the persistence Store.

    A session idle for longer than SESSION_TTL_MINUTES comes back fresh
    (the language preference is kept).
    """

    def __init__(self, store=None, ttl_minutes: int = None):
        if store is None:
            from core.persistence import get_store
            store = get_store()
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.SESSION_TTL_MINUTES)

    def get(self, customer_id: str) -> Session:
        data = self.store.load_session(customer_id)
        if not data:
            return Session(customer_id=customer_id)

        session = Session.from_dict(data)
        if timezone.now() - session.updated_at > self.ttl:
            logger.info(f"[SESSION] {customer_id} idle since {session.updated_at.isoformat()}, starting fresh")
            return Session(customer_id=customer_id, language=session.language)
        return session

    def save(self, session: Session) -> None:
        session.updated_at = timezone.now()
        self.store.save_session(session.customer_id, session.to_dict())
