"""
Orders & payment records for UJANI

An Order is created once from a customer's cart and never changes afterwards;
its payment status is derived from the ledger (see finance.ledger).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from logistics.services.pricing import DeliveryQuote

logger = logging.getLogger(__name__)


class Fulfillment:
    PICKUP = 'pickup'
    DELIVERY = 'delivery'


class PaymentMethod:
    MANUAL = 'manual'
    USSD = 'ussd'
    CHECKOUT = 'checkout'


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    title: str
    unit_price_tzs: int
    quantity: int

    @property
    def line_total_tzs(self) -> int:
        return self.unit_price_tzs * self.quantity

    def to_dict(self) -> dict:
        return {
            'product_id': self.product_id,
            'title': self.title,
            'unit_price_tzs': self.unit_price_tzs,
            'quantity': self.quantity,
        }


@dataclass(frozen=True)
class Order:
    order_id: str
    customer_id: str
    items: Tuple[OrderItem, ...]
    total_tzs: int
    fulfillment: str
    customer_name: str = ''
    contact_phone: str = ''
    language: str = 'sw'
    delivery_quote: Optional[DeliveryQuote] = None
    created_at: datetime = field(default_factory=timezone.now)

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'customer_id': self.customer_id,
            'items': [item.to_dict() for item in self.items],
            'total_tzs': self.total_tzs,
            'fulfillment': self.fulfillment,
            'customer_name': self.customer_name,
            'contact_phone': self.contact_phone,
            'language': self.language,
            'delivery_quote': self.delivery_quote.to_dict() if self.delivery_quote else None,
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PaymentEvent:
    """
    One payment against an order. `event_id` is the idempotency key:
    the PSP payment id, or a generated id for manual entries.
    """
    event_id: str
    order_id: str
    amount_tzs: int
    method: str = PaymentMethod.MANUAL
    reference: str = ''
    received_at: datetime = field(default_factory=timezone.now)

    def to_dict(self) -> dict:
        return {
            'event_id': self.event_id,
            'order_id': self.order_id,
            'amount_tzs': self.amount_tzs,
            'method': self.method,
            'reference': self.reference,
            'received_at': self.received_at.isoformat(),
        }


@dataclass(frozen=True)
class PaymentEvidence:
    """Transaction message or screenshot sent by the customer. Never changes the ledger."""
    order_id: str
    customer_id: str
    text: str = ''
    media_id: str = ''
    caption: str = ''
    received_at: datetime = field(default_factory=timezone.now)

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'customer_id': self.customer_id,
            'text': self.text,
            'media_id': self.media_id,
            'caption': self.caption,
            'received_at': self.received_at.isoformat(),
        }


def normalize_order_id(text: str) -> str:
    """
    Order code as typed by a customer, matched case-insensitively.

    Ex: ' ujani-2025-0001 ' -> 'UJANI-2025-0001' (prefix in its configured case)
    """
    code = (text or '').strip().upper()
    prefix = settings.ORDER_ID_PREFIX
    if code.startswith(prefix.upper() + '-'):
        return prefix + code[len(prefix):]
    return code


class OrderAggregator:
    """
    Turns a session's cart into an immutable Order.

    Line items are copied, so later cart edits never reach the order.
    """

    def __init__(self, store=None):
        if store is None:
            from core.persistence import get_store
            store = get_store()
        self.store = store

    @staticmethod
    def build_items(cart: Iterable) -> Tuple[OrderItem, ...]:
        items = []
        for line in cart:
            quantity = int(line.quantity)
            unit_price = int(line.unit_price_tzs)
            if quantity < 1:
                raise ValueError(f"Invalid quantity {quantity} for {line.product_id}")
            if unit_price < 0:
                raise ValueError(f"Invalid price {unit_price} for {line.product_id}")
            items.append(OrderItem(
                product_id=line.product_id,
                title=line.title,
                unit_price_tzs=unit_price,
                quantity=quantity,
            ))
        return tuple(items)

    def create_order(self, customer_id: str, cart: Iterable, fulfillment: str,
                     customer_name: str = '', contact_phone: str = '', language: str = 'sw',
                     quote: DeliveryQuote = None) -> Order:
        """
        Create and persist an order.

        Raises:
            ValueError: empty cart, bad line, or a delivery order without a quote
        """
        items = self.build_items(cart)
        if not items:
            raise ValueError("Cannot create an order from an empty cart")
        if fulfillment not in (Fulfillment.PICKUP, Fulfillment.DELIVERY):
            raise ValueError(f"Unknown fulfillment '{fulfillment}'")
        if fulfillment == Fulfillment.DELIVERY and quote is None:
            raise ValueError("Delivery orders need a delivery quote")

        order = Order(
            order_id=self.store.next_order_id(),
            customer_id=customer_id,
            items=items,
            total_tzs=sum(item.line_total_tzs for item in items),
            fulfillment=fulfillment,
            customer_name=customer_name,
            contact_phone=contact_phone,
            language=language,
            delivery_quote=quote if fulfillment == Fulfillment.DELIVERY else None,
        )
        self.store.create_order(order)
        logger.info(
            f"[ORDER] {order.order_id} created for {customer_id}: "
            f"{len(items)} item(s), {order.total_tzs} TZS, {fulfillment}"
        )
        return order
