"""
Persistence interface for UJANI
===============================

Every read and write of sessions, orders, payment events, payment evidence
and delivery failures goes through a Store. Two implementations:

- MemoryStore: process-local; everything is lost on restart.
- DjangoStore: ORM tables (bot.ConversationSession, finance.*, core.DeliveryFailure).

Selected with settings.UJANI_STORE_BACKEND ('memory' | 'django').
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from bot.models import ConversationSession
from core.models import DeliveryFailure
from finance.models import (
    OrderItemRecord, OrderRecord, OrderSequence, PaymentEventRecord, PaymentEvidenceRecord,
)
from finance.orders import Order, PaymentEvent, PaymentEvidence

logger = logging.getLogger(__name__)


def format_order_id(year: int, sequence: int) -> str:
    """Ex: UJANI-2025-0007"""
    return f"{settings.ORDER_ID_PREFIX}-{year}-{sequence:04d}"


class Store(ABC):
    """
    Sessions cross this boundary as plain dicts: a loaded session is a
    private copy and never aliases another caller's record.
    """

    # Sessions
    @abstractmethod
    def load_session(self, customer_id: str) -> Optional[dict]: ...

    @abstractmethod
    def save_session(self, customer_id: str, data: dict) -> None: ...

    # Orders
    @abstractmethod
    def next_order_id(self) -> str: ...

    @abstractmethod
    def create_order(self, order: Order) -> Order: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def list_orders(self, customer_id: str = None) -> List[Order]: ...

    # Ledger
    @abstractmethod
    def append_payment_event(self, event: PaymentEvent) -> bool:
        """Store the event; False if its id was already recorded."""

    @abstractmethod
    def get_paid_so_far(self, order_id: str) -> int: ...

    @abstractmethod
    def list_payment_events(self, order_id: str) -> List[PaymentEvent]: ...

    # Evidence
    @abstractmethod
    def attach_evidence(self, evidence: PaymentEvidence) -> None: ...

    @abstractmethod
    def list_evidence(self, order_id: str) -> List[PaymentEvidence]: ...

    # Failures
    @abstractmethod
    def record_delivery_failure(self, channel: str, recipient: str, error: str,
                                reference: str = '') -> dict: ...

    @abstractmethod
    def list_delivery_failures(self, limit: int = 50) -> List[dict]: ...


class MemoryStore(Store):
    """Dict-backed store guarded by a single lock for the maps themselves."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}
        self._orders = {}
        self._sequences = {}
        self._events = {}
        self._event_ids = set()
        self._evidence = {}
        self._failures = []

    def load_session(self, customer_id):
        with self._lock:
            data = self._sessions.get(customer_id)
            return copy.deepcopy(data) if data is not None else None

    def save_session(self, customer_id, data):
        with self._lock:
            self._sessions[customer_id] = copy.deepcopy(data)

    def next_order_id(self):
        year = timezone.now().year
        with self._lock:
            self._sequences[year] = self._sequences.get(year, 0) + 1
            return format_order_id(year, self._sequences[year])

    def create_order(self, order):
        with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order
        return order

    def get_order(self, order_id):
        with self._lock:
            return self._orders.get(order_id)

    def list_orders(self, customer_id=None):
        with self._lock:
            orders = list(self._orders.values())
        if customer_id:
            orders = [o for o in orders if o.customer_id == customer_id]
        return sorted(orders, key=lambda o: (o.created_at, o.order_id), reverse=True)

    def append_payment_event(self, event):
        with self._lock:
            if event.event_id in self._event_ids:
                return False
            self._event_ids.add(event.event_id)
            self._events.setdefault(event.order_id, []).append(event)
            return True

    def get_paid_so_far(self, order_id):
        with self._lock:
            total = sum(e.amount_tzs for e in self._events.get(order_id, []))
        return max(0, total)

    def list_payment_events(self, order_id):
        with self._lock:
            return list(self._events.get(order_id, []))

    def attach_evidence(self, evidence):
        with self._lock:
            self._evidence.setdefault(evidence.order_id, []).append(evidence)

    def list_evidence(self, order_id):
        with self._lock:
            return list(self._evidence.get(order_id, []))

    def record_delivery_failure(self, channel, recipient, error, reference=''):
        with self._lock:
            failure = {
                'id': len(self._failures) + 1,
                'channel': str(channel),
                'recipient': recipient,
                'reference': reference,
                'error': error,
                'created_at': timezone.now().isoformat(),
            }
            self._failures.append(failure)
            return dict(failure)

    def list_delivery_failures(self, limit=50):
        with self._lock:
            return [dict(f) for f in reversed(self._failures[-limit:])]


class DjangoStore(Store):
    """ORM-backed store. Ledger writes rely on the unique event_id column."""

    def load_session(self, customer_id):
        row = ConversationSession.objects.filter(customer_id=customer_id).first()
        return row.data if row else None

    def save_session(self, customer_id, data):
        ConversationSession.objects.update_or_create(
            customer_id=customer_id, defaults={'data': copy.deepcopy(data)}
        )

    def next_order_id(self):
        year = timezone.now().year
        return format_order_id(year, OrderSequence.next_value(year))

    @transaction.atomic
    def create_order(self, order):
        record = OrderRecord.objects.create(
            order_id=order.order_id,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            contact_phone=order.contact_phone,
            language=order.language,
            total_tzs=order.total_tzs,
            fulfillment=order.fulfillment,
            delivery_quote=order.delivery_quote.to_dict() if order.delivery_quote else None,
            created_at=order.created_at,
        )
        OrderItemRecord.objects.bulk_create([
            OrderItemRecord(
                order=record,
                position=position,
                product_id=item.product_id,
                title=item.title,
                unit_price_tzs=item.unit_price_tzs,
                quantity=item.quantity,
            )
            for position, item in enumerate(order.items)
        ])
        return order

    def get_order(self, order_id):
        record = OrderRecord.objects.filter(order_id=order_id).first()
        return record.to_domain() if record else None

    def list_orders(self, customer_id=None):
        records = OrderRecord.objects.prefetch_related('items')
        if customer_id:
            records = records.filter(customer_id=customer_id)
        return [record.to_domain() for record in records]

    def append_payment_event(self, event):
        record = OrderRecord.objects.filter(order_id=event.order_id).first()
        if record is None:
            raise ValueError(f"Order {event.order_id} does not exist")
        if PaymentEventRecord.objects.filter(event_id=event.event_id).exists():
            return False
        try:
            with transaction.atomic():
                PaymentEventRecord.objects.create(
                    event_id=event.event_id,
                    order=record,
                    amount_tzs=event.amount_tzs,
                    method=event.method,
                    reference=event.reference,
                    received_at=event.received_at,
                )
        except IntegrityError:
            # Concurrent insert of the same event id
            return False
        return True

    def get_paid_so_far(self, order_id):
        total = PaymentEventRecord.objects.filter(order__order_id=order_id).aggregate(
            total=Sum('amount_tzs')
        )['total']
        return max(0, total or 0)

    def list_payment_events(self, order_id):
        return [
            record.to_domain()
            for record in PaymentEventRecord.objects.filter(order__order_id=order_id).select_related('order')
        ]

    def attach_evidence(self, evidence):
        record = OrderRecord.objects.filter(order_id=evidence.order_id).first()
        if record is None:
            raise ValueError(f"Order {evidence.order_id} does not exist")
        PaymentEvidenceRecord.objects.create(
            order=record,
            customer_id=evidence.customer_id,
            text=evidence.text,
            media_id=evidence.media_id,
            caption=evidence.caption,
            received_at=evidence.received_at,
        )

    def list_evidence(self, order_id):
        return [
            record.to_domain()
            for record in PaymentEvidenceRecord.objects.filter(order__order_id=order_id).select_related('order')
        ]

    def record_delivery_failure(self, channel, recipient, error, reference=''):
        failure = DeliveryFailure.objects.create(
            channel=channel,
            recipient=recipient or '',
            reference=reference or '',
            error=str(error),
        )
        return failure.to_dict()

    def list_delivery_failures(self, limit=50):
        return [failure.to_dict() for failure in DeliveryFailure.objects.all()[:limit]]


STORE_BACKENDS = {
    'memory': MemoryStore,
    'django': DjangoStore,
}

_stores = {}
_stores_lock = threading.Lock()


def get_store() -> Store:
    """Process-wide store for the configured backend."""
    backend = settings.UJANI_STORE_BACKEND
    with _stores_lock:
        if backend not in _stores:
            if backend not in STORE_BACKENDS:
                raise ValueError(f"Unknown UJANI_STORE_BACKEND '{backend}'")
            _stores[backend] = STORE_BACKENDS[backend]()
            logger.info(f"[STORE] Using {STORE_BACKENDS[backend].__name__}")
        return _stores[backend]
