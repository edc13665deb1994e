"""
Payment Ledger for UJANI

Accumulates payment events per order. Events may arrive late, partially,
out of order or more than once (PSP retries, admin re-entry); an event id is
only ever counted once, and the status is recomputed from the stored events
on every apply.
"""

import logging
from dataclasses import asdict, dataclass

from core.locks import locks, order_key
from finance.models import PaymentStatus
from finance.orders import Order, PaymentEvent

logger = logging.getLogger(__name__)


class OrderNotFound(Exception):
    """Payment or lookup for an order code that does not exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


def derive_status(paid_tzs: int, total_tzs: int) -> str:
    if paid_tzs <= 0:
        return PaymentStatus.AWAITING
    if paid_tzs < total_tzs:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PAID


@dataclass(frozen=True)
class LedgerSnapshot:
    order_id: str
    total_tzs: int
    paid_tzs: int
    status: str
    applied: bool = False

    @property
    def balance_tzs(self) -> int:
        return max(0, self.total_tzs - self.paid_tzs)

    @property
    def excess_tzs(self) -> int:
        """Overpayment, kept visible for manual refund."""
        return max(0, self.paid_tzs - self.total_tzs)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['status'] = str(self.status)
        data['balance_tzs'] = self.balance_tzs
        data['excess_tzs'] = self.excess_tzs
        return data


class PaymentLedger:
    """
    Service class for ledger operations.

    Writes for one order are serialized under the "order:<id>" lock.
    """

    def __init__(self, store=None, lock_manager=None):
        if store is None:
            from core.persistence import get_store
            store = get_store()
        self.store = store
        self.locks = lock_manager or locks

    def apply(self, event: PaymentEvent) -> LedgerSnapshot:
        """
        Apply a payment event.

        Returns:
            LedgerSnapshot after the event; `applied` is False for a replay

        Raises:
            ValueError: amount is not positive
            OrderNotFound: unknown order code
        """
        if int(event.amount_tzs) <= 0:
            raise ValueError(f"Payment amount must be positive, got {event.amount_tzs}")

        with self.locks.hold(order_key(event.order_id)):
            order = self._get_order(event.order_id)
            applied = self.store.append_payment_event(event)
            snapshot = self._snapshot(order, applied)

        if applied:
            logger.info(
                f"[LEDGER] {event.order_id} +{event.amount_tzs} TZS ({event.method}, {event.event_id}) "
                f"-> {snapshot.paid_tzs}/{snapshot.total_tzs} {snapshot.status}"
            )
            if snapshot.excess_tzs:
                logger.warning(f"[LEDGER] {event.order_id} overpaid by {snapshot.excess_tzs} TZS")
        else:
            logger.info(f"[LEDGER] Duplicate event {event.event_id} for {event.order_id} ignored")
        return snapshot

    def snapshot(self, order_id: str) -> LedgerSnapshot:
        return self._snapshot(self._get_order(order_id))

    def _get_order(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _snapshot(self, order: Order, applied: bool = False) -> LedgerSnapshot:
        paid = self.store.get_paid_so_far(order.order_id)
        return LedgerSnapshot(
            order_id=order.order_id,
            total_tzs=order.total_tzs,
            paid_tzs=paid,
            status=derive_status(paid, order.total_tzs),
            applied=applied,
        )
