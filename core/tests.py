"""
UJANI Core Tests
================

Tests for:
1. KeyedLockManager (per-key exclusion, independent keys, cleanup)
2. MemoryStore (session isolation, order codes, idempotent payment events)
3. Store selection and the health endpoint
"""

import threading
import time

from django.test import SimpleTestCase, override_settings
from django.utils import timezone

from core.locks import KeyedLockManager, customer_key, order_key
from core.models import FailureChannel
from core.persistence import MemoryStore, format_order_id, get_store
from finance.orders import Order, OrderItem, PaymentEvent, PaymentEvidence


def make_order(order_id='UJANI-2025-0001', customer_id='+255712345678', total=140000):
    return Order(
        order_id=order_id,
        customer_id=customer_id,
        items=(OrderItem('kiboko', 'Ujani Kiboko', total, 1),),
        total_tzs=total,
        fulfillment='pickup',
    )


class TestKeyedLockManager(SimpleTestCase):

    def test_key_helpers(self):
        self.assertEqual(customer_key('+255712345678'), 'customer:+255712345678')
        self.assertEqual(order_key('UJANI-2025-0001'), 'order:UJANI-2025-0001')

    def test_same_key_is_serialized(self):
        manager = KeyedLockManager()
        events = []
        first_inside = threading.Event()

        def first():
            with manager.hold('customer:1'):
                events.append('first-in')
                first_inside.set()
                time.sleep(0.05)
                events.append('first-out')

        def second():
            first_inside.wait(2)
            with manager.hold('customer:1'):
                events.append('second-in')

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(events, ['first-in', 'first-out', 'second-in'])

    def test_different_keys_do_not_wait(self):
        manager = KeyedLockManager()
        release = threading.Event()
        holding = threading.Event()
        other_done = threading.Event()

        def holder():
            with manager.hold('order:A'):
                holding.set()
                release.wait(2)

        def other():
            holding.wait(2)
            with manager.hold('order:B'):
                other_done.set()

        threads = [threading.Thread(target=holder), threading.Thread(target=other)]
        for thread in threads:
            thread.start()
        try:
            self.assertTrue(other_done.wait(2))
        finally:
            release.set()
            for thread in threads:
                thread.join(5)

    def test_entries_released_after_use(self):
        manager = KeyedLockManager()
        with manager.hold('customer:1'):
            self.assertEqual(manager.active_keys(), ['customer:1'])
            # Re-entrant for the same thread
            with manager.hold('customer:1'):
                pass
        self.assertEqual(manager.active_keys(), [])

    def test_released_on_exception(self):
        manager = KeyedLockManager()
        with self.assertRaises(RuntimeError):
            with manager.hold('customer:1'):
                raise RuntimeError("boom")
        self.assertEqual(manager.active_keys(), [])


class TestMemoryStore(SimpleTestCase):

    def setUp(self):
        self.store = MemoryStore()

    def test_sessions_are_copied_in_and_out(self):
        data = {'state': 'IDLE', 'cart': [{'product_id': 'kiboko'}]}
        self.store.save_session('+255712345678', data)
        data['cart'].append({'product_id': 'furaha'})

        loaded = self.store.load_session('+255712345678')
        self.assertEqual(len(loaded['cart']), 1)
        loaded['state'] = 'COLLECTING_CART'
        self.assertEqual(self.store.load_session('+255712345678')['state'], 'IDLE')

    def test_unknown_session(self):
        self.assertIsNone(self.store.load_session('+255700000000'))

    def test_order_codes_are_sequential(self):
        year = timezone.now().year
        self.assertEqual(self.store.next_order_id(), format_order_id(year, 1))
        self.assertEqual(self.store.next_order_id(), format_order_id(year, 2))

    @override_settings(ORDER_ID_PREFIX='UJANI')
    def test_order_code_format(self):
        self.assertEqual(format_order_id(2025, 7), 'UJANI-2025-0007')

    def test_create_and_list_orders(self):
        self.store.create_order(make_order('UJANI-2025-0001', '+255711111111'))
        self.store.create_order(make_order('UJANI-2025-0002', '+255722222222'))

        self.assertEqual(self.store.get_order('UJANI-2025-0001').customer_id, '+255711111111')
        self.assertIsNone(self.store.get_order('UJANI-2025-9999'))
        self.assertEqual(len(self.store.list_orders()), 2)
        self.assertEqual(
            [o.order_id for o in self.store.list_orders(customer_id='+255722222222')],
            ['UJANI-2025-0002']
        )

    def test_duplicate_order_rejected(self):
        self.store.create_order(make_order())
        with self.assertRaises(ValueError):
            self.store.create_order(make_order())

    def test_payment_events_counted_once(self):
        self.store.create_order(make_order())
        event = PaymentEvent(event_id='evt-1', order_id='UJANI-2025-0001', amount_tzs=50000)

        self.assertTrue(self.store.append_payment_event(event))
        self.assertFalse(self.store.append_payment_event(event))
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 50000)
        self.assertEqual(len(self.store.list_payment_events('UJANI-2025-0001')), 1)

    def test_evidence(self):
        self.store.create_order(make_order())
        self.store.attach_evidence(PaymentEvidence('UJANI-2025-0001', '+255712345678', text='QK72HD81JS'))
        evidence = self.store.list_evidence('UJANI-2025-0001')
        self.assertEqual([e.text for e in evidence], ['QK72HD81JS'])

    def test_delivery_failures_newest_first(self):
        self.store.record_delivery_failure(FailureChannel.WHATSAPP, '+255711111111', 'timeout')
        self.store.record_delivery_failure(FailureChannel.PSP, '+255722222222', 'HTTP 500', reference='UJANI-2025-0001')

        failures = self.store.list_delivery_failures()
        self.assertEqual([f['channel'] for f in failures], ['psp', 'whatsapp'])
        self.assertEqual(failures[0]['reference'], 'UJANI-2025-0001')
        self.assertEqual(len(self.store.list_delivery_failures(limit=1)), 1)


class TestStoreSelection(SimpleTestCase):

    @override_settings(UJANI_STORE_BACKEND='memory')
    def test_memory_backend_is_shared(self):
        self.assertIsInstance(get_store(), MemoryStore)
        self.assertIs(get_store(), get_store())

    @override_settings(UJANI_STORE_BACKEND='mongo')
    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            get_store()


class TestHealthCheck(SimpleTestCase):

    def test_liveness(self):
        response = self.client.get('/health/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'ok')

    def test_post_not_allowed(self):
        response = self.client.post('/health/')
        self.assertEqual(response.status_code, 405)
