"""
UJANI Finance Tests
===================

Tests for:
1. OrderAggregator (cart -> immutable order)
2. PaymentLedger (idempotent events, derived status, overpayment)
3. ClickPesa checksum, client, webhook and hosted checkout return
4. Admin API (orders, manual reconciliation, delivery failures)
5. DjangoStore persistence
6. USSD push and checkout link tasks
"""

import hashlib
import hmac
import json
import threading
from unittest.mock import Mock, patch

from django.contrib.auth.models import User
from django.core.cache import cache
from django.test import SimpleTestCase, TestCase, override_settings

from bot.sessions import CartItem
from core import persistence
from core.locks import KeyedLockManager
from core.models import DeliveryFailure, FailureChannel
from core.persistence import DjangoStore, MemoryStore
from finance.clickpesa_service import ClickPesaService, compute_checksum, verify_webhook
from finance.ledger import OrderNotFound, PaymentLedger, derive_status
from finance.models import OrderRecord, PaymentStatus
from finance.orders import (
    Fulfillment, Order, OrderAggregator, OrderItem, PaymentEvent, PaymentEvidence, normalize_order_id,
)
from finance.tasks import request_ussd_push, send_checkout_link
from logistics.services.pricing import DeliveryQuote

CUSTOMER = '+255712345678'


def make_order(order_id='UJANI-2025-0001', total=140000, customer_id=CUSTOMER):
    return Order(
        order_id=order_id,
        customer_id=customer_id,
        items=(OrderItem('kiboko', 'Ujani Kiboko', total, 1),),
        total_tzs=total,
        fulfillment=Fulfillment.PICKUP,
        customer_name='Asha Juma',
        contact_phone=CUSTOMER,
    )


# ===========================================
# ORDERS
# ===========================================

class TestOrderAggregator(SimpleTestCase):

    def setUp(self):
        self.store = MemoryStore()
        self.aggregator = OrderAggregator(store=self.store)

    def test_total_is_sum_of_lines(self):
        cart = [CartItem('sabuni', 'Sabuni', 1500, 2), CartItem('mafuta', 'Mafuta', 1500, 1)]
        order = self.aggregator.create_order(CUSTOMER, cart, Fulfillment.PICKUP, customer_name='Asha')

        self.assertEqual(order.total_tzs, 4500)
        self.assertEqual(self.store.get_order(order.order_id), order)
        self.assertEqual([(i.product_id, i.quantity) for i in order.items], [('sabuni', 2), ('mafuta', 1)])

    def test_later_cart_edits_do_not_reach_order(self):
        cart = [CartItem('kiboko', 'Kiboko', 140000, 1)]
        order = self.aggregator.create_order(CUSTOMER, cart, Fulfillment.PICKUP)
        cart[0].quantity = 5
        cart.append(CartItem('furaha', 'Furaha', 110000, 1))

        stored = self.store.get_order(order.order_id)
        self.assertEqual(stored.total_tzs, 140000)
        self.assertEqual(len(stored.items), 1)

    def test_delivery_order_keeps_quote(self):
        quote = DeliveryQuote(source='exactStreet', distance_km=6.2, fee_tzs=6000)
        order = self.aggregator.create_order(CUSTOMER, [CartItem('kiboko', 'Kiboko', 140000, 1)],
                                             Fulfillment.DELIVERY, quote=quote)
        self.assertEqual(order.delivery_quote, quote)
        # Delivery fee is paid to the rider, not part of the order total
        self.assertEqual(order.total_tzs, 140000)

    def test_rejected_carts(self):
        with self.assertRaises(ValueError):
            self.aggregator.create_order(CUSTOMER, [], Fulfillment.PICKUP)
        with self.assertRaises(ValueError):
            self.aggregator.create_order(CUSTOMER, [CartItem('kiboko', 'Kiboko', 140000, 0)], Fulfillment.PICKUP)
        with self.assertRaises(ValueError):
            self.aggregator.create_order(CUSTOMER, [CartItem('kiboko', 'Kiboko', 140000, 1)], Fulfillment.DELIVERY)
        with self.assertRaises(ValueError):
            self.aggregator.create_order(CUSTOMER, [CartItem('kiboko', 'Kiboko', 140000, 1)], 'drone')
        self.assertEqual(self.store.list_orders(), [])

    def test_order_codes_are_unique(self):
        cart = [CartItem('kiboko', 'Kiboko', 140000, 1)]
        ids = {self.aggregator.create_order(CUSTOMER, cart, Fulfillment.PICKUP).order_id for _ in range(5)}
        self.assertEqual(len(ids), 5)

    def test_typed_order_codes_ignore_case(self):
        self.assertEqual(normalize_order_id(' ujani-2025-0001 '), 'UJANI-2025-0001')
        with self.settings(ORDER_ID_PREFIX='ujani'):
            self.assertEqual(normalize_order_id('UJANI-2026-0001'), 'ujani-2026-0001')
            self.assertEqual(normalize_order_id('Ujani-2026-0001'), 'ujani-2026-0001')


# ===========================================
# LEDGER
# ===========================================

class TestDeriveStatus(SimpleTestCase):

    def test_statuses(self):
        self.assertEqual(derive_status(0, 4500), PaymentStatus.AWAITING)
        self.assertEqual(derive_status(1000, 4500), PaymentStatus.PARTIAL)
        self.assertEqual(derive_status(4500, 4500), PaymentStatus.PAID)
        self.assertEqual(derive_status(6000, 4500), PaymentStatus.PAID)


class TestPaymentLedger(SimpleTestCase):

    def setUp(self):
        self.store = MemoryStore()
        self.store.create_order(make_order(total=4500))
        self.ledger = PaymentLedger(store=self.store, lock_manager=KeyedLockManager())

    def pay(self, event_id, amount, order_id='UJANI-2025-0001'):
        return self.ledger.apply(PaymentEvent(event_id=event_id, order_id=order_id, amount_tzs=amount))

    def test_partial_then_paid(self):
        first = self.pay('evt-1', 2000)
        self.assertTrue(first.applied)
        self.assertEqual((first.status, first.paid_tzs, first.balance_tzs), ('partial', 2000, 2500))

        second = self.pay('evt-2', 2500)
        self.assertEqual((second.status, second.paid_tzs, second.balance_tzs), ('paid', 4500, 0))

    def test_replayed_event_counted_once(self):
        self.pay('evt-1', 2000)
        replay = self.pay('evt-1', 2000)
        self.assertFalse(replay.applied)
        self.assertEqual(replay.paid_tzs, 2000)
        self.assertEqual(len(self.store.list_payment_events('UJANI-2025-0001')), 1)

    def test_out_of_order_events(self):
        self.pay('evt-2', 2500)
        self.pay('evt-1', 2000)
        self.assertEqual(self.ledger.snapshot('UJANI-2025-0001').status, 'paid')

    def test_overpayment_is_visible(self):
        snapshot = self.pay('evt-1', 6000)
        self.assertEqual(snapshot.status, 'paid')
        self.assertEqual(snapshot.excess_tzs, 1500)
        self.assertEqual(snapshot.to_dict()['excess_tzs'], 1500)

    def test_non_positive_amounts(self):
        for amount in (0, -500):
            with self.assertRaises(ValueError):
                self.pay(f"evt-{amount}", amount)
        self.assertEqual(self.ledger.snapshot('UJANI-2025-0001').paid_tzs, 0)

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            self.pay('evt-1', 1000, order_id='UJANI-2025-9999')
        with self.assertRaises(OrderNotFound):
            self.ledger.snapshot('UJANI-2025-9999')

    def test_concurrent_replays(self):
        results = []

        def apply():
            results.append(self.pay('evt-same', 1000))

        threads = [threading.Thread(target=apply) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(sum(1 for r in results if r.applied), 1)
        self.assertEqual(self.ledger.snapshot('UJANI-2025-0001').paid_tzs, 1000)


# ===========================================
# CLICKPESA
# ===========================================

class TestClickPesaChecksum(SimpleTestCase):
    SECRET = 'cp-secret'

    def test_sorted_keys_checksum(self):
        data = {'orderReference': 'UJANI-2025-0001', 'amount': '4500', 'currency': 'TZS'}
        expected = hmac.new(self.SECRET.encode(), b'4500TZSUJANI-2025-0001', hashlib.sha256).hexdigest()
        self.assertEqual(compute_checksum(data, self.SECRET), expected)
        # The checksum field is never signed
        self.assertEqual(compute_checksum({**data, 'checksum': 'x'}, self.SECRET), expected)

    def test_data_checksum(self):
        data = {'orderReference': 'UJANI-2025-0001', 'collectedAmount': '4500'}
        data['checksum'] = compute_checksum(data, self.SECRET)
        self.assertTrue(verify_webhook(b'', {'data': data}, secret=self.SECRET))

        tampered = {**data, 'collectedAmount': '9000'}
        self.assertFalse(verify_webhook(b'', {'data': tampered}, secret=self.SECRET))
        self.assertFalse(verify_webhook(b'', {'data': {'orderReference': 'x'}}, secret=self.SECRET))

    def test_header_signature(self):
        body = b'{"event":"PAYMENT RECEIVED"}'
        header = hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()
        self.assertTrue(verify_webhook(body, json.loads(body), header, secret=self.SECRET))
        self.assertFalse(verify_webhook(body + b' ', json.loads(body), header, secret=self.SECRET))

    def test_no_secret_configured(self):
        self.assertTrue(verify_webhook(b'{}', {}, secret=''))


@override_settings(UJANI_STORE_BACKEND='memory', CLICKPESA_CHECKSUM_SECRET='')
class TestClickPesaWebhook(SimpleTestCase):
    URL = '/api/payments/clickpesa/webhook/'

    def setUp(self):
        persistence._stores.clear()
        self.store = persistence.get_store()
        self.store.create_order(make_order(total=4500))

    def post(self, payload, **headers):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return self.client.post(self.URL, data=body, content_type='application/json', **headers)

    def received(self, amount='2000.00', payment_id='cp-1', order_id='UJANI-2025-0001'):
        return {
            'event': 'PAYMENT RECEIVED',
            'data': {
                'orderReference': order_id,
                'collectedAmount': amount,
                'status': 'SUCCESS',
                'paymentId': payment_id,
            },
        }

    @patch('bot.tasks.enqueue_outbound')
    def test_payment_applied_once(self, enqueue):
        response = self.post(self.received())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['applied'], True)
        self.assertEqual(response.json()['status'], 'partial')

        replay = self.post(self.received())
        self.assertEqual(replay.json()['applied'], False)
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 2000)

        # Customer told once, with the balance
        enqueue.assert_called_once()
        customer_id, messages = enqueue.call_args[0]
        self.assertEqual(customer_id, CUSTOMER)
        self.assertIn('2,500', messages[0].body)

    @patch('bot.tasks.enqueue_outbound')
    def test_unknown_order_is_acknowledged(self, enqueue):
        response = self.post(self.received(order_id='UJANI-2025-9999'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['applied'], False)
        enqueue.assert_not_called()

    @patch('bot.tasks.enqueue_outbound')
    def test_failed_payment_is_not_applied(self, enqueue):
        payload = self.received()
        payload['event'] = 'PAYMENT FAILED'
        payload['data']['status'] = 'FAILED'
        response = self.post(payload)
        self.assertEqual(response.json()['applied'], False)
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 0)

    def test_invalid_json(self):
        self.assertEqual(self.post(b'not json').status_code, 400)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(self.URL).status_code, 405)

    @override_settings(CLICKPESA_CHECKSUM_SECRET='cp-secret')
    @patch('bot.tasks.enqueue_outbound')
    def test_bad_signature_is_ignored(self, enqueue):
        response = self.post(self.received(), HTTP_X_CLICKPESA_SIGNATURE='0' * 64)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['verified'], False)
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 0)

    @override_settings(CLICKPESA_CHECKSUM_SECRET='cp-secret')
    @patch('bot.tasks.enqueue_outbound')
    def test_signed_body_is_applied(self, enqueue):
        body = json.dumps(self.received(amount='4500')).encode()
        signature = hmac.new(b'cp-secret', body, hashlib.sha256).hexdigest()
        response = self.post(body, HTTP_X_CLICKPESA_SIGNATURE=signature)
        self.assertEqual(response.json()['status'], 'paid')

    @patch('bot.tasks.enqueue_outbound')
    def test_over_long_payment_id_uses_body_digest(self, enqueue):
        payload = self.received(payment_id='P' * 150)
        payload['data']['paymentReference'] = 'R' * 150
        response = self.post(payload)
        self.assertEqual(response.json()['applied'], True)

        [event] = self.store.list_payment_events('UJANI-2025-0001')
        self.assertTrue(event.event_id.startswith('cp_'))
        self.assertLessEqual(len(event.event_id), 100)
        self.assertEqual(len(event.reference), 100)


@override_settings(CLICKPESA_CLIENT_ID='client', CLICKPESA_API_KEY='key', CLICKPESA_CHECKSUM_SECRET='',
                   CLICKPESA_BASE_URL='https://api.clickpesa.test/third-parties')
class TestClickPesaClient(SimpleTestCase):

    def setUp(self):
        cache.set(ClickPesaService.TOKEN_CACHE_KEY, 'Bearer tok')

    def tearDown(self):
        cache.clear()

    @staticmethod
    def response(ok=True, status_code=200, data=None, text=''):
        response = Mock(ok=ok, status_code=status_code, text=text)
        response.json.return_value = data
        return response

    @patch('finance.clickpesa_service.requests.post')
    def test_generate_checkout_url(self, post):
        post.return_value = self.response(data={'checkoutLink': 'https://checkout.clickpesa.test/abc'})

        result = ClickPesaService.generate_checkout_url(4500, 'UJANI-2025-0001', 'Asha Juma', '0712345678')
        self.assertTrue(result['success'])
        self.assertEqual(result['url'], 'https://checkout.clickpesa.test/abc')

        url = post.call_args[0][0]
        self.assertEqual(url, 'https://api.clickpesa.test/third-parties/checkout-link/generate-checkout-url')
        payload = post.call_args[1]['json']
        self.assertEqual(payload['totalPrice'], '4500')
        self.assertEqual(payload['orderReference'], 'UJANI-2025-0001')
        self.assertEqual(payload['orderCurrency'], 'TZS')
        self.assertEqual(payload['customerPhone'], '255712345678')
        self.assertNotIn('checksum', payload)
        self.assertEqual(post.call_args[1]['headers']['Authorization'], 'Bearer tok')

    @override_settings(CLICKPESA_CHECKSUM_SECRET='cp-secret')
    @patch('finance.clickpesa_service.requests.post')
    def test_checkout_request_is_signed(self, post):
        post.return_value = self.response(data={'checkoutLink': 'https://checkout.clickpesa.test/abc'})
        ClickPesaService.generate_checkout_url(4500, 'UJANI-2025-0001')

        payload = dict(post.call_args[1]['json'])
        checksum = payload.pop('checksum')
        self.assertEqual(checksum, compute_checksum(payload, 'cp-secret'))

    @patch('finance.clickpesa_service.requests.post')
    def test_checkout_failures(self, post):
        post.return_value = self.response(ok=False, status_code=500, text='boom')
        self.assertEqual(ClickPesaService.generate_checkout_url(4500, 'UJANI-2025-0001'),
                         {'success': False, 'error': 'HTTP 500'})

        post.return_value = self.response(data={})
        self.assertFalse(ClickPesaService.generate_checkout_url(4500, 'UJANI-2025-0001')['success'])

    @patch('finance.clickpesa_service.requests.get')
    def test_query_payments(self, get):
        get.return_value = self.response(data=[{'id': 'cp-9', 'status': 'SUCCESS'}, 'noise'])
        result = ClickPesaService.query_payments('UJANI-2025-0001')
        self.assertEqual(result['payments'], [{'id': 'cp-9', 'status': 'SUCCESS'}])
        self.assertEqual(get.call_args[0][0], 'https://api.clickpesa.test/third-parties/payments/UJANI-2025-0001')

        get.return_value = self.response(data={'id': 'cp-9', 'status': 'SUCCESS'})
        self.assertEqual(len(ClickPesaService.query_payments('UJANI-2025-0001')['payments']), 1)

    def test_no_credentials(self):
        cache.clear()
        with self.settings(CLICKPESA_CLIENT_ID=''):
            with self.assertLogs('finance.clickpesa_service', level='ERROR'):
                result = ClickPesaService.query_payments('UJANI-2025-0001')
        self.assertFalse(result['success'])


@override_settings(UJANI_STORE_BACKEND='memory', CLICKPESA_CHECKSUM_SECRET='', BUSINESS_WA_NUMBER='+255 700 000 999')
class TestClickPesaReturn(SimpleTestCase):
    URL = '/api/payments/clickpesa/return/'
    QUERY = 'finance.clickpesa_service.ClickPesaService.query_payments'

    def setUp(self):
        persistence._stores.clear()
        self.store = persistence.get_store()
        self.store.create_order(make_order(total=4500))

    def record(self, payment_id='cp-9', amount='4500', status='SUCCESS'):
        return {
            'id': payment_id,
            'status': status,
            'collectedAmount': amount,
            'orderReference': 'UJANI-2025-0001',
            'paymentReference': 'MP250101ABC',
        }

    @patch('bot.tasks.enqueue_outbound')
    @patch(QUERY)
    def test_paid_checkout_applied_once_and_back_to_whatsapp(self, query, enqueue):
        query.return_value = {'success': True, 'payments': [self.record()]}

        response = self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response['Location'], 'https://wa.me/255700000999?text=Paid%20Order%20UJANI-2025-0001')
        query.assert_called_once_with('UJANI-2025-0001')

        [event] = self.store.list_payment_events('UJANI-2025-0001')
        self.assertEqual((event.event_id, event.method, event.amount_tzs), ('cp-9', 'checkout', 4500))

        # Reloading the page does not pay twice
        self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 4500)
        enqueue.assert_called_once()

    @patch('bot.tasks.enqueue_outbound')
    @patch(QUERY)
    def test_webhook_and_return_count_one_payment(self, query, enqueue):
        webhook = {'event': 'PAYMENT RECEIVED',
                   'data': {'orderReference': 'UJANI-2025-0001', 'collectedAmount': '4500',
                            'status': 'SUCCESS', 'paymentId': 'cp-9'}}
        self.client.post('/api/payments/clickpesa/webhook/', data=json.dumps(webhook),
                         content_type='application/json')
        query.return_value = {'success': True, 'payments': [self.record()]}
        self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})

        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 4500)
        self.assertEqual(len(self.store.list_payment_events('UJANI-2025-0001')), 1)

    @patch(QUERY)
    def test_pending_payment(self, query):
        query.return_value = {'success': True, 'payments': [self.record(status='PROCESSING')]}
        response = self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'pending', response.content)
        self.assertEqual(self.store.list_payment_events('UJANI-2025-0001'), [])

    @patch(QUERY)
    def test_query_failure_records_nothing(self, query):
        query.return_value = {'success': False, 'error': 'HTTP 502'}
        with self.assertLogs('finance.payment_api', level='WARNING'):
            response = self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 0)

    @patch(QUERY)
    def test_unknown_order(self, query):
        query.return_value = {'success': True, 'payments': [self.record()]}
        response = self.client.get(self.URL, {'ref': 'UJANI-2025-9999'})
        self.assertEqual(response.status_code, 404)

    def test_missing_ref(self):
        self.assertEqual(self.client.get(self.URL).status_code, 400)

    @override_settings(BUSINESS_WA_NUMBER='')
    @patch('bot.tasks.enqueue_outbound')
    @patch(QUERY)
    def test_paid_without_business_number(self, query, enqueue):
        query.return_value = {'success': True, 'payments': [self.record()]}
        response = self.client.get(self.URL, {'ref': 'UJANI-2025-0001'})
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Payment received', response.content)


# ===========================================
# ADMIN API
# ===========================================

@override_settings(UJANI_STORE_BACKEND='memory')
class TestAdminAPI(TestCase):

    def setUp(self):
        persistence._stores.clear()
        self.store = persistence.get_store()
        self.store.create_order(make_order(total=4500))
        self.staff = User.objects.create_user('admin', password='secret', is_staff=True)
        self.client.force_login(self.staff)

    def test_requires_staff(self):
        self.client.logout()
        self.assertEqual(self.client.get('/api/orders/').status_code, 403)

        User.objects.create_user('customer', password='secret')
        self.client.login(username='customer', password='secret')
        self.assertEqual(self.client.get('/api/orders/').status_code, 403)

    def test_list_orders(self):
        self.store.create_order(make_order('UJANI-2025-0002', customer_id='+255799999999'))
        response = self.client.get('/api/orders/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 2)

        response = self.client.get('/api/orders/', {'customer': CUSTOMER})
        [order] = response.json()
        self.assertEqual(order['order_id'], 'UJANI-2025-0001')
        self.assertEqual(order['payment']['status'], 'awaiting')

    def test_order_detail(self):
        self.store.attach_evidence(PaymentEvidence('UJANI-2025-0001', CUSTOMER, text='QK72HD81JS'))
        PaymentLedger(store=self.store).apply(PaymentEvent('evt-1', 'UJANI-2025-0001', 1000))

        response = self.client.get('/api/orders/UJANI-2025-0001/')
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['payment']['paid_tzs'], 1000)
        self.assertEqual([e['event_id'] for e in data['payment_events']], ['evt-1'])
        self.assertEqual([e['text'] for e in data['evidence']], ['QK72HD81JS'])

        self.assertEqual(self.client.get('/api/orders/UJANI-2025-9999/').status_code, 404)

    @patch('bot.tasks.enqueue_outbound')
    def test_record_payment(self, enqueue):
        url = '/api/orders/UJANI-2025-0001/payments/'
        body = json.dumps({'amount_tzs': 4500, 'reference': 'QK72HD81JS'})

        response = self.client.post(url, data=body, content_type='application/json')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['status'], 'paid')

        # Same reference, same event
        replay = self.client.post(url, data=body, content_type='application/json')
        self.assertEqual(replay.status_code, 200)
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 4500)
        enqueue.assert_called_once()

    def test_record_payment_validation(self):
        url = '/api/orders/UJANI-2025-0001/payments/'
        for amount in (0, -10, 'abc'):
            response = self.client.post(url, data=json.dumps({'amount_tzs': amount}),
                                        content_type='application/json')
            self.assertEqual(response.status_code, 400)

        response = self.client.post('/api/orders/UJANI-2025-9999/payments/',
                                    data=json.dumps({'amount_tzs': 1000}), content_type='application/json')
        self.assertEqual(response.status_code, 404)

    def test_record_payment_rejects_over_long_ids(self):
        url = '/api/orders/UJANI-2025-0001/payments/'
        bodies = [
            {'amount_tzs': 1000, 'reference': 'R' * 101},
            {'amount_tzs': 1000, 'event_id': 'E' * 101},
            # Fits alone, but not once the default "manual-" event id is built from it
            {'amount_tzs': 1000, 'reference': 'R' * 95},
        ]
        for body in bodies:
            response = self.client.post(url, data=json.dumps(body), content_type='application/json')
            self.assertEqual(response.status_code, 400)
        self.assertEqual(self.store.list_payment_events('UJANI-2025-0001'), [])

    def test_delivery_failures(self):
        self.store.record_delivery_failure(FailureChannel.WHATSAPP, CUSTOMER, 'HTTP 500', reference='wamid.1')
        response = self.client.get('/api/delivery-failures/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]['reference'], 'wamid.1')


# ===========================================
# DJANGO STORE
# ===========================================

class TestDjangoStore(TestCase):

    def setUp(self):
        self.store = DjangoStore()

    def test_sessions(self):
        self.assertIsNone(self.store.load_session(CUSTOMER))
        self.store.save_session(CUSTOMER, {'state': 'IDLE'})
        self.store.save_session(CUSTOMER, {'state': 'COLLECTING_CART'})
        self.assertEqual(self.store.load_session(CUSTOMER), {'state': 'COLLECTING_CART'})

    def test_order_codes(self):
        first, second = self.store.next_order_id(), self.store.next_order_id()
        self.assertTrue(first.endswith('-0001'))
        self.assertTrue(second.endswith('-0002'))

    def test_order_round_trip(self):
        quote = DeliveryQuote(source='wardMedian', distance_km=6.9, fee_tzs=7000,
                              district='Kinondoni', ward='Mikocheni')
        order = Order(
            order_id='UJANI-2025-0001',
            customer_id=CUSTOMER,
            items=(OrderItem('kiboko', 'Kiboko', 140000, 1), OrderItem('furaha', 'Furaha', 110000, 2)),
            total_tzs=360000,
            fulfillment=Fulfillment.DELIVERY,
            delivery_quote=quote,
        )
        self.store.create_order(order)

        stored = self.store.get_order('UJANI-2025-0001')
        self.assertEqual(stored.items, order.items)
        self.assertEqual(stored.delivery_quote, quote)
        self.assertEqual([o.order_id for o in self.store.list_orders(customer_id=CUSTOMER)], ['UJANI-2025-0001'])
        self.assertIsNone(self.store.get_order('UJANI-2025-9999'))

    def test_payment_events_counted_once(self):
        self.store.create_order(make_order(total=4500))
        event = PaymentEvent('evt-1', 'UJANI-2025-0001', 2000)
        self.assertTrue(self.store.append_payment_event(event))
        self.assertFalse(self.store.append_payment_event(event))
        self.assertEqual(self.store.get_paid_so_far('UJANI-2025-0001'), 2000)

        snapshot = PaymentLedger(store=self.store).apply(PaymentEvent('evt-2', 'UJANI-2025-0001', 2500))
        self.assertEqual(snapshot.status, 'paid')

    def test_events_need_an_order(self):
        with self.assertRaises(ValueError):
            self.store.append_payment_event(PaymentEvent('evt-1', 'UJANI-2025-9999', 2000))

    def test_evidence_and_failures(self):
        self.store.create_order(make_order())
        self.store.attach_evidence(PaymentEvidence('UJANI-2025-0001', CUSTOMER, media_id='media-1'))
        self.assertEqual([e.media_id for e in self.store.list_evidence('UJANI-2025-0001')], ['media-1'])

        self.store.record_delivery_failure(FailureChannel.PSP, CUSTOMER, 'HTTP 500', reference='UJANI-2025-0001')
        self.assertEqual(DeliveryFailure.objects.count(), 1)
        self.assertEqual(self.store.list_delivery_failures()[0]['channel'], 'psp')

    def test_admin_changelist(self):
        self.store.create_order(make_order(total=4500))
        self.store.append_payment_event(PaymentEvent('evt-1', 'UJANI-2025-0001', 2000))
        User.objects.create_superuser('root', 'root@example.com', 'secret')
        self.client.login(username='root', password='secret')

        response = self.client.get('/admin/finance/orderrecord/')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(OrderRecord.objects.filter(order_id='UJANI-2025-0001').exists())


# ===========================================
# TASKS
# ===========================================

@override_settings(UJANI_STORE_BACKEND='memory')
class TestUssdPushTask(SimpleTestCase):

    def setUp(self):
        persistence._stores.clear()

    @patch('finance.clickpesa_service.ClickPesaService.initiate_ussd_push')
    def test_success(self, initiate):
        initiate.return_value = {'success': True, 'data': {'id': 'cp-req-1'}}
        result = request_ussd_push.apply(args=['UJANI-2025-0001', CUSTOMER, 4500]).get()
        self.assertTrue(result['success'])
        initiate.assert_called_once_with(CUSTOMER, 4500, 'UJANI-2025-0001')

    @patch('finance.clickpesa_service.ClickPesaService.initiate_ussd_push')
    def test_gives_up_and_records_failure(self, initiate):
        initiate.return_value = {'success': False, 'error': 'HTTP 503'}
        result = request_ussd_push.apply(args=['UJANI-2025-0001', CUSTOMER, 4500], retries=2).get()
        self.assertFalse(result['success'])

        [failure] = persistence.get_store().list_delivery_failures()
        self.assertEqual((failure['channel'], failure['reference'], failure['error']),
                         ('psp', 'UJANI-2025-0001', 'HTTP 503'))


@override_settings(UJANI_STORE_BACKEND='memory')
class TestCheckoutLinkTask(SimpleTestCase):
    ARGS = ['UJANI-2025-0001', CUSTOMER, 4500, 'Asha Juma', CUSTOMER, 'en']

    def setUp(self):
        persistence._stores.clear()

    @patch('bot.tasks.enqueue_outbound')
    @patch('finance.clickpesa_service.ClickPesaService.generate_checkout_url')
    def test_link_sent_to_customer(self, generate, enqueue):
        generate.return_value = {'success': True, 'url': 'https://checkout.clickpesa.test/abc'}
        result = send_checkout_link.apply(args=self.ARGS).get()

        self.assertEqual(result, {'success': True, 'url': 'https://checkout.clickpesa.test/abc'})
        generate.assert_called_once_with(4500, 'UJANI-2025-0001', 'Asha Juma', CUSTOMER)
        customer_id, [message] = enqueue.call_args[0]
        self.assertEqual(customer_id, CUSTOMER)
        self.assertIn('https://checkout.clickpesa.test/abc', message.body)
        self.assertIn('UJANI-2025-0001', message.body)
        self.assertEqual(enqueue.call_args[1]['reference'], 'UJANI-2025-0001')

    @patch('bot.tasks.enqueue_outbound')
    @patch('finance.clickpesa_service.ClickPesaService.generate_checkout_url')
    def test_gives_up_and_records_failure(self, generate, enqueue):
        generate.return_value = {'success': False, 'error': 'HTTP 500'}
        result = send_checkout_link.apply(args=self.ARGS, retries=2).get()

        self.assertFalse(result['success'])
        enqueue.assert_not_called()
        [failure] = persistence.get_store().list_delivery_failures()
        self.assertEqual((failure['channel'], failure['recipient'], failure['reference']),
                         ('psp', CUSTOMER, 'UJANI-2025-0001'))
