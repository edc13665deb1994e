"""
BOT App - Tests for the WhatsApp conversation.

Tests cover:
- Sessions (checkout stages bound to states, serialization, idle timeout)
- X-Hub-Signature-256 verification and envelope parsing
- Outbound message limits and Cloud API payloads
- Dispatcher flows (pickup, delivery, GPS, outside Dar, payment and checkout links, proof, tracking, handoff)
- Idempotency and concurrency (duplicate message ids, same-customer events)
- Meta webhook view and outbound Celery task
"""

import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock, Mock, patch

from django.conf import settings
from django.core.cache import cache
from django.test import SimpleTestCase, override_settings
from django.utils import timezone

from core import persistence
from core.persistence import MemoryStore
from finance.ledger import PaymentLedger
from finance.orders import Order, OrderItem, PaymentEvent
from logistics.services.distance import DistanceResolver, DistanceSource
from logistics.services.pricing import DeliveryQuote, FeeQuotingEngine
from logistics.utils import haversine_distance, round_up_to_step

from .dispatcher import Dispatcher
from .messages import Choice, OutboundMessage, payment_update_messages
from .services import InboundMessage, MetaWhatsAppService, WhatsAppSendError, parse_incoming_data, verify_signature
from .sessions import (
    BotState, DeliveryLocation, FulfillmentChoice, GpsPin, NameEntry, ProofPending, QuoteShown,
    Session, SessionStore, normalize_customer_id, normalize_tz_phone,
)
from .tasks import enqueue_outbound, send_outbound_messages

CUSTOMER_WA = '255712345678'
CUSTOMER = '+255712345678'
ADMIN = '+255700000001'


def text(body, sender=CUSTOMER_WA, message_id=None):
    return InboundMessage(message_id=message_id or f"wamid.{uuid.uuid4().hex}", sender=sender, kind='text', text=body)


def tap(reply_id, sender=CUSTOMER_WA, message_id=None):
    return InboundMessage(message_id=message_id or f"wamid.{uuid.uuid4().hex}", sender=sender,
                          kind='interactive', reply_id=reply_id)


def pin(latitude, longitude, sender=CUSTOMER_WA):
    return InboundMessage(message_id=f"wamid.{uuid.uuid4().hex}", sender=sender, kind='location',
                          latitude=latitude, longitude=longitude)


def image(media_id, caption='', sender=CUSTOMER_WA):
    return InboundMessage(message_id=f"wamid.{uuid.uuid4().hex}", sender=sender, kind='image',
                          media_id=media_id, caption=caption)


def named(inbound, profile_name='Asha Juma'):
    return replace(inbound, profile_name=profile_name)


def choice_ids(message):
    return [c.id for c in message.choices]


# ===========================================
# SESSIONS
# ===========================================

class TestPhoneNormalization(SimpleTestCase):

    def test_tanzanian_numbers(self):
        self.assertEqual(normalize_tz_phone('0712345678'), '+255712345678')
        self.assertEqual(normalize_tz_phone('0712 345 678'), '+255712345678')
        self.assertEqual(normalize_tz_phone('255612345678'), '+255612345678')
        self.assertEqual(normalize_tz_phone('+255 754-000-111'), '+255754000111')

    def test_rejected_numbers(self):
        for raw in ('', '12345', '0512345678', '+254712345678', '07123456789'):
            self.assertIsNone(normalize_tz_phone(raw), raw)

    def test_customer_id(self):
        self.assertEqual(normalize_customer_id('255712345678'), '+255712345678')
        self.assertEqual(normalize_customer_id('0712345678'), '+255712345678')


class TestSession(SimpleTestCase):

    def test_transition_requires_matching_checkout(self):
        session = Session(customer_id=CUSTOMER)
        with self.assertRaises(ValueError):
            session.transition(BotState.ASK_FULFILLMENT)
        with self.assertRaises(ValueError):
            session.transition(BotState.ASK_CUSTOMER_NAME, FulfillmentChoice())

        session.transition(BotState.ASK_FULFILLMENT, FulfillmentChoice())
        self.assertEqual(session.state, BotState.ASK_FULFILLMENT)

    def test_reset_keeps_cart(self):
        session = Session(customer_id=CUSTOMER)
        session.add_to_cart('kiboko', 'Kiboko', 140000)
        session.transition(BotState.ASK_FULFILLMENT, FulfillmentChoice())
        session.reset()
        self.assertEqual(session.state, BotState.IDLE)
        self.assertIsNone(session.checkout)
        self.assertEqual(len(session.cart), 1)

    def test_add_to_cart_merges_lines(self):
        session = Session(customer_id=CUSTOMER)
        session.add_to_cart('kiboko', 'Kiboko', 140000)
        session.add_to_cart('kiboko', 'Kiboko', 140000, quantity=2)
        session.add_to_cart('furaha', 'Furaha', 110000)
        self.assertEqual([(i.product_id, i.quantity) for i in session.cart], [('kiboko', 3), ('furaha', 1)])
        self.assertEqual(session.cart_total_tzs, 530000)

    def test_round_trip_with_frozen_quote(self):
        quote = DeliveryQuote(source=DistanceSource.EXACT_STREET, distance_km=6.2, fee_tzs=6000,
                              district='Kinondoni', ward='Mikocheni', street='Haile Selassie')
        view = QuoteShown(
            fulfillment='delivery',
            customer_name='Asha Juma',
            contact_phone=CUSTOMER,
            location=DeliveryLocation('Kinondoni', 'Mikocheni', 'Haile Selassie'),
            quote=quote,
            order_id='UJANI-2025-0001',
        )
        session = Session(customer_id=CUSTOMER, language='en')
        session.transition(BotState.WAIT_PAYMENT_PROOF, ProofPending('UJANI-2025-0001', 'PAY_LIPA_NAMBA', view))

        restored = Session.from_dict(json.loads(json.dumps(session.to_dict())))
        self.assertEqual(restored.state, BotState.WAIT_PAYMENT_PROOF)
        self.assertEqual(restored.checkout, session.checkout)
        self.assertEqual(restored.checkout.quote_view.quote.fee_tzs, 6000)
        self.assertEqual(restored.language, 'en')

    def test_gps_location_round_trip(self):
        entry = NameEntry('delivery', CUSTOMER, DeliveryLocation(gps=GpsPin(-6.8, 39.27)))
        self.assertEqual(NameEntry.from_dict(json.loads(json.dumps(entry.to_dict()))), entry)

    def test_inconsistent_stored_session_falls_back_to_idle(self):
        data = Session(customer_id=CUSTOMER).to_dict()
        data['state'] = BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS.value
        restored = Session.from_dict(data)
        self.assertEqual(restored.state, BotState.IDLE)

        data['state'] = 'NOT_A_STATE'
        self.assertEqual(Session.from_dict(data).state, BotState.IDLE)


class TestSessionStore(SimpleTestCase):

    def test_fresh_session_for_new_customer(self):
        session = SessionStore(store=MemoryStore()).get(CUSTOMER)
        self.assertEqual(session.state, BotState.IDLE)
        self.assertEqual(session.cart, [])

    def test_sessions_do_not_alias(self):
        sessions = SessionStore(store=MemoryStore())
        session = sessions.get(CUSTOMER)
        session.add_to_cart('kiboko', 'Kiboko', 140000)
        sessions.save(session)

        session.add_to_cart('furaha', 'Furaha', 110000)
        self.assertEqual(len(sessions.get(CUSTOMER).cart), 1)

    def test_idle_timeout_keeps_language(self):
        store = MemoryStore()
        sessions = SessionStore(store=store, ttl_minutes=30)
        session = sessions.get(CUSTOMER)
        session.language = 'en'
        session.add_to_cart('kiboko', 'Kiboko', 140000)
        sessions.save(session)

        data = store.load_session(CUSTOMER)
        data['updated_at'] = (timezone.now() - timedelta(minutes=31)).isoformat()
        store.save_session(CUSTOMER, data)

        expired = sessions.get(CUSTOMER)
        self.assertEqual(expired.cart, [])
        self.assertEqual(expired.language, 'en')


# ===========================================
# SIGNATURE & PARSING
# ===========================================

class TestVerifySignature(SimpleTestCase):
    SECRET = 'app-secret'

    def sign(self, body):
        return 'sha256=' + hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        body = b'{"object":"whatsapp_business_account","entry":[]}'
        self.assertTrue(verify_signature(body, self.sign(body), self.SECRET))

    def test_prefix_is_optional(self):
        body = b'{"entry":[]}'
        self.assertTrue(verify_signature(body, self.sign(body)[len('sha256='):], self.SECRET))

    def test_tampered_body_fails_and_resigned_body_passes(self):
        body = b'{"entry":[{"amount":1000}]}'
        header = self.sign(body)
        tampered = b'{"entry":[{"amount":9000}]}'

        self.assertFalse(verify_signature(tampered, header, self.SECRET))
        self.assertTrue(verify_signature(tampered, self.sign(tampered), self.SECRET))

    def test_reserialized_body_fails(self):
        body = b'{"b": 1, "a": 2}'
        reserialized = json.dumps(json.loads(body), sort_keys=True).encode()
        self.assertFalse(verify_signature(reserialized, self.sign(body), self.SECRET))

    def test_missing_inputs_are_rejected(self):
        body = b'{}'
        self.assertFalse(verify_signature(body, None, self.SECRET))
        self.assertFalse(verify_signature(body, self.sign(body), ''))
        self.assertFalse(verify_signature(b'', self.sign(body), self.SECRET))
        self.assertFalse(verify_signature(body, 'sha256=ñ', self.SECRET))


def envelope(*messages, contacts=None, statuses=None):
    value = {'messaging_product': 'whatsapp'}
    if messages:
        value['messages'] = list(messages)
    if contacts:
        value['contacts'] = contacts
    if statuses:
        value['statuses'] = statuses
    return {'object': 'whatsapp_business_account', 'entry': [{'id': '1', 'changes': [{'value': value}]}]}


class TestParseIncomingData(SimpleTestCase):

    def test_text_message(self):
        data = envelope(
            {'from': CUSTOMER_WA, 'id': 'wamid.1', 'type': 'text', 'text': {'body': 'Habari'}},
            contacts=[{'wa_id': CUSTOMER_WA, 'profile': {'name': 'Asha'}}],
        )
        [message] = parse_incoming_data(data)
        self.assertEqual((message.message_id, message.sender, message.kind, message.text),
                         ('wamid.1', CUSTOMER_WA, 'text', 'Habari'))
        self.assertEqual(message.profile_name, 'Asha')

    def test_list_and_button_replies(self):
        data = envelope(
            {'from': CUSTOMER_WA, 'id': 'wamid.1', 'type': 'interactive',
             'interactive': {'type': 'list_reply', 'list_reply': {'id': 'PRODUCT_kiboko', 'title': 'Kiboko'}}},
            {'from': CUSTOMER_WA, 'id': 'wamid.2', 'type': 'interactive',
             'interactive': {'type': 'button_reply', 'button_reply': {'id': 'LOC_CONFIRM', 'title': 'Ndiyo'}}},
        )
        self.assertEqual([m.reply_id for m in parse_incoming_data(data)], ['PRODUCT_kiboko', 'LOC_CONFIRM'])

    def test_location_and_image(self):
        data = envelope(
            {'from': CUSTOMER_WA, 'id': 'wamid.1', 'type': 'location',
             'location': {'latitude': '-6.77', 'longitude': 39.24}},
            {'from': CUSTOMER_WA, 'id': 'wamid.2', 'type': 'image',
             'image': {'id': 'media-1', 'caption': 'risiti'}},
        )
        location, picture = parse_incoming_data(data)
        self.assertTrue(location.has_location)
        self.assertEqual((location.latitude, location.longitude), (-6.77, 39.24))
        self.assertEqual((picture.kind, picture.media_id, picture.caption), ('image', 'media-1', 'risiti'))

    def test_status_only_envelope(self):
        data = envelope(statuses=[{'id': 'wamid.1', 'status': 'delivered'}])
        self.assertEqual(parse_incoming_data(data), [])

    def test_garbage(self):
        self.assertEqual(parse_incoming_data([]), [])
        self.assertEqual(parse_incoming_data({'entry': [{'changes': [{'value': {'messages': ['x']}}]}]}), [])


# ===========================================
# OUTBOUND MESSAGES
# ===========================================

class TestOutboundMessage(SimpleTestCase):

    def test_list_is_clipped_to_whatsapp_limits(self):
        rows = [Choice(f"ROW_{i}", 'T' * 40, 'D' * 100) for i in range(14)]
        message = OutboundMessage.list(CUSTOMER, 'Body', 'A very long button label', rows)

        self.assertEqual(len(message.choices), 10)
        self.assertTrue(all(len(c.title) <= 24 for c in message.choices))
        self.assertTrue(all(len(c.description) <= 72 for c in message.choices))
        self.assertLessEqual(len(message.button), 20)

    def test_buttons_are_clipped(self):
        buttons = [Choice(f"B{i}", 'Button title that is long') for i in range(5)]
        message = OutboundMessage.buttons(CUSTOMER, 'Body', buttons)
        self.assertEqual(len(message.choices), 3)
        self.assertTrue(all(len(c.title) <= 20 for c in message.choices))

    def test_payloads(self):
        text_payload = OutboundMessage.text(CUSTOMER, 'Habari').to_payload()
        self.assertEqual(text_payload['to'], CUSTOMER_WA)
        self.assertEqual(text_payload['text']['body'], 'Habari')

        list_payload = OutboundMessage.list(CUSTOMER, 'Body', 'Menu', [Choice('A', 'Title', 'Desc')]).to_payload()
        self.assertEqual(list_payload['interactive']['type'], 'list')
        self.assertEqual(list_payload['interactive']['action']['sections'][0]['rows'],
                         [{'id': 'A', 'title': 'Title', 'description': 'Desc'}])

        button_payload = OutboundMessage.buttons(CUSTOMER, 'Body', [Choice('YES', 'Yes')]).to_payload()
        self.assertEqual(button_payload['interactive']['action']['buttons'],
                         [{'type': 'reply', 'reply': {'id': 'YES', 'title': 'Yes'}}])

    def test_serialization_for_celery(self):
        message = OutboundMessage.buttons(CUSTOMER, 'Body', [Choice('YES', 'Yes')])
        self.assertEqual(OutboundMessage.from_dict(json.loads(json.dumps(message.to_dict()))), message)

    def test_payment_update_messages(self):
        order = Order('UJANI-2025-0001', CUSTOMER, (OrderItem('kiboko', 'Kiboko', 140000, 1),), 140000, 'pickup',
                      language='en')
        partial = Mock(order_id=order.order_id, paid_tzs=50000, balance_tzs=90000)
        [message] = payment_update_messages(order, partial)
        self.assertEqual(message.to, CUSTOMER)
        self.assertIn('90,000', message.body)


# ===========================================
# DISPATCHER
# ===========================================

@override_settings(
    ADMIN_WA_NUMBER=ADMIN,
    LIPA_NAMBA_TILL='555111',
    VODA_LNM_TILL='',
    VODA_P2P_MSISDN='0754000111',
    CLICKPESA_CLIENT_ID='',
    CLICKPESA_API_KEY='',
    LOCATION_PAGE_SIZE=8,
    OUTSIDE_DAR_FLAT_FEE=10000,
    MESSAGE_DEDUPE_SECONDS=86400,
    SESSION_TTL_MINUTES=240,
)
class TestDispatcher(SimpleTestCase):

    def setUp(self):
        cache.clear()
        self.store = MemoryStore()
        self.engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, minimum_fee=0,
                                       relief=[], service_radius_km=0)
        self.dispatcher = Dispatcher(store=self.store, resolver=DistanceResolver(), engine=self.engine)

    def send(self, inbound):
        return self.dispatcher.handle(inbound)

    def session(self):
        return SessionStore(store=self.store).get(CUSTOMER)

    def reach_delivery_location(self):
        self.send(tap('ADD_kiboko'))
        self.send(tap('ACTION_CHECKOUT'))
        return self.send(tap('FULFILL_DELIVERY'))

    def reach_quote_by_street(self):
        self.reach_delivery_location()
        self.send(tap('DISTRICT:Kinondoni'))
        self.send(text('mikocheni'))
        self.send(tap('STREET:Haile Selassie'))
        self.send(tap('LOC_CONFIRM'))
        return self.send(text('Asha Juma'))

    # Menu and cart

    def test_idle_text_shows_main_menu(self):
        [reply] = self.send(text('Habari'))
        self.assertEqual(reply.kind, 'list')
        self.assertEqual(reply.to, CUSTOMER)
        self.assertIn('ACTION_CHECKOUT', choice_ids(reply))
        self.assertIn('ACTION_TRACK_BY_NAME', choice_ids(reply))

    def test_product_card(self):
        [reply] = self.send(tap('PRODUCT_kiboko'))
        self.assertEqual(choice_ids(reply), ['ADD_kiboko', 'BUY_kiboko', 'DETAILS_kiboko'])
        self.assertEqual(self.session().state, BotState.IDLE)

    def test_product_with_variants_is_never_added(self):
        [reply] = self.send(tap('ADD_promax'))
        self.assertEqual(choice_ids(reply), ['PRODUCT_promax_a', 'PRODUCT_promax_b', 'PRODUCT_promax_c'])
        self.assertEqual(self.session().cart, [])

    def test_unknown_product(self):
        self.send(tap('ADD_kiboko'))
        [reply] = self.send(tap('ADD_nothing'))
        self.assertEqual(reply.kind, 'text')
        session = self.session()
        self.assertEqual(session.state, BotState.COLLECTING_CART)
        self.assertEqual(len(session.cart), 1)

    def test_add_to_cart(self):
        self.send(tap('ADD_kiboko'))
        [reply] = self.send(tap('ADD_kiboko'))
        self.assertIn('280,000', reply.body)
        session = self.session()
        self.assertEqual(session.state, BotState.COLLECTING_CART)
        self.assertEqual(session.cart[0].quantity, 2)

    def test_checkout_with_empty_cart(self):
        [reply] = self.send(tap('ACTION_CHECKOUT'))
        self.assertEqual(reply.kind, 'text')
        self.assertEqual(self.session().state, BotState.IDLE)

    def test_buy_now_goes_to_fulfillment(self):
        [reply] = self.send(tap('BUY_furaha'))
        self.assertEqual(choice_ids(reply), ['FULFILL_DELIVERY', 'FULFILL_PICKUP'])
        self.assertEqual(self.session().state, BotState.ASK_FULFILLMENT)

    def test_reset_word_discards_checkout_keeps_cart(self):
        self.send(tap('ADD_kiboko'))
        self.send(tap('ACTION_CHECKOUT'))
        [reply] = self.send(text('  MENYU '))
        session = self.session()
        self.assertEqual(reply.kind, 'list')
        self.assertEqual(session.state, BotState.IDLE)
        self.assertIsNone(session.checkout)
        self.assertEqual(len(session.cart), 1)

    def test_adding_during_checkout_discards_it(self):
        self.send(tap('ADD_kiboko'))
        self.send(tap('ACTION_CHECKOUT'))
        self.send(tap('ADD_furaha'))
        session = self.session()
        self.assertEqual(session.state, BotState.COLLECTING_CART)
        self.assertIsNone(session.checkout)

    def test_change_language(self):
        first, menu = self.send(tap('ACTION_CHANGE_LANGUAGE'))
        self.assertIn('English', first.body)
        self.assertEqual(self.session().language, 'en')
        self.assertIn('Kiswahili', [c.title for c in menu.choices][-1])

    # Pickup

    def test_pickup_flow_to_payment_proof(self):
        self.send(tap('ADD_kiboko'))
        self.send(tap('ACTION_CHECKOUT'))
        self.send(tap('FULFILL_PICKUP'))

        [invalid] = self.send(text('namba yangu'))
        self.assertEqual(self.session().state, BotState.ASK_PICKUP_PHONE)

        self.send(text('0754 111 222'))
        session = self.session()
        self.assertEqual(session.state, BotState.ASK_CUSTOMER_NAME)
        self.assertEqual(session.checkout.contact_phone, '+255754111222')

        summary, options = self.send(text('Asha Juma'))
        self.assertIn('140,000', summary.body)
        self.assertEqual(choice_ids(options), ['PAY_LIPA_NAMBA', 'PAY_VODA_P2P'])
        self.assertIsNone(self.session().checkout.quote)

        [instructions] = self.send(tap('PAY_LIPA_NAMBA'))
        session = self.session()
        self.assertEqual(session.state, BotState.WAIT_PAYMENT_PROOF)
        self.assertEqual(session.cart, [])
        [order] = self.store.list_orders(customer_id=CUSTOMER)
        self.assertEqual(order.total_tzs, 140000)
        self.assertEqual(order.fulfillment, 'pickup')
        self.assertEqual(order.contact_phone, '+255754111222')
        self.assertIn('555111', instructions.body)
        self.assertIn(order.order_id, instructions.body)

        ack, admin = self.send(text('QK72HD81JS Imethibitishwa'))
        self.assertEqual(ack.to, CUSTOMER)
        self.assertEqual(admin.to, ADMIN)
        self.assertIn(order.order_id, admin.body)
        self.assertEqual(self.session().state, BotState.IDLE)
        self.assertEqual([e.text for e in self.store.list_evidence(order.order_id)], ['QK72HD81JS Imethibitishwa'])
        # Evidence never changes the ledger
        self.assertEqual(PaymentLedger(store=self.store).snapshot(order.order_id).status, 'awaiting')

    def test_screenshot_proof(self):
        self.send(tap('BUY_kiboko'))
        self.send(tap('FULFILL_PICKUP'))
        self.send(text('0754111222'))
        self.send(text('Asha'))
        self.send(tap('PAY_VODA_P2P'))

        replies = self.send(image('media-77', caption='risiti'))
        self.assertEqual(len(replies), 2)
        [order] = self.store.list_orders()
        [evidence] = self.store.list_evidence(order.order_id)
        self.assertEqual((evidence.media_id, evidence.caption), ('media-77', 'risiti'))

    # Delivery

    def test_delivery_by_street_uses_exact_distance(self):
        self.reach_quote_by_street()
        session = self.session()
        self.assertEqual(session.state, BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS)
        quote = session.checkout.quote
        self.assertEqual(quote.source, DistanceSource.EXACT_STREET)
        self.assertEqual(quote.distance_km, 6.2)
        self.assertEqual(quote.fee_tzs, 6000)
        self.assertEqual(session.checkout.contact_phone, CUSTOMER)

    def test_district_and_ward_menus(self):
        [districts] = self.reach_delivery_location()
        self.assertIn('DISTRICT:Kinondoni', choice_ids(districts))

        [wards] = self.send(tap('DISTRICT:Kinondoni'))
        self.assertIn('WARD:Mikocheni', choice_ids(wards))
        self.assertEqual(choice_ids(wards)[-1], 'WARD_UNLISTED')

        [streets] = self.send(text('Mikocheni'))
        self.assertIn('STREET:Haile Selassie', choice_ids(streets))
        self.assertEqual(choice_ids(streets)[-1], 'STREET_SKIP')

    def test_ward_not_listed_uses_district_average(self):
        self.reach_delivery_location()
        self.send(tap('DISTRICT:Kinondoni'))
        self.send(tap('WARD_UNLISTED'))
        self.send(tap('LOC_CONFIRM'))
        self.send(text('Asha'))
        self.assertEqual(self.session().checkout.quote.source, DistanceSource.DISTRICT_AVERAGE)

    def test_skipped_street_uses_ward_median(self):
        self.reach_delivery_location()
        self.send(tap('DISTRICT:Kinondoni'))
        self.send(tap('WARD:Mikocheni'))
        self.send(tap('STREET_SKIP'))
        self.send(tap('LOC_CONFIRM'))
        self.send(text('Asha'))
        quote = self.session().checkout.quote
        self.assertEqual(quote.source, DistanceSource.WARD_MEDIAN)
        self.assertEqual(quote.distance_km, 6.9)

    def test_unmatched_district(self):
        self.reach_delivery_location()
        not_matched, menu = self.send(text('Arusha'))
        self.assertEqual(not_matched.kind, 'text')
        self.assertEqual(menu.kind, 'list')
        session = self.session()
        self.assertEqual(session.state, BotState.ASK_DELIVERY_LOCATION)
        self.assertEqual(session.cursor.district, '')

    @override_settings(LOCATION_PAGE_SIZE=2)
    def test_pagination(self):
        [first] = self.reach_delivery_location()
        self.assertEqual(choice_ids(first), ['DISTRICT:Ilala', 'DISTRICT:Kigamboni', 'PAGE_NEXT', 'DAR_OUTSIDE'])

        [second] = self.send(tap('PAGE_NEXT'))
        self.assertEqual(choice_ids(second),
                         ['DISTRICT:Kinondoni', 'DISTRICT:Temeke', 'PAGE_PREV', 'PAGE_NEXT', 'DAR_OUTSIDE'])
        self.assertEqual(self.session().cursor.page, 1)

        [back] = self.send(tap('PAGE_PREV'))
        self.assertEqual(choice_ids(back), choice_ids(first))

    @override_settings(LOCATION_PAGE_SIZE=2)
    def test_stale_page_taps_stay_in_range(self):
        self.reach_delivery_location()
        for _ in range(5):
            [last] = self.send(tap('PAGE_NEXT'))
        self.assertEqual(self.session().cursor.page, 2)
        self.assertEqual(choice_ids(last), ['DISTRICT:Ubungo', 'PAGE_PREV', 'DAR_OUTSIDE'])

        [previous] = self.send(tap('PAGE_PREV'))
        self.assertEqual(self.session().cursor.page, 1)
        self.assertIn('PAGE_PREV', choice_ids(previous))
        self.assertIn('DISTRICT:Kinondoni', choice_ids(previous))

    def test_gps_pin_short_circuits(self):
        self.reach_delivery_location()
        [confirm] = self.send(pin(-6.80, 39.27))
        self.assertEqual(choice_ids(confirm), ['LOC_CONFIRM', 'LOC_CHANGE'])
        self.send(tap('LOC_CONFIRM'))
        self.send(text('Asha'))

        quote = self.session().checkout.quote
        expected_km = float(round_up_to_step(haversine_distance(
            settings.BUSINESS_ORIGIN_LAT, settings.BUSINESS_ORIGIN_LON, -6.80, 39.27)))
        self.assertEqual(quote.source, DistanceSource.GPS)
        self.assertEqual(quote.distance_km, expected_km)
        self.assertEqual(self.session().last_pin, GpsPin(-6.80, 39.27))

    def test_change_location_clears_cursor(self):
        self.reach_delivery_location()
        self.send(tap('DISTRICT:Kinondoni'))
        self.send(tap('WARD_UNLISTED'))
        [districts] = self.send(tap('LOC_CHANGE'))
        session = self.session()
        self.assertEqual(session.state, BotState.ASK_DELIVERY_LOCATION)
        self.assertEqual(session.cursor.district, '')
        self.assertIn('DISTRICT:Ilala', choice_ids(districts))

    def test_out_of_service_goes_back_to_fulfillment(self):
        self.dispatcher.engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, minimum_fee=0,
                                                  relief=[], service_radius_km=5, outside_flat_fee=0)
        replies = self.reach_quote_by_street()
        self.assertEqual(choice_ids(replies[-1]), ['FULFILL_DELIVERY', 'FULFILL_PICKUP'])
        self.assertEqual(self.session().state, BotState.ASK_FULFILLMENT)

    def test_outside_dar_flat_fee(self):
        [districts] = self.reach_delivery_location()
        self.assertEqual(choice_ids(districts)[-1], 'DAR_OUTSIDE')

        [confirm] = self.send(tap('DAR_OUTSIDE'))
        self.assertIn('Nje ya Dar', confirm.body)
        self.send(tap('LOC_CONFIRM'))
        summary, options = self.send(text('Asha Juma'))
        self.assertIn('10,000', summary.body)
        self.assertIn('Nje ya Dar', summary.body)

        self.send(tap('PAY_LIPA_NAMBA'))
        [order] = self.store.list_orders()
        self.assertEqual(order.delivery_quote.fee_tzs, 10000)
        self.assertTrue(order.delivery_quote.flat_rate)
        self.assertEqual(order.total_tzs, 140000)

    @override_settings(OUTSIDE_DAR_FLAT_FEE=0)
    def test_outside_dar_switched_off(self):
        [districts] = self.reach_delivery_location()
        self.assertNotIn('DAR_OUTSIDE', choice_ids(districts))

        not_matched, menu = self.send(tap('DAR_OUTSIDE'))
        self.assertEqual(not_matched.kind, 'text')
        self.assertEqual(self.session().state, BotState.ASK_DELIVERY_LOCATION)

    def test_flat_fee_beyond_radius(self):
        self.dispatcher.engine = FeeQuotingEngine(tariff='linear', rate_per_km=1000, round_to=500, minimum_fee=0,
                                                  relief=[], service_radius_km=5, outside_flat_fee=10000)
        summary, options = self.reach_quote_by_street()
        quote = self.session().checkout.quote
        self.assertEqual((quote.fee_tzs, quote.flat_rate), (10000, True))
        self.assertIn('10,000', summary.body)
        self.assertEqual(self.session().state, BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS)

    def test_last_pin_is_offered_again(self):
        self.reach_delivery_location()
        self.send(pin(-6.80, 39.27))
        [districts] = self.send(tap('LOC_CHANGE'))
        self.assertEqual(choice_ids(districts)[-2:], ['LOC_LAST_PIN', 'DAR_OUTSIDE'])

        [confirm] = self.send(tap('LOC_LAST_PIN'))
        self.assertEqual(choice_ids(confirm), ['LOC_CONFIRM', 'LOC_CHANGE'])
        self.assertEqual(self.session().checkout.location, DeliveryLocation(gps=GpsPin(-6.80, 39.27)))

    def test_whatsapp_profile_name_is_offered(self):
        self.send(tap('BUY_kiboko'))
        self.send(tap('FULFILL_PICKUP'))
        [prompt] = self.send(named(text('0754111222')))
        self.assertEqual(choice_ids(prompt), ['NAME_PROFILE'])
        self.assertEqual(prompt.choices[0].title, 'Asha Juma')

        self.send(named(tap('NAME_PROFILE')))
        session = self.session()
        self.assertEqual(session.state, BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS)
        self.assertEqual(session.checkout.customer_name, 'Asha Juma')

    # Quote and order

    def test_quote_is_frozen(self):
        with patch.object(self.engine, 'build_quote', wraps=self.engine.build_quote) as build_quote:
            self.reach_quote_by_street()
            self.send(text('sijui'))
            self.send(tap('PAY_LIPA_NAMBA'))
            self.send(tap('PAY_CHANGE'))
        self.assertEqual(build_quote.call_count, 1)
        self.assertEqual(self.session().checkout.quote.fee_tzs, 6000)

    def test_single_order_on_reentry(self):
        self.reach_quote_by_street()
        self.send(tap('PAY_LIPA_NAMBA'))
        first_order_id = self.session().checkout.order_id

        summary, options = self.send(tap('PAY_CHANGE'))
        self.assertEqual(self.session().state, BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS)
        self.assertIn('140,000', summary.body)

        self.send(tap('PAY_VODA_P2P'))
        session = self.session()
        self.assertEqual(session.checkout.order_id, first_order_id)
        self.assertEqual(session.checkout.payment_option, 'PAY_VODA_P2P')
        self.assertEqual(len(self.store.list_orders()), 1)

    def test_order_total_is_items_only(self):
        self.send(tap('ADD_furaha'))
        self.send(tap('ADD_furaha'))
        self.send(tap('ADD_kiboko'))
        self.send(tap('ACTION_CHECKOUT'))
        self.send(tap('FULFILL_PICKUP'))
        self.send(text('0754111222'))
        self.send(text('Asha'))
        self.send(tap('PAY_LIPA_NAMBA'))
        [order] = self.store.list_orders()
        self.assertEqual(order.total_tzs, 360000)

    def test_unavailable_payment_option_is_ignored(self):
        self.reach_quote_by_street()
        self.send(tap('PAY_USSD'))
        self.assertEqual(self.session().state, BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS)
        self.assertEqual(self.store.list_orders(), [])

    @override_settings(CLICKPESA_CLIENT_ID='client', CLICKPESA_API_KEY='key')
    def test_ussd_option_enqueues_push(self):
        with patch('finance.tasks.request_ussd_push.delay') as delay:
            self.reach_quote_by_street()
            self.send(tap('PAY_USSD'))
        [order] = self.store.list_orders()
        delay.assert_called_once_with(order.order_id, CUSTOMER, 140000)

    @override_settings(CLICKPESA_CLIENT_ID='client', CLICKPESA_API_KEY='key')
    def test_ussd_enqueue_failure_is_recorded(self):
        with patch('finance.tasks.request_ussd_push.delay', side_effect=OSError('broker down')):
            self.reach_quote_by_street()
            self.send(tap('PAY_USSD'))
        self.assertEqual(self.session().state, BotState.WAIT_PAYMENT_PROOF)
        [failure] = self.store.list_delivery_failures()
        self.assertEqual(failure['channel'], 'psp')

    @override_settings(CLICKPESA_CLIENT_ID='client', CLICKPESA_API_KEY='key')
    def test_checkout_option_enqueues_link(self):
        with patch('finance.tasks.send_checkout_link.delay') as delay:
            [_, options] = self.reach_quote_by_street()
            self.assertEqual(choice_ids(options), ['PAY_LIPA_NAMBA', 'PAY_VODA_P2P', 'PAY_USSD', 'PAY_CHECKOUT'])
            [instructions] = self.send(tap('PAY_CHECKOUT'))
        [order] = self.store.list_orders()
        delay.assert_called_once_with(order.order_id, CUSTOMER, 140000, 'Asha Juma', CUSTOMER, 'sw')
        self.assertIn('140,000', instructions.body)
        self.assertEqual(self.session().state, BotState.WAIT_PAYMENT_PROOF)

    # Side states

    def test_agent_handoff(self):
        self.send(tap('ACTION_TALK_TO_AGENT'))
        ack, admin = self.send(text('Nahitaji msaada wa dozi'))
        self.assertEqual(admin.to, ADMIN)
        self.assertIn('Nahitaji msaada wa dozi', admin.body)
        self.assertIn(CUSTOMER, admin.body)
        self.assertEqual(self.session().state, BotState.IDLE)

    def test_track_order(self):
        order = Order('UJANI-2025-0001', CUSTOMER, (OrderItem('kiboko', 'Kiboko', 140000, 1),), 140000, 'pickup')
        self.store.create_order(order)
        PaymentLedger(store=self.store).apply(PaymentEvent('evt-1', order.order_id, 50000))

        self.send(tap('ACTION_TRACK_BY_NAME'))
        self.assertEqual(self.session().state, BotState.TRACK_ORDER_BY_ID)
        [reply] = self.send(text(' ujani-2025-0001 '))
        self.assertIn('50,000', reply.body)
        self.assertIn('90,000', reply.body)
        self.assertEqual(self.session().state, BotState.IDLE)

    def test_track_last_order(self):
        self.send(tap('BUY_kiboko'))
        self.send(tap('FULFILL_PICKUP'))
        self.send(text('0754111222'))
        self.send(text('Asha'))
        self.send(tap('PAY_LIPA_NAMBA'))
        self.send(text('QK72HD81JS'))
        [order] = self.store.list_orders()

        [prompt] = self.send(tap('ACTION_TRACK_BY_NAME'))
        self.assertEqual(choice_ids(prompt), ['TRACK_LAST'])
        self.assertEqual(prompt.choices[0].title, order.order_id)

        [reply] = self.send(tap('TRACK_LAST'))
        self.assertIn(order.order_id, reply.body)
        self.assertIn('140,000', reply.body)
        self.assertEqual(self.session().state, BotState.IDLE)

    @override_settings(ORDER_ID_PREFIX='ujani')
    def test_track_with_lower_case_prefix(self):
        self.store.create_order(Order('ujani-2026-0001', CUSTOMER,
                                      (OrderItem('kiboko', 'Kiboko', 140000, 1),), 140000, 'pickup'))
        self.send(tap('ACTION_TRACK_BY_NAME'))
        [reply] = self.send(text('UJANI-2026-0001'))
        self.assertIn('140,000', reply.body)

    def test_track_someone_elses_order(self):
        self.store.create_order(Order('UJANI-2025-0001', '+255799999999',
                                      (OrderItem('kiboko', 'Kiboko', 140000, 1),), 140000, 'pickup'))
        self.send(tap('ACTION_TRACK_BY_NAME'))
        [reply] = self.send(text('UJANI-2025-0001'))
        self.assertNotIn('140,000', reply.body)
        self.assertEqual(self.session().state, BotState.IDLE)

    # Robustness

    def test_duplicate_message_is_absorbed(self):
        message = tap('ADD_kiboko', message_id='wamid.same')
        self.assertEqual(len(self.send(message)), 1)
        self.assertEqual(self.send(message), [])
        self.assertEqual(self.session().cart[0].quantity, 1)

    def test_unmatched_event_restates_prompt(self):
        self.send(tap('BUY_kiboko'))
        [reply] = self.send(text('sielewi'))
        self.assertEqual(choice_ids(reply), ['FULFILL_DELIVERY', 'FULFILL_PICKUP'])
        [reply] = self.send(image('media-1'))
        self.assertEqual(choice_ids(reply), ['FULFILL_DELIVERY', 'FULFILL_PICKUP'])

    def test_unexpected_error_answers_try_again(self):
        resolver = Mock(spec=DistanceResolver)
        resolver.districts.side_effect = RuntimeError("dataset exploded")
        dispatcher = Dispatcher(store=self.store, resolver=resolver, engine=self.engine)

        dispatcher.handle(tap('BUY_kiboko'))
        with self.assertLogs('bot.dispatcher', level='ERROR'):
            [reply] = dispatcher.handle(tap('FULFILL_DELIVERY'))
        self.assertEqual(reply.kind, 'text')
        self.assertEqual(self.session().state, BotState.ASK_FULFILLMENT)

    def test_concurrent_events_for_one_customer(self):
        barrier = threading.Barrier(2)
        errors = []

        def add():
            try:
                barrier.wait(2)
                self.send(tap('ADD_kiboko'))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(errors, [])
        self.assertEqual(self.session().cart[0].quantity, 2)


# ===========================================
# WEBHOOK VIEW
# ===========================================

@override_settings(META_VERIFY_TOKEN='verify-me', META_APP_SECRET='', ADMIN_WA_NUMBER=ADMIN,
                   UJANI_STORE_BACKEND='memory')
class TestMetaWebhookView(SimpleTestCase):
    URL = '/webhooks/meta/'

    def setUp(self):
        cache.clear()
        persistence._stores.clear()

    def post(self, payload, **headers):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return self.client.post(self.URL, data=body, content_type='application/json', **headers)

    def test_handshake(self):
        response = self.client.get(self.URL, {'hub.mode': 'subscribe', 'hub.verify_token': 'verify-me',
                                              'hub.challenge': '1158201444'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b'1158201444')

    def test_handshake_wrong_token(self):
        response = self.client.get(self.URL, {'hub.mode': 'subscribe', 'hub.verify_token': 'nope',
                                              'hub.challenge': '1'})
        self.assertEqual(response.status_code, 403)

    @patch('bot.views.enqueue_outbound')
    def test_message_is_dispatched(self, enqueue):
        response = self.post(envelope({'from': CUSTOMER_WA, 'id': 'wamid.v1', 'type': 'text',
                                       'text': {'body': 'Habari'}}))
        self.assertEqual(response.status_code, 200)
        customer_id, replies = enqueue.call_args[0]
        self.assertEqual(customer_id, CUSTOMER)
        self.assertEqual(replies[0].kind, 'list')
        self.assertEqual(enqueue.call_args[1]['reference'], 'wamid.v1')

    @patch('bot.views.enqueue_outbound')
    def test_status_update_is_ignored(self, enqueue):
        response = self.post(envelope(statuses=[{'id': 'wamid.1', 'status': 'read'}]))
        self.assertEqual(response.status_code, 200)
        enqueue.assert_not_called()

    @patch('bot.views.enqueue_outbound')
    def test_invalid_json(self, enqueue):
        response = self.post(b'{not json')
        self.assertEqual(response.status_code, 400)
        enqueue.assert_not_called()

    @override_settings(META_APP_SECRET='app-secret')
    @patch('bot.views.enqueue_outbound')
    def test_bad_signature_is_acknowledged_and_discarded(self, enqueue):
        payload = envelope({'from': CUSTOMER_WA, 'id': 'wamid.v2', 'type': 'text', 'text': {'body': 'Habari'}})
        response = self.post(payload, HTTP_X_HUB_SIGNATURE_256='sha256=' + '0' * 64)
        self.assertEqual(response.status_code, 200)
        enqueue.assert_not_called()

    @override_settings(META_APP_SECRET='app-secret')
    @patch('bot.views.enqueue_outbound')
    def test_good_signature(self, enqueue):
        body = json.dumps(envelope({'from': CUSTOMER_WA, 'id': 'wamid.v3', 'type': 'text',
                                    'text': {'body': 'Habari'}})).encode()
        signature = 'sha256=' + hmac.new(b'app-secret', body, hashlib.sha256).hexdigest()
        response = self.post(body, HTTP_X_HUB_SIGNATURE_256=signature)
        self.assertEqual(response.status_code, 200)
        enqueue.assert_called_once()


# ===========================================
# OUTBOUND TRANSPORT
# ===========================================

@override_settings(META_API_URL='https://graph.example.test/v20.0', META_PHONE_NUMBER_ID='1234',
                   META_API_TOKEN='token', UJANI_STORE_BACKEND='memory')
class TestOutboundTransport(SimpleTestCase):

    def setUp(self):
        persistence._stores.clear()
        self.message = OutboundMessage.text(CUSTOMER, 'Habari')

    @patch('bot.services.requests.post')
    def test_send(self, post):
        post.return_value = MagicMock(status_code=200)
        post.return_value.json.return_value = {'messages': [{'id': 'wamid.out'}]}

        self.assertEqual(MetaWhatsAppService.send(self.message), 'wamid.out')
        url = post.call_args[0][0]
        self.assertEqual(url, 'https://graph.example.test/v20.0/1234/messages')
        self.assertEqual(post.call_args[1]['json']['to'], CUSTOMER_WA)

    @override_settings(META_API_TOKEN='')
    def test_send_without_credentials(self):
        with self.assertRaises(WhatsAppSendError):
            MetaWhatsAppService.send(self.message)

    @patch('bot.services.MetaWhatsAppService.send', return_value='wamid.out')
    def test_task_sends_in_order(self, send):
        second = OutboundMessage.text(ADMIN, 'Admin')
        result = send_outbound_messages.apply(args=[[self.message.to_dict(), second.to_dict()]]).get()
        self.assertEqual(result, {'sent': ['wamid.out', 'wamid.out'], 'failed': 0})
        self.assertEqual([c[0][0].to for c in send.call_args_list], [CUSTOMER, ADMIN])

    @patch('bot.services.MetaWhatsAppService.send', side_effect=WhatsAppSendError('HTTP 500'))
    def test_task_gives_up_and_records_failure(self, send):
        result = send_outbound_messages.apply(args=[[self.message.to_dict()]],
                                              kwargs={'reference': 'wamid.in'}, retries=3).get()
        self.assertEqual(result['failed'], 1)
        [failure] = persistence.get_store().list_delivery_failures()
        self.assertEqual((failure['channel'], failure['recipient'], failure['reference']),
                         ('whatsapp', CUSTOMER, 'wamid.in'))

    @patch('bot.tasks.send_outbound_messages.delay', side_effect=OSError('broker down'))
    def test_enqueue_failure_is_recorded(self, delay):
        enqueue_outbound(CUSTOMER, [self.message], reference='wamid.in')
        [failure] = persistence.get_store().list_delivery_failures()
        self.assertEqual(failure['recipient'], CUSTOMER)

    @patch('bot.tasks.send_outbound_messages.delay')
    def test_enqueue_nothing(self, delay):
        enqueue_outbound(CUSTOMER, [])
        delay.assert_not_called()
