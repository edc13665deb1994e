"""
BOT App - Inbound dispatcher for UJANI

Routes one inbound WhatsApp message through the conversation state machine:

  IDLE -> COLLECTING_CART -> ASK_FULFILLMENT -> ASK_PICKUP_PHONE | ASK_DELIVERY_LOCATION
       -> ASK_DELIVERY_CONFIRM -> ASK_CUSTOMER_NAME -> SHOW_QUOTE_AND_PAYMENT_OPTIONS
       -> WAIT_PAYMENT_PROOF -> IDLE

plus ASK_AGENT_HANDOFF and TRACK_ORDER_BY_ID, reachable from any state.

Each message is handled under the customer's lock, from session load to save,
and produces the list of OutboundMessage replies to send.
"""

import logging
from dataclasses import replace
from typing import List, Optional

from django.conf import settings
from django.core.cache import cache

from bot.catalog import format_tzs, get_product
from bot.messages import (
    PRODUCT_ACTIONS, Action, BotMessageBuilder, Choice, OutboundMessage, PaymentOption,
    available_payment_options, page_count, t,
)
from bot.services import InboundMessage
from bot.sessions import (
    BotState, DeliveryLocation, FulfillmentChoice, GpsPin, LocationConfirm, LocationEntry,
    NameEntry, PickupContact, ProofPending, QuoteShown, SelectionCursor, Session, SessionStore,
    normalize_customer_id, normalize_tz_phone,
)
from core.locks import customer_key, locks
from core.models import FailureChannel
from finance.ledger import OrderNotFound, PaymentLedger
from finance.orders import Fulfillment, OrderAggregator, PaymentEvidence, normalize_order_id
from logistics.services.distance import get_distance_resolver
from logistics.services.pricing import FeeQuotingEngine
from logistics.utils import normalize_place

logger = logging.getLogger(__name__)

RESET_WORDS = {'menu', 'menyu', 'reset', 'start', 'anza', 'cancel', 'ghairi'}
DELIVERY_WORDS = {'1', 'delivery', 'deliver', 'letewa', 'leta'}
PICKUP_WORDS = {'2', 'pickup', 'pick up', 'chukua', 'ofisini'}
YES_WORDS = {'yes', 'ndiyo', 'ndio', 'sawa', 'ok'}
NO_WORDS = {'no', 'hapana', 'change', 'badilisha'}

MAX_NAME_LENGTH = 80
DEDUPE_KEY = 'wa:msg:{}'


class Dispatcher:
    """
    Conversation state machine.

    Usage:
        replies = Dispatcher().handle(inbound_message)
    """

    def __init__(self, store=None, resolver=None, engine=None, lock_manager=None):
        if store is None:
            from core.persistence import get_store
            store = get_store()
        self.store = store
        self.sessions = SessionStore(store=store)
        self.orders = OrderAggregator(store=store)
        self.ledger = PaymentLedger(store=store, lock_manager=lock_manager)
        self.resolver = resolver or get_distance_resolver()
        self.engine = engine or FeeQuotingEngine()
        self.locks = lock_manager or locks

        self._handlers = {
            BotState.IDLE: self._on_idle,
            BotState.COLLECTING_CART: self._on_collecting_cart,
            BotState.ASK_FULFILLMENT: self._on_ask_fulfillment,
            BotState.ASK_PICKUP_PHONE: self._on_ask_pickup_phone,
            BotState.ASK_DELIVERY_LOCATION: self._on_ask_delivery_location,
            BotState.ASK_DELIVERY_CONFIRM: self._on_ask_delivery_confirm,
            BotState.ASK_CUSTOMER_NAME: self._on_ask_customer_name,
            BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS: self._on_show_quote,
            BotState.WAIT_PAYMENT_PROOF: self._on_wait_payment_proof,
            BotState.ASK_AGENT_HANDOFF: self._on_agent_handoff,
            BotState.TRACK_ORDER_BY_ID: self._on_track_order,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, inbound: InboundMessage) -> List[OutboundMessage]:
        """
        Process one inbound message. Never raises.

        Returns:
            Replies to send (customer and, for proofs and handoffs, the admin)
        """
        customer_id = normalize_customer_id(inbound.sender)

        if inbound.message_id and not cache.add(DEDUPE_KEY.format(inbound.message_id), 1,
                                                settings.MESSAGE_DEDUPE_SECONDS):
            logger.info(f"[DISPATCH] Duplicate message {inbound.message_id} from {customer_id} ignored")
            return []

        lang = 'sw'
        try:
            with self.locks.hold(customer_key(customer_id)):
                session = self.sessions.get(customer_id)
                lang = session.language
                state_before = session.state
                replies = self._route(session, inbound)
                self.sessions.save(session)
        except Exception:
            logger.exception(f"[DISPATCH] Failed to handle message {inbound.message_id} from {customer_id}")
            return [OutboundMessage.text(customer_id, t(lang, 'try_again'))]

        logger.info(
            f"[DISPATCH] {customer_id} {inbound.kind} {state_before.value} -> {session.state.value} "
            f"({len(replies)} repl{'y' if len(replies) == 1 else 'ies'})"
        )
        return replies

    def _route(self, session: Session, inbound: InboundMessage) -> List[OutboundMessage]:
        if inbound.has_location:
            session.last_pin = GpsPin(inbound.latitude, inbound.longitude)

        if inbound.kind == 'text' and normalize_place(inbound.text) in RESET_WORDS:
            session.reset()
            return [BotMessageBuilder.main_menu(session.customer_id, session.language)]

        if inbound.reply_id:
            replies = self._global_action(session, inbound.reply_id)
            if replies is not None:
                return replies

        return self._handlers[session.state](session, inbound)

    # ------------------------------------------------------------------
    # Actions available from any state
    # ------------------------------------------------------------------

    def _global_action(self, session: Session, action: str) -> Optional[List[OutboundMessage]]:
        to, lang = session.customer_id, session.language

        if action.startswith(PRODUCT_ACTIONS):
            return self._product_action(session, action)

        if action == Action.PRODUCTS:
            return [BotMessageBuilder.products(to, lang)]

        if action == Action.VIEW_CART:
            return [BotMessageBuilder.cart(to, lang, session)]

        if action == Action.CHECKOUT:
            return self._begin_checkout(session)

        if action == Action.TRACK_ORDER:
            session.transition(BotState.TRACK_ORDER_BY_ID)
            return [BotMessageBuilder.track_prompt(to, lang, session.last_order_id)]

        if action == Action.TALK_TO_AGENT:
            session.transition(BotState.ASK_AGENT_HANDOFF)
            return [OutboundMessage.text(to, t(lang, 'agent_prompt'))]

        if action == Action.CHANGE_LANGUAGE:
            session.language = 'en' if session.language == 'sw' else 'sw'
            return [
                OutboundMessage.text(to, t(session.language, 'language_changed')),
                BotMessageBuilder.main_menu(to, session.language),
            ]

        return None

    def _product_action(self, session: Session, action: str) -> List[OutboundMessage]:
        to, lang = session.customer_id, session.language
        prefix, _, sku = action.partition('_')
        product = get_product(sku)
        if product is None:
            logger.info(f"[DISPATCH] Unknown product '{sku}' from {to}")
            return [OutboundMessage.text(to, t(lang, 'product_not_found'))]

        if prefix in ('PRODUCT', 'VARIANTS') or product.has_variants:
            # A product with variants is never added itself
            if product.has_variants:
                return [BotMessageBuilder.variants(to, lang, product)]
            return [BotMessageBuilder.product_card(to, lang, product)]

        if prefix == 'DETAILS':
            return [BotMessageBuilder.product_details(to, lang, product)]

        item = session.add_to_cart(product.sku, product.title(lang), product.price_tzs)
        session.transition(BotState.COLLECTING_CART)

        if prefix == 'BUY':
            return self._begin_checkout(session)
        return [BotMessageBuilder.added_to_cart(to, lang, item, session.cart_total_tzs)]

    def _begin_checkout(self, session: Session) -> List[OutboundMessage]:
        to, lang = session.customer_id, session.language
        if not session.cart:
            return [OutboundMessage.text(to, t(lang, 'cart_empty'))]
        session.transition(BotState.ASK_FULFILLMENT, FulfillmentChoice())
        return [BotMessageBuilder.ask_fulfillment(to, lang)]

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _on_idle(self, session, inbound):
        return [BotMessageBuilder.main_menu(session.customer_id, session.language)]

    def _on_collecting_cart(self, session, inbound):
        return [BotMessageBuilder.cart(session.customer_id, session.language, session)]

    def _on_ask_fulfillment(self, session, inbound):
        to, lang = session.customer_id, session.language
        choice = inbound.reply_id or normalize_place(inbound.text)

        if choice == Action.FULFILL_DELIVERY or choice in DELIVERY_WORDS:
            session.transition(BotState.ASK_DELIVERY_LOCATION, LocationEntry())
            return [self._location_menu(session)]

        if choice == Action.FULFILL_PICKUP or choice in PICKUP_WORDS:
            session.transition(BotState.ASK_PICKUP_PHONE, PickupContact())
            return [OutboundMessage.text(to, t(lang, 'ask_pickup_phone'))]

        return [BotMessageBuilder.ask_fulfillment(to, lang)]

    def _on_ask_pickup_phone(self, session, inbound):
        to, lang = session.customer_id, session.language
        phone = normalize_tz_phone(inbound.text) if inbound.kind == 'text' else None
        if phone is None:
            return [OutboundMessage.text(to, t(lang, 'invalid_phone'))]

        session.transition(BotState.ASK_CUSTOMER_NAME,
                           NameEntry(fulfillment=Fulfillment.PICKUP, contact_phone=phone))
        return [BotMessageBuilder.ask_name(to, lang, inbound.profile_name)]

    # Delivery location: district -> ward -> street, or a location pin

    def _on_ask_delivery_location(self, session, inbound):
        to, lang = session.customer_id, session.language
        cursor = session.cursor

        if inbound.has_location:
            return self._confirm_location(session, DeliveryLocation(
                gps=GpsPin(inbound.latitude, inbound.longitude)
            ))

        action = inbound.reply_id
        if action in (Action.PAGE_NEXT, Action.PAGE_PREV):
            _, _, names, extra = self._location_options(session)
            last_page = page_count(len(names), settings.LOCATION_PAGE_SIZE, len(extra)) - 1
            step = 1 if action == Action.PAGE_NEXT else -1
            cursor.page = min(max(0, cursor.page + step), last_page)
            return [self._location_menu(session)]

        if action == Action.USE_LAST_PIN and session.last_pin and not cursor.district:
            return self._confirm_location(session, DeliveryLocation(gps=session.last_pin))

        if action == Action.OUTSIDE_DAR and not cursor.district and settings.OUTSIDE_DAR_FLAT_FEE > 0:
            return self._confirm_location(session, DeliveryLocation(outside_dar=True))

        if action == Action.WARD_UNLISTED and cursor.district:
            return self._confirm_location(session, DeliveryLocation(district=cursor.district))

        if action == Action.STREET_SKIP and cursor.ward:
            return self._confirm_location(session, DeliveryLocation(district=cursor.district, ward=cursor.ward))

        if not cursor.district:
            text = self._location_text(action, Action.DISTRICT_PREFIX, inbound)
            options = self.resolver.districts()
            if not options and text:
                # No reference table: take the name as typed, priced at the default distance
                return self._confirm_location(session, DeliveryLocation(district=text))
            match = self.resolver.match_option(text, options)
            if match is None:
                return self._location_not_matched(session)
            cursor.district, cursor.page = match, 0
            return [self._location_menu(session)]

        if not cursor.ward:
            text = self._location_text(action, Action.WARD_PREFIX, inbound)
            match = self.resolver.match_option(text, self.resolver.wards(cursor.district))
            if match is None:
                return self._location_not_matched(session)
            if not self.resolver.streets(cursor.district, match):
                return self._confirm_location(session, DeliveryLocation(district=cursor.district, ward=match))
            cursor.ward, cursor.page = match, 0
            return [self._location_menu(session)]

        text = self._location_text(action, Action.STREET_PREFIX, inbound)
        if not text:
            return [self._location_menu(session)]
        street = self.resolver.match_option(text, self.resolver.streets(cursor.district, cursor.ward)) or text
        return self._confirm_location(session, DeliveryLocation(
            district=cursor.district, ward=cursor.ward, street=street
        ))

    @staticmethod
    def _location_text(action: str, prefix: str, inbound: InboundMessage) -> str:
        if action and action.startswith(prefix):
            return action[len(prefix):]
        if inbound.kind == 'text':
            return inbound.text.strip()
        return ''

    def _location_not_matched(self, session):
        return [
            OutboundMessage.text(session.customer_id, t(session.language, 'location_not_matched')),
            self._location_menu(session),
        ]

    def _location_options(self, session):
        """(body, id prefix, names, extra rows) of the list the cursor is on."""
        lang, cursor = session.language, session.cursor

        if not cursor.district:
            extra = []
            if session.last_pin:
                extra.append(Choice(Action.USE_LAST_PIN, t(lang, 'use_last_pin'),
                                    f"{session.last_pin.latitude:.4f}, {session.last_pin.longitude:.4f}"))
            if settings.OUTSIDE_DAR_FLAT_FEE > 0:
                extra.append(Choice(Action.OUTSIDE_DAR, t(lang, 'outside_dar'),
                                    t(lang, 'outside_dar_desc', fee=format_tzs(settings.OUTSIDE_DAR_FLAT_FEE))))
            return t(lang, 'ask_district'), Action.DISTRICT_PREFIX, self.resolver.districts(), extra
        if not cursor.ward:
            return (t(lang, 'ask_ward', district=cursor.district), Action.WARD_PREFIX,
                    self.resolver.wards(cursor.district),
                    [Choice(Action.WARD_UNLISTED, t(lang, 'ward_unlisted'))])
        return (t(lang, 'ask_street', ward=cursor.ward), Action.STREET_PREFIX,
                self.resolver.streets(cursor.district, cursor.ward),
                [Choice(Action.STREET_SKIP, t(lang, 'street_skip'))])

    def _location_menu(self, session) -> OutboundMessage:
        body, prefix, names, extra = self._location_options(session)
        return BotMessageBuilder.location_list(
            session.customer_id, session.language, body, prefix, names,
            session.cursor.page, settings.LOCATION_PAGE_SIZE, extra=extra,
        )

    def _confirm_location(self, session, location: DeliveryLocation):
        session.transition(BotState.ASK_DELIVERY_CONFIRM, LocationConfirm(location=location))
        return [BotMessageBuilder.confirm_location(session.customer_id, session.language, location)]

    def _on_ask_delivery_confirm(self, session, inbound):
        to, lang = session.customer_id, session.language
        choice = inbound.reply_id or normalize_place(inbound.text)

        if inbound.has_location:
            return self._confirm_location(session, DeliveryLocation(
                gps=GpsPin(inbound.latitude, inbound.longitude)
            ))

        if choice == Action.LOCATION_CONFIRM or choice in YES_WORDS:
            session.transition(BotState.ASK_CUSTOMER_NAME, NameEntry(
                fulfillment=Fulfillment.DELIVERY,
                contact_phone=session.customer_id,
                location=session.checkout.location,
            ))
            return [BotMessageBuilder.ask_name(to, lang, inbound.profile_name)]

        if choice == Action.LOCATION_CHANGE or choice in NO_WORDS:
            session.transition(BotState.ASK_DELIVERY_LOCATION, LocationEntry())
            session.cursor = SelectionCursor()
            return [self._location_menu(session)]

        return [BotMessageBuilder.confirm_location(to, lang, session.checkout.location)]

    # Name, quote and payment

    def _on_ask_customer_name(self, session, inbound):
        to, lang = session.customer_id, session.language
        if inbound.reply_id == Action.USE_PROFILE_NAME:
            raw_name = inbound.profile_name
        else:
            raw_name = inbound.text if inbound.kind == 'text' else ''
        name = ' '.join(raw_name.split())[:MAX_NAME_LENGTH]
        if not name:
            return [OutboundMessage.text(to, t(lang, 'invalid_name'))]

        entry = session.checkout
        quote = None
        if entry.fulfillment == Fulfillment.DELIVERY:
            quote = self._delivery_quote(entry.location)
            if quote is None or (quote.out_of_service and not quote.flat_rate):
                km = quote.distance_km if quote is not None else '-'
                session.transition(BotState.ASK_FULFILLMENT, FulfillmentChoice())
                return [
                    OutboundMessage.text(to, t(lang, 'out_of_service', km=km)),
                    BotMessageBuilder.ask_fulfillment(to, lang),
                ]

        view = QuoteShown(
            fulfillment=entry.fulfillment,
            customer_name=name,
            contact_phone=entry.contact_phone,
            location=entry.location,
            quote=quote,
        )
        session.transition(BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS, view)
        return self._quote_summary(session, view)

    def _delivery_quote(self, location: DeliveryLocation):
        """Frozen once per checkout; None when outside-Dar delivery is switched off."""
        if location.outside_dar:
            return self.engine.outside_dar_quote()
        resolution = self.resolver.resolve(
            district=location.district,
            ward=location.ward,
            street=location.street,
            gps=(location.gps.latitude, location.gps.longitude) if location.gps else None,
        )
        return self.engine.build_quote(resolution)

    def _quote_summary(self, session, view: QuoteShown) -> List[OutboundMessage]:
        order = self.store.get_order(view.order_id) if view.order_id else None
        if order is not None:
            items, total = order.items, order.total_tzs
        else:
            items, total = session.cart, session.cart_total_tzs
        return BotMessageBuilder.quote_summary(session.customer_id, session.language, view, items, total)

    def _on_show_quote(self, session, inbound):
        option = inbound.reply_id
        if option not in PaymentOption.ALL or option not in available_payment_options():
            return self._quote_summary(session, session.checkout)
        return self._choose_payment(session, session.checkout, option)

    def _choose_payment(self, session, view: QuoteShown, option: str) -> List[OutboundMessage]:
        to, lang = session.customer_id, session.language

        order = self.store.get_order(view.order_id) if view.order_id else None
        if order is None:
            try:
                order = self.orders.create_order(
                    customer_id=session.customer_id,
                    cart=session.cart,
                    fulfillment=view.fulfillment,
                    customer_name=view.customer_name,
                    contact_phone=view.contact_phone,
                    language=lang,
                    quote=view.quote,
                )
            except ValueError as e:
                logger.warning(f"[DISPATCH] Order not created for {to}: {e}")
                session.reset()
                return [OutboundMessage.text(to, t(lang, 'cart_empty'))]

            view = replace(view, order_id=order.order_id)
            session.transition(BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS, view)
            session.clear_cart()
            session.last_order_id = order.order_id
            # The order exists from here on, whatever happens next
            self.sessions.save(session)

        session.transition(BotState.WAIT_PAYMENT_PROOF, ProofPending(
            order_id=order.order_id, payment_option=option, quote_view=view,
        ))
        if option == PaymentOption.USSD:
            self._request_ussd_push(order, view.contact_phone)
        elif option == PaymentOption.CHECKOUT:
            self._request_checkout_link(order, view.contact_phone)

        return [BotMessageBuilder.payment_instructions(to, lang, option, order, view.contact_phone)]

    def _request_ussd_push(self, order, phone: str) -> None:
        from finance.tasks import request_ussd_push

        try:
            request_ussd_push.delay(order.order_id, phone, order.total_tzs)
        except Exception as e:
            logger.error(f"[DISPATCH] Could not enqueue USSD push for {order.order_id}: {e}")
            self.store.record_delivery_failure(
                channel=FailureChannel.PSP,
                recipient=phone,
                error=f"enqueue failed: {e}",
                reference=order.order_id,
            )

    def _request_checkout_link(self, order, phone: str) -> None:
        from finance.tasks import send_checkout_link

        try:
            send_checkout_link.delay(order.order_id, order.customer_id, order.total_tzs,
                                     order.customer_name, phone, order.language)
        except Exception as e:
            logger.error(f"[DISPATCH] Could not enqueue checkout link for {order.order_id}: {e}")
            self.store.record_delivery_failure(
                channel=FailureChannel.PSP,
                recipient=order.customer_id,
                error=f"enqueue failed: {e}",
                reference=order.order_id,
            )

    def _on_wait_payment_proof(self, session, inbound):
        to, lang = session.customer_id, session.language
        pending = session.checkout

        if inbound.reply_id == Action.PAY_CHANGE:
            session.transition(BotState.SHOW_QUOTE_AND_PAYMENT_OPTIONS, pending.quote_view)
            return self._quote_summary(session, pending.quote_view)

        order = self.store.get_order(pending.order_id)
        if order is None:
            logger.warning(f"[DISPATCH] Order {pending.order_id} of {to} no longer exists")
            session.reset()
            return [BotMessageBuilder.main_menu(to, lang)]

        text = inbound.text.strip() if inbound.kind == 'text' else ''
        if not text and not inbound.media_id:
            return [BotMessageBuilder.payment_instructions(to, lang, pending.payment_option, order,
                                                           pending.quote_view.contact_phone)]

        evidence = PaymentEvidence(
            order_id=order.order_id,
            customer_id=to,
            text=text,
            media_id=inbound.media_id,
            caption=inbound.caption,
        )
        self.store.attach_evidence(evidence)
        logger.info(f"[DISPATCH] Payment proof for {order.order_id} from {to}")

        session.reset()
        replies = [OutboundMessage.text(to, t(lang, 'proof_received', order_id=order.order_id))]
        replies.extend(self._admin_messages(BotMessageBuilder.admin_payment_proof(order, evidence)))
        return replies

    # Side states

    def _on_agent_handoff(self, session, inbound):
        to, lang = session.customer_id, session.language
        text = inbound.text.strip() or inbound.caption.strip()
        if not text and inbound.media_id:
            text = f"[media {inbound.media_id}]"
        if not text:
            return [OutboundMessage.text(to, t(lang, 'agent_prompt'))]

        session.reset()
        replies = [OutboundMessage.text(to, t(lang, 'agent_forwarded'))]
        replies.extend(self._admin_messages(BotMessageBuilder.admin_agent_request(to, text)))
        return replies

    def _on_track_order(self, session, inbound):
        to, lang = session.customer_id, session.language
        if inbound.reply_id == Action.TRACK_LAST_ORDER:
            order_id = session.last_order_id
        else:
            order_id = normalize_order_id(inbound.text) if inbound.kind == 'text' else ''
        if not order_id:
            return [BotMessageBuilder.track_prompt(to, lang, session.last_order_id)]

        session.reset()
        order = self.store.get_order(order_id)
        # Customers only see their own orders
        if order is None or order.customer_id != to:
            return [OutboundMessage.text(to, t(lang, 'track_not_found', order_id=order_id))]
        try:
            snapshot = self.ledger.snapshot(order_id)
        except OrderNotFound:
            return [OutboundMessage.text(to, t(lang, 'track_not_found', order_id=order_id))]
        return [BotMessageBuilder.track_result(to, lang, snapshot)]

    @staticmethod
    def _admin_messages(message: OutboundMessage) -> List[OutboundMessage]:
        if not message.to:
            logger.warning("[DISPATCH] ADMIN_WA_NUMBER not set, admin notification dropped")
            return []
        return [message]
