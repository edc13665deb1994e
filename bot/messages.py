"""
BOT App - Outbound WhatsApp messages for UJANI

- Bilingual copy (Swahili default, English) with t()
- OutboundMessage intents (text, interactive list, reply buttons), clipped to
  the WhatsApp Cloud API limits and turned into API payloads by to_payload()
- BotMessageBuilder: every message the conversation sends
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from django.conf import settings

from bot.catalog import format_tzs, listed_products, variants_of

# WhatsApp interactive limits
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_INTERACTIVE_BODY = 1024
MAX_TEXT_BODY = 4096

LANGUAGES = ('sw', 'en')


STRINGS = {
    'sw': {
        'menu_body': "Habari! 👋 Karibu Ujani.\nChagua huduma hapa chini.",
        'menu_button': "Fungua menyu",
        'menu_section': "Huduma",
        'menu_products': "🛍️ Bidhaa",
        'menu_products_desc': "Angalia bidhaa na bei",
        'menu_cart': "🧺 Kikapu",
        'menu_cart_desc': "Angalia kikapu chako",
        'menu_checkout': "✅ Kamilisha oda",
        'menu_checkout_desc': "Endelea na malipo",
        'menu_track': "📦 Fuatilia oda",
        'menu_track_desc': "Hali ya malipo ya oda yako",
        'menu_agent': "👨‍💼 Ongea na wakala",
        'menu_agent_desc': "Pata msaada kutoka kwa mtu",
        'menu_language': "🌐 English",
        'menu_language_desc': "Switch to English",
        'products_body': "🛍️ Bidhaa zetu. Chagua moja kuona zaidi.",
        'products_button': "Bidhaa",
        'variants_body': "Chagua pakiti ya {title}.",
        'variants_button': "Pakiti",
        'product_card': "*{title}*\n{summary}\nBei: {price}",
        'btn_add': "➕ Weka kikapuni",
        'btn_buy': "⚡ Nunua sasa",
        'btn_details': "ℹ️ Maelezo",
        'product_not_found': "Samahani, bidhaa hiyo haipatikani. Tuma *menu* kuona bidhaa zilizopo.",
        'added_to_cart': "✅ {title} ×{qty} imewekwa kikapuni.\nJumla ya kikapu: {total}",
        'cart_empty': "🧺 Kikapu chako kiko tupu. Chagua bidhaa kwanza.",
        'cart_title': "🧺 *Kikapu chako*",
        'cart_line': "• {title} ×{qty} — {price}",
        'cart_total': "Jumla: *{total}*",
        'btn_checkout': "✅ Kamilisha oda",
        'btn_more': "🛍️ Ongeza bidhaa",
        'ask_fulfillment': "Ungependa kupata mzigo wako vipi? 🚚🏢",
        'btn_delivery': "🚚 Letewa",
        'btn_pickup': "🏢 Chukua ofisini",
        'ask_pickup_phone': "Weka namba ya simu ya mtu atakayechukua mzigo ☎️ (mf. 0712345678).",
        'invalid_phone': "Namba si sahihi. Tuma namba ya Tanzania, mf. 0712345678 au +255712345678.",
        'ask_district': "Chagua *wilaya* yako 🗺️ au tuma *Location* yako.",
        'ask_ward': "Wilaya: *{district}*. Chagua *kata* 📍 au tuma *Location*.",
        'ask_street': "Kata: *{ward}*. Chagua *mtaa* 🧭 (hiari) au tuma *Location*.",
        'list_button': "Chagua",
        'page_next': "➡️ Zaidi",
        'page_prev': "⬅️ Nyuma",
        'ward_unlisted': "❔ Kata haipo",
        'street_skip': "⏭️ Ruka mtaa",
        'use_last_pin': "📍 Location ya mwisho",
        'outside_dar': "🚌 Nje ya Dar",
        'outside_dar_desc': "Bei moja ya usafiri: {fee}",
        'outside_dar_place': "Nje ya Dar es Salaam",
        'location_not_matched': "Sikuelewa eneo hilo. Chagua kwenye orodha au andika jina kamili.",
        'confirm_location': "📍 Eneo la kuletewa:\n{place}\nNi sahihi?",
        'gps_place': "Location uliyotuma ({lat}, {lon})",
        'btn_confirm': "✅ Ndiyo",
        'btn_change': "✏️ Badilisha",
        'ask_name': "Taja *jina lako kamili* 🙏",
        'ask_name_profile': "Taja *jina lako kamili* 🙏 au tumia jina la WhatsApp.",
        'invalid_name': "Tafadhali andika jina lako.",
        'summary_title': "📦 *Muhtasari wa oda*",
        'summary_pickup': "Utachukua ofisini (Keko). Simu: {phone}",
        'summary_delivery': "Kuletewa: {place}\nUmbali: ~{km} km\nUsafirishaji: {fee} (utalipa msafirishaji)",
        'summary_delivery_flat': "Kuletewa: {place}\nUsafirishaji: {fee} (bei moja nje ya eneo letu, utalipa msafirishaji)",
        'summary_name': "Jina: {name}",
        'summary_total': "Jumla ya bidhaa: *{total}*",
        'choose_payment': "Chagua njia ya malipo 💳",
        'payment_button': "Malipo",
        'pay_lipa_namba': "Lipa Namba",
        'pay_lipa_namba_desc': "Tigo/Airtel/Halo Lipa Namba",
        'pay_voda_lnm': "M-Pesa Lipa Namba",
        'pay_voda_lnm_desc': "Vodacom Lipa kwa M-Pesa",
        'pay_voda_p2p': "M-Pesa kwa namba",
        'pay_voda_p2p_desc': "Tuma pesa kwa simu",
        'pay_ussd': "Ombi la malipo (USSD)",
        'pay_ussd_desc': "Utapokea ombi kwenye simu",
        'pay_checkout': "Kiungo cha malipo",
        'pay_checkout_desc': "Kadi au simu kupitia ClickPesa",
        'pay_manual': "Maelekezo ya wakala",
        'pay_manual_desc': "Wakala atakutumia namba ya malipo",
        'out_of_service': "😔 Samahani, eneo hilo (~{km} km) liko nje ya eneo tunalohudumia kwa sasa. "
                          "Unaweza kuchukua ofisini.",
        'order_created': "🧾 Oda yako: *{order_id}*",
        'instructions_lipa_namba': "Lipa *{amount}* kwa Lipa Namba *{till}* ({name}).\nKumbukumbu: {order_id}",
        'instructions_voda_lnm': "Lipa *{amount}* kwa M-Pesa Lipa Namba *{till}* ({name}).\nKumbukumbu: {order_id}",
        'instructions_voda_p2p': "Tuma *{amount}* kwa M-Pesa namba *{msisdn}* ({name}).\nKumbukumbu: {order_id}",
        'instructions_ussd': "Utapokea ombi la kulipa *{amount}* kwenye simu {phone}. Weka PIN kuthibitisha.",
        'instructions_checkout': "Tutakutumia kiungo cha kulipa *{amount}* kwa kadi au simu hivi punde.",
        'checkout_link': "💳 Lipa oda {order_id} kupitia kiungo hiki:\n{url}",
        'instructions_manual': "Wakala wetu atakutumia maelekezo ya kulipa *{amount}* kwa oda {order_id}.",
        'send_proof': "Ukishalipa, tuma *ujumbe wa muamala* au *picha ya risiti* hapa 📎",
        'btn_change_payment': "🔁 Badili malipo",
        'proof_received': "🙏 Asante! Tumepokea uthibitisho wa oda {order_id}. Tutakujulisha baada ya kuhakiki.",
        'admin_proof': "🧾 Uthibitisho wa malipo\nOda: {order_id}\nMteja: {customer} ({name})\nJumla: {total}\n{detail}",
        'admin_proof_text': "Ujumbe: {text}",
        'admin_proof_image': "Picha: {media_id} {caption}",
        'agent_prompt': "👨‍💼 Andika ujumbe wako, tutaupeleka kwa wakala.",
        'agent_forwarded': "✅ Ujumbe wako umetumwa kwa wakala. Atakujibu hivi punde.",
        'admin_agent': "👨‍💼 Mteja anaomba msaada\nMteja: {customer}\nUjumbe: {text}",
        'track_prompt': "📦 Tuma namba ya oda yako (mf. UJANI-2025-0001).",
        'track_prompt_last': "📦 Tuma namba ya oda, au chagua oda yako ya mwisho.",
        'track_not_found': "Hatukupata oda *{order_id}*. Hakikisha namba ni sahihi.",
        'track_result': "📦 Oda *{order_id}*\nHali: {status}\nJumla: {total}\nImelipwa: {paid}\nBaki: {balance}",
        'status_awaiting': "⌛ Inasubiri malipo",
        'status_partial': "🟡 Imelipwa sehemu",
        'status_paid': "✅ Imelipwa",
        'payment_received_partial': "ℹ️ Tumepokea malipo ya oda {order_id}. Imelipwa: {paid}. Baki: *{balance}*.",
        'payment_received_full': "✅ Malipo ya oda {order_id} yamekamilika ({paid}). Asante!",
        'language_changed': "Lugha imebadilishwa kuwa Kiswahili 🇹🇿",
        'try_again': "Samahani, kuna hitilafu. Tafadhali jaribu tena baada ya muda mfupi.",
    },
    'en': {
        'menu_body': "Hello! 👋 Welcome to Ujani.\nPick a service below.",
        'menu_button': "Open menu",
        'menu_section': "Services",
        'menu_products': "🛍️ Products",
        'menu_products_desc': "See products and prices",
        'menu_cart': "🧺 Cart",
        'menu_cart_desc': "View your cart",
        'menu_checkout': "✅ Checkout",
        'menu_checkout_desc': "Continue to payment",
        'menu_track': "📦 Track order",
        'menu_track_desc': "Payment status of your order",
        'menu_agent': "👨‍💼 Talk to an agent",
        'menu_agent_desc': "Get help from a person",
        'menu_language': "🌐 Kiswahili",
        'menu_language_desc': "Badili kuwa Kiswahili",
        'products_body': "🛍️ Our products. Pick one to see more.",
        'products_button': "Products",
        'variants_body': "Choose a {title} package.",
        'variants_button': "Packages",
        'product_card': "*{title}*\n{summary}\nPrice: {price}",
        'btn_add': "➕ Add to cart",
        'btn_buy': "⚡ Buy now",
        'btn_details': "ℹ️ Details",
        'product_not_found': "Sorry, that product is not available. Send *menu* to see our products.",
        'added_to_cart': "✅ {title} ×{qty} added to your cart.\nCart total: {total}",
        'cart_empty': "🧺 Your cart is empty. Pick a product first.",
        'cart_title': "🧺 *Your cart*",
        'cart_line': "• {title} ×{qty} — {price}",
        'cart_total': "Total: *{total}*",
        'btn_checkout': "✅ Checkout",
        'btn_more': "🛍️ Add more",
        'ask_fulfillment': "How would you like to get your order? 🚚🏢",
        'btn_delivery': "🚚 Delivery",
        'btn_pickup': "🏢 Office pickup",
        'ask_pickup_phone': "Send the phone number of the person picking up ☎️ (e.g. 0712345678).",
        'invalid_phone': "Invalid number. Send a Tanzanian number, e.g. 0712345678 or +255712345678.",
        'ask_district': "Choose your *district* 🗺️ or share your *Location*.",
        'ask_ward': "District: *{district}*. Choose a *ward* 📍 or share your *Location*.",
        'ask_street': "Ward: *{ward}*. Choose a *street* 🧭 (optional) or share your *Location*.",
        'list_button': "Choose",
        'page_next': "➡️ More",
        'page_prev': "⬅️ Back",
        'ward_unlisted': "❔ Ward not listed",
        'street_skip': "⏭️ Skip street",
        'use_last_pin': "📍 My last location",
        'outside_dar': "🚌 Outside Dar",
        'outside_dar_desc': "Flat delivery fee: {fee}",
        'outside_dar_place': "Outside Dar es Salaam",
        'location_not_matched': "I couldn't match that place. Pick from the list or type the full name.",
        'confirm_location': "📍 Delivery location:\n{place}\nIs this correct?",
        'gps_place': "Shared location ({lat}, {lon})",
        'btn_confirm': "✅ Yes",
        'btn_change': "✏️ Change",
        'ask_name': "Please send your *full name* 🙏",
        'ask_name_profile': "Please send your *full name* 🙏 or use your WhatsApp name.",
        'invalid_name': "Please type your name.",
        'summary_title': "📦 *Order summary*",
        'summary_pickup': "Office pickup (Keko). Phone: {phone}",
        'summary_delivery': "Deliver to: {place}\nDistance: ~{km} km\nDelivery: {fee} (paid to the rider)",
        'summary_delivery_flat': "Deliver to: {place}\nDelivery: {fee} (flat fee outside our area, paid to the rider)",
        'summary_name': "Name: {name}",
        'summary_total': "Items total: *{total}*",
        'choose_payment': "Choose a payment method 💳",
        'payment_button': "Payment",
        'pay_lipa_namba': "Lipa Namba",
        'pay_lipa_namba_desc': "Tigo/Airtel/Halo Lipa Namba",
        'pay_voda_lnm': "M-Pesa Lipa Namba",
        'pay_voda_lnm_desc': "Vodacom Lipa kwa M-Pesa",
        'pay_voda_p2p': "M-Pesa to number",
        'pay_voda_p2p_desc': "Send money to a phone",
        'pay_ussd': "Payment prompt (USSD)",
        'pay_ussd_desc': "Get a prompt on your phone",
        'pay_checkout': "Payment link",
        'pay_checkout_desc': "Card or mobile money via ClickPesa",
        'pay_manual': "Agent instructions",
        'pay_manual_desc': "An agent sends payment details",
        'out_of_service': "😔 Sorry, that location (~{km} km) is outside our delivery area for now. "
                          "You can pick up at our office.",
        'order_created': "🧾 Your order: *{order_id}*",
        'instructions_lipa_namba': "Pay *{amount}* to Lipa Namba *{till}* ({name}).\nReference: {order_id}",
        'instructions_voda_lnm': "Pay *{amount}* to M-Pesa Lipa Namba *{till}* ({name}).\nReference: {order_id}",
        'instructions_voda_p2p': "Send *{amount}* by M-Pesa to *{msisdn}* ({name}).\nReference: {order_id}",
        'instructions_ussd': "You will get a prompt to pay *{amount}* on {phone}. Enter your PIN to confirm.",
        'instructions_checkout': "We will send you a link to pay *{amount}* by card or mobile money shortly.",
        'checkout_link': "💳 Pay order {order_id} with this link:\n{url}",
        'instructions_manual': "Our agent will send instructions to pay *{amount}* for order {order_id}.",
        'send_proof': "Once paid, send the *transaction message* or a *receipt photo* here 📎",
        'btn_change_payment': "🔁 Change method",
        'proof_received': "🙏 Thank you! We received the proof for order {order_id}. We'll confirm after checking.",
        'admin_proof': "🧾 Payment proof\nOrder: {order_id}\nCustomer: {customer} ({name})\nTotal: {total}\n{detail}",
        'admin_proof_text': "Message: {text}",
        'admin_proof_image': "Image: {media_id} {caption}",
        'agent_prompt': "👨‍💼 Type your message and we'll pass it to an agent.",
        'agent_forwarded': "✅ Your message was sent to an agent. They'll reply shortly.",
        'admin_agent': "👨‍💼 Customer needs help\nCustomer: {customer}\nMessage: {text}",
        'track_prompt': "📦 Send your order number (e.g. UJANI-2025-0001).",
        'track_prompt_last': "📦 Send an order number, or pick your last order.",
        'track_not_found': "We couldn't find order *{order_id}*. Please check the number.",
        'track_result': "📦 Order *{order_id}*\nStatus: {status}\nTotal: {total}\nPaid: {paid}\nRemaining: {balance}",
        'status_awaiting': "⌛ Awaiting payment",
        'status_partial': "🟡 Partially paid",
        'status_paid': "✅ Paid",
        'payment_received_partial': "ℹ️ Payment received for order {order_id}. Paid: {paid}. Remaining: *{balance}*.",
        'payment_received_full': "✅ Order {order_id} is fully paid ({paid}). Thank you!",
        'language_changed': "Language switched to English 🇬🇧",
        'try_again': "Sorry, something went wrong. Please try again in a moment.",
    },
}


class _KeepMissing(dict):
    def __missing__(self, key):
        return '{' + key + '}'


def t(lang: str, key: str, **params) -> str:
    """Translated string, falling back to English and then to the key itself."""
    template = STRINGS.get(lang, {}).get(key) or STRINGS['en'].get(key) or key
    return template.format_map(_KeepMissing(params)) if params else template


def _clip(text: str, limit: int) -> str:
    text = (text or '').strip()
    return text if len(text) <= limit else text[:limit - 1].rstrip() + '…'


# ===========================================
# OUTBOUND INTENTS
# ===========================================

@dataclass(frozen=True)
class Choice:
    """A list row or a reply button."""
    id: str
    title: str
    description: str = ''


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    kind: str  # text | list | buttons
    body: str
    button: str = ''
    choices: Tuple[Choice, ...] = ()
    section_title: str = ''

    @classmethod
    def text(cls, to: str, body: str) -> 'OutboundMessage':
        return cls(to=to, kind='text', body=_clip(body, MAX_TEXT_BODY))

    @classmethod
    def list(cls, to: str, body: str, button: str, rows: Sequence[Choice],
             section_title: str = '') -> 'OutboundMessage':
        return cls(
            to=to,
            kind='list',
            body=_clip(body, MAX_INTERACTIVE_BODY),
            button=_clip(button, MAX_BUTTON_TITLE),
            choices=tuple(
                Choice(row.id, _clip(row.title, MAX_ROW_TITLE), _clip(row.description, MAX_ROW_DESCRIPTION))
                for row in list(rows)[:MAX_LIST_ROWS]
            ),
            section_title=_clip(section_title, MAX_ROW_TITLE),
        )

    @classmethod
    def buttons(cls, to: str, body: str, buttons: Sequence[Choice]) -> 'OutboundMessage':
        return cls(
            to=to,
            kind='buttons',
            body=_clip(body, MAX_INTERACTIVE_BODY),
            choices=tuple(Choice(b.id, _clip(b.title, MAX_BUTTON_TITLE)) for b in list(buttons)[:MAX_BUTTONS]),
        )

    def to_payload(self) -> dict:
        """Body of POST /<phone_number_id>/messages."""
        payload = {
            'messaging_product': 'whatsapp',
            'recipient_type': 'individual',
            'to': self.to.lstrip('+'),
        }
        if self.kind == 'text':
            payload['type'] = 'text'
            payload['text'] = {'preview_url': False, 'body': self.body}
        elif self.kind == 'list':
            rows = []
            for choice in self.choices:
                row = {'id': choice.id, 'title': choice.title}
                if choice.description:
                    row['description'] = choice.description
                rows.append(row)
            payload['type'] = 'interactive'
            payload['interactive'] = {
                'type': 'list',
                'body': {'text': self.body},
                'action': {
                    'button': self.button,
                    'sections': [{'title': self.section_title or self.button, 'rows': rows}],
                },
            }
        else:
            payload['type'] = 'interactive'
            payload['interactive'] = {
                'type': 'button',
                'body': {'text': self.body},
                'action': {
                    'buttons': [
                        {'type': 'reply', 'reply': {'id': c.id, 'title': c.title}} for c in self.choices
                    ],
                },
            }
        return payload

    def to_dict(self) -> dict:
        return {
            'to': self.to,
            'kind': self.kind,
            'body': self.body,
            'button': self.button,
            'choices': [[c.id, c.title, c.description] for c in self.choices],
            'section_title': self.section_title,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OutboundMessage':
        return cls(
            to=data['to'],
            kind=data['kind'],
            body=data['body'],
            button=data.get('button', ''),
            choices=tuple(Choice(*c) for c in data.get('choices', [])),
            section_title=data.get('section_title', ''),
        )


# ===========================================
# MENU IDS
# ===========================================

class Action:
    PRODUCTS = 'ACTION_PRODUCTS'
    VIEW_CART = 'ACTION_VIEW_CART'
    CHECKOUT = 'ACTION_CHECKOUT'
    TRACK_ORDER = 'ACTION_TRACK_BY_NAME'
    TALK_TO_AGENT = 'ACTION_TALK_TO_AGENT'
    CHANGE_LANGUAGE = 'ACTION_CHANGE_LANGUAGE'

    FULFILL_DELIVERY = 'FULFILL_DELIVERY'
    FULFILL_PICKUP = 'FULFILL_PICKUP'
    LOCATION_CONFIRM = 'LOC_CONFIRM'
    LOCATION_CHANGE = 'LOC_CHANGE'
    PAGE_NEXT = 'PAGE_NEXT'
    PAGE_PREV = 'PAGE_PREV'
    WARD_UNLISTED = 'WARD_UNLISTED'
    STREET_SKIP = 'STREET_SKIP'
    USE_LAST_PIN = 'LOC_LAST_PIN'
    OUTSIDE_DAR = 'DAR_OUTSIDE'
    PAY_CHANGE = 'PAY_CHANGE'
    USE_PROFILE_NAME = 'NAME_PROFILE'
    TRACK_LAST_ORDER = 'TRACK_LAST'

    DISTRICT_PREFIX = 'DISTRICT:'
    WARD_PREFIX = 'WARD:'
    STREET_PREFIX = 'STREET:'


PRODUCT_ACTIONS = ('PRODUCT_', 'VARIANTS_', 'ADD_', 'BUY_', 'DETAILS_')


class PaymentOption:
    LIPA_NAMBA = 'PAY_LIPA_NAMBA'
    VODA_LNM = 'PAY_VODA_LNM'
    VODA_P2P = 'PAY_VODA_P2P'
    USSD = 'PAY_USSD'
    CHECKOUT = 'PAY_CHECKOUT'
    MANUAL = 'PAY_MANUAL'

    ALL = (LIPA_NAMBA, VODA_LNM, VODA_P2P, USSD, CHECKOUT, MANUAL)


def available_payment_options() -> List[str]:
    from finance.clickpesa_service import ClickPesaService

    options = []
    if settings.LIPA_NAMBA_TILL:
        options.append(PaymentOption.LIPA_NAMBA)
    if settings.VODA_LNM_TILL:
        options.append(PaymentOption.VODA_LNM)
    if settings.VODA_P2P_MSISDN:
        options.append(PaymentOption.VODA_P2P)
    if ClickPesaService.is_enabled():
        options.append(PaymentOption.USSD)
        options.append(PaymentOption.CHECKOUT)
    return options or [PaymentOption.MANUAL]


# ===========================================
# MESSAGE BUILDER
# ===========================================

def list_page_size(page_size: int, extra_count: int = 0) -> int:
    """Names per page once the two navigation rows and the extra rows are reserved."""
    return max(1, min(page_size, MAX_LIST_ROWS - 2 - extra_count))


def page_count(total: int, page_size: int, extra_count: int = 0) -> int:
    return max(1, -(-total // list_page_size(page_size, extra_count)))


def describe_location(location, lang: str) -> str:
    if location is None:
        return '-'
    if location.outside_dar:
        return t(lang, 'outside_dar_place')
    if location.gps is not None and not location.district:
        return t(lang, 'gps_place', lat=f"{location.gps.latitude:.5f}", lon=f"{location.gps.longitude:.5f}")
    return ', '.join(part for part in (location.street, location.ward, location.district) if part) or '-'


class BotMessageBuilder:
    """Helper class to build WhatsApp response messages."""

    @staticmethod
    def main_menu(to: str, lang: str) -> OutboundMessage:
        rows = [
            Choice(Action.PRODUCTS, t(lang, 'menu_products'), t(lang, 'menu_products_desc')),
            Choice(Action.VIEW_CART, t(lang, 'menu_cart'), t(lang, 'menu_cart_desc')),
            Choice(Action.CHECKOUT, t(lang, 'menu_checkout'), t(lang, 'menu_checkout_desc')),
            Choice(Action.TRACK_ORDER, t(lang, 'menu_track'), t(lang, 'menu_track_desc')),
            Choice(Action.TALK_TO_AGENT, t(lang, 'menu_agent'), t(lang, 'menu_agent_desc')),
            Choice(Action.CHANGE_LANGUAGE, t(lang, 'menu_language'), t(lang, 'menu_language_desc')),
        ]
        return OutboundMessage.list(to, t(lang, 'menu_body'), t(lang, 'menu_button'), rows,
                                    section_title=t(lang, 'menu_section'))

    @staticmethod
    def products(to: str, lang: str) -> OutboundMessage:
        rows = [
            Choice(
                f"VARIANTS_{p.sku}" if p.has_variants else f"PRODUCT_{p.sku}",
                p.title(lang),
                f"{format_tzs(p.price_tzs)} · {p.summary(lang)}",
            )
            for p in listed_products()
        ]
        return OutboundMessage.list(to, t(lang, 'products_body'), t(lang, 'products_button'), rows)

    @staticmethod
    def variants(to: str, lang: str, product) -> OutboundMessage:
        rows = [
            Choice(f"PRODUCT_{v.sku}", v.title(lang), f"{format_tzs(v.price_tzs)} · {v.summary(lang)}")
            for v in variants_of(product)
        ]
        return OutboundMessage.list(to, t(lang, 'variants_body', title=product.title(lang)),
                                    t(lang, 'variants_button'), rows)

    @staticmethod
    def product_card(to: str, lang: str, product) -> OutboundMessage:
        body = t(lang, 'product_card', title=product.title(lang), summary=product.summary(lang),
                 price=format_tzs(product.price_tzs))
        return OutboundMessage.buttons(to, body, [
            Choice(f"ADD_{product.sku}", t(lang, 'btn_add')),
            Choice(f"BUY_{product.sku}", t(lang, 'btn_buy')),
            Choice(f"DETAILS_{product.sku}", t(lang, 'btn_details')),
        ])

    @staticmethod
    def product_details(to: str, lang: str, product) -> OutboundMessage:
        body = f"*{product.title(lang)}*\n{product.detail(lang)}\n{format_tzs(product.price_tzs)}"
        return OutboundMessage.buttons(to, body, [
            Choice(f"ADD_{product.sku}", t(lang, 'btn_add')),
            Choice(f"BUY_{product.sku}", t(lang, 'btn_buy')),
        ])

    @staticmethod
    def added_to_cart(to: str, lang: str, item, cart_total: int) -> OutboundMessage:
        body = t(lang, 'added_to_cart', title=item.title, qty=item.quantity, total=format_tzs(cart_total))
        return OutboundMessage.buttons(to, body, [
            Choice(Action.CHECKOUT, t(lang, 'btn_checkout')),
            Choice(Action.PRODUCTS, t(lang, 'btn_more')),
        ])

    @staticmethod
    def cart(to: str, lang: str, session) -> OutboundMessage:
        if not session.cart:
            return OutboundMessage.text(to, t(lang, 'cart_empty'))
        lines = [t(lang, 'cart_title')]
        lines += [
            t(lang, 'cart_line', title=item.title, qty=item.quantity, price=format_tzs(item.line_total_tzs))
            for item in session.cart
        ]
        lines.append(t(lang, 'cart_total', total=format_tzs(session.cart_total_tzs)))
        return OutboundMessage.buttons(to, '\n'.join(lines), [
            Choice(Action.CHECKOUT, t(lang, 'btn_checkout')),
            Choice(Action.PRODUCTS, t(lang, 'btn_more')),
        ])

    @staticmethod
    def ask_fulfillment(to: str, lang: str) -> OutboundMessage:
        return OutboundMessage.buttons(to, t(lang, 'ask_fulfillment'), [
            Choice(Action.FULFILL_DELIVERY, t(lang, 'btn_delivery')),
            Choice(Action.FULFILL_PICKUP, t(lang, 'btn_pickup')),
        ])

    @staticmethod
    def location_list(to: str, lang: str, body: str, prefix: str, names: List[str], page: int,
                      page_size: int, extra: Sequence[Choice] = ()) -> OutboundMessage:
        """
        One page of district/ward/street names, with navigation rows.
        Rows reserved for navigation and extras always fit within the 10-row limit.
        """
        pages = page_count(len(names), page_size, len(extra))
        page_size = list_page_size(page_size, len(extra))
        page = min(max(0, page), pages - 1)
        chunk = names[page * page_size:(page + 1) * page_size]

        rows = [Choice(f"{prefix}{name}", name) for name in chunk]
        if page > 0:
            rows.append(Choice(Action.PAGE_PREV, t(lang, 'page_prev')))
        if page < pages - 1:
            rows.append(Choice(Action.PAGE_NEXT, t(lang, 'page_next')))
        rows.extend(extra)
        return OutboundMessage.list(to, body, t(lang, 'list_button'), rows)

    @staticmethod
    def confirm_location(to: str, lang: str, location) -> OutboundMessage:
        return OutboundMessage.buttons(to, t(lang, 'confirm_location', place=describe_location(location, lang)), [
            Choice(Action.LOCATION_CONFIRM, t(lang, 'btn_confirm')),
            Choice(Action.LOCATION_CHANGE, t(lang, 'btn_change')),
        ])

    @staticmethod
    def ask_name(to: str, lang: str, profile_name: str = '') -> OutboundMessage:
        """Name prompt, offering the WhatsApp profile name as a one-tap answer when known."""
        if not profile_name.strip():
            return OutboundMessage.text(to, t(lang, 'ask_name'))
        return OutboundMessage.buttons(to, t(lang, 'ask_name_profile'), [
            Choice(Action.USE_PROFILE_NAME, profile_name),
        ])

    @staticmethod
    def quote_summary(to: str, lang: str, view, items, total_tzs: int) -> List[OutboundMessage]:
        lines = [t(lang, 'summary_title')]
        lines += [
            t(lang, 'cart_line', title=item.title, qty=item.quantity, price=format_tzs(item.line_total_tzs))
            for item in items
        ]
        lines.append(t(lang, 'summary_name', name=view.customer_name))
        if view.quote is not None and view.quote.flat_rate:
            lines.append(t(lang, 'summary_delivery_flat', place=describe_location(view.location, lang),
                           fee=format_tzs(view.quote.fee_tzs)))
        elif view.quote is not None:
            lines.append(t(lang, 'summary_delivery', place=describe_location(view.location, lang),
                           km=view.quote.distance_km, fee=format_tzs(view.quote.fee_tzs)))
        else:
            lines.append(t(lang, 'summary_pickup', phone=view.contact_phone))
        lines.append(t(lang, 'summary_total', total=format_tzs(total_tzs)))

        return [
            OutboundMessage.text(to, '\n'.join(lines)),
            BotMessageBuilder.payment_options(to, lang),
        ]

    @staticmethod
    def payment_options(to: str, lang: str) -> OutboundMessage:
        keys = {
            PaymentOption.LIPA_NAMBA: 'pay_lipa_namba',
            PaymentOption.VODA_LNM: 'pay_voda_lnm',
            PaymentOption.VODA_P2P: 'pay_voda_p2p',
            PaymentOption.USSD: 'pay_ussd',
            PaymentOption.CHECKOUT: 'pay_checkout',
            PaymentOption.MANUAL: 'pay_manual',
        }
        rows = [
            Choice(option, t(lang, keys[option]), t(lang, f"{keys[option]}_desc"))
            for option in available_payment_options()
        ]
        return OutboundMessage.list(to, t(lang, 'choose_payment'), t(lang, 'payment_button'), rows)

    @staticmethod
    def payment_instructions(to: str, lang: str, option: str, order, phone: str) -> OutboundMessage:
        amount = format_tzs(order.total_tzs)
        if option == PaymentOption.LIPA_NAMBA:
            text = t(lang, 'instructions_lipa_namba', amount=amount, till=settings.LIPA_NAMBA_TILL,
                     name=settings.LIPA_NAMBA_NAME, order_id=order.order_id)
        elif option == PaymentOption.VODA_LNM:
            text = t(lang, 'instructions_voda_lnm', amount=amount, till=settings.VODA_LNM_TILL,
                     name=settings.VODA_LNM_NAME, order_id=order.order_id)
        elif option == PaymentOption.VODA_P2P:
            text = t(lang, 'instructions_voda_p2p', amount=amount, msisdn=settings.VODA_P2P_MSISDN,
                     name=settings.VODA_P2P_NAME, order_id=order.order_id)
        elif option == PaymentOption.USSD:
            text = t(lang, 'instructions_ussd', amount=amount, phone=phone)
        elif option == PaymentOption.CHECKOUT:
            text = t(lang, 'instructions_checkout', amount=amount)
        else:
            text = t(lang, 'instructions_manual', amount=amount, order_id=order.order_id)

        body = '\n\n'.join([t(lang, 'order_created', order_id=order.order_id), text, t(lang, 'send_proof')])
        return OutboundMessage.buttons(to, body, [Choice(Action.PAY_CHANGE, t(lang, 'btn_change_payment'))])

    @staticmethod
    def checkout_link(to: str, lang: str, order_id: str, url: str) -> OutboundMessage:
        return OutboundMessage.text(to, t(lang, 'checkout_link', order_id=order_id, url=url))

    @staticmethod
    def admin_payment_proof(order, evidence, lang: str = 'sw') -> OutboundMessage:
        if evidence.media_id:
            detail = t(lang, 'admin_proof_image', media_id=evidence.media_id, caption=evidence.caption)
        else:
            detail = t(lang, 'admin_proof_text', text=evidence.text)
        body = t(lang, 'admin_proof', order_id=order.order_id, customer=order.customer_id,
                 name=order.customer_name or '-', total=format_tzs(order.total_tzs), detail=detail)
        return OutboundMessage.text(settings.ADMIN_WA_NUMBER, body)

    @staticmethod
    def admin_agent_request(customer_id: str, text: str, lang: str = 'sw') -> OutboundMessage:
        return OutboundMessage.text(settings.ADMIN_WA_NUMBER,
                                    t(lang, 'admin_agent', customer=customer_id, text=text))

    @staticmethod
    def track_prompt(to: str, lang: str, last_order_id: str = '') -> OutboundMessage:
        if not last_order_id:
            return OutboundMessage.text(to, t(lang, 'track_prompt'))
        return OutboundMessage.buttons(to, t(lang, 'track_prompt_last'), [
            Choice(Action.TRACK_LAST_ORDER, last_order_id),
        ])

    @staticmethod
    def track_result(to: str, lang: str, snapshot) -> OutboundMessage:
        return OutboundMessage.text(to, t(
            lang, 'track_result',
            order_id=snapshot.order_id,
            status=t(lang, f"status_{snapshot.status}"),
            total=format_tzs(snapshot.total_tzs),
            paid=format_tzs(snapshot.paid_tzs),
            balance=format_tzs(snapshot.balance_tzs),
        ))


def payment_update_messages(order, snapshot) -> List[OutboundMessage]:
    """Customer notification after a payment event was applied."""
    lang = order.language if order.language in LANGUAGES else 'sw'
    if snapshot.balance_tzs > 0:
        body = t(lang, 'payment_received_partial', order_id=order.order_id,
                 paid=format_tzs(snapshot.paid_tzs), balance=format_tzs(snapshot.balance_tzs))
    else:
        body = t(lang, 'payment_received_full', order_id=order.order_id, paid=format_tzs(snapshot.paid_tzs))
    return [OutboundMessage.text(order.customer_id, body)]
