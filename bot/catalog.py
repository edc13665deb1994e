"""
Product catalog shown in the WhatsApp menus.

Static configuration: prices are in TZS, copy is Swahili/English.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Product:
    sku: str
    price_tzs: int
    titles: Dict[str, str]
    summaries: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, str] = field(default_factory=dict)
    variants: Tuple[str, ...] = ()
    parent: Optional[str] = None

    def title(self, lang: str) -> str:
        return self.titles.get(lang) or self.titles['sw']

    def summary(self, lang: str) -> str:
        return self.summaries.get(lang) or self.summaries.get('sw', '')

    def detail(self, lang: str) -> str:
        return self.details.get(lang) or self.details.get('sw', '') or self.summary(lang)

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)


PROMAX_PRICE_TZS = 350_000

PRODUCTS = (
    Product(
        sku='kiboko',
        price_tzs=140_000,
        titles={'sw': 'Ujani Kiboko (kupaka)', 'en': 'Ujani Kiboko (topical)'},
        summaries={'sw': 'Dawa ya kupaka, kozi ya siku 21', 'en': 'Topical pack, 21-day course'},
        details={
            'sw': "Ujani Kiboko ni dawa ya kupaka.\nKozi ni siku 21; matokeo huonekana ndani ya siku 14.\n"
                  "Maelekezo ya matumizi yapo kwenye pakiti.",
            'en': "Ujani Kiboko is a topical pack.\nThe course is 21 days; results show within 14 days.\n"
                  "Directions are printed on the pack.",
        },
    ),
    Product(
        sku='furaha',
        price_tzs=110_000,
        titles={'sw': 'Ujani Furaha (kunywa)', 'en': 'Ujani Furaha (oral)'},
        summaries={'sw': 'Dawa ya kunywa, vijiko 2 mara 3', 'en': 'Oral pack, 2 spoons 3 times a day'},
        details={
            'sw': "Ujani Furaha ni dawa ya kunywa.\nMatumizi: vijiko viwili asubuhi, mchana na jioni.",
            'en': "Ujani Furaha is an oral pack.\nDose: two spoons morning, noon and evening.",
        },
    ),
    Product(
        sku='promax',
        price_tzs=PROMAX_PRICE_TZS,
        titles={'sw': 'Ujani Pro Max', 'en': 'Ujani Pro Max'},
        summaries={'sw': 'Chagua pakiti A, B au C', 'en': 'Choose package A, B or C'},
        variants=('promax_a', 'promax_b', 'promax_c'),
    ),
    Product(
        sku='promax_a',
        price_tzs=PROMAX_PRICE_TZS,
        titles={'sw': 'Pro Max A', 'en': 'Pro Max A'},
        summaries={'sw': 'Dawa 3 za kupaka', 'en': '3 topical packs'},
        parent='promax',
    ),
    Product(
        sku='promax_b',
        price_tzs=PROMAX_PRICE_TZS,
        titles={'sw': 'Pro Max B', 'en': 'Pro Max B'},
        summaries={'sw': 'Dawa 3 za kunywa', 'en': '3 oral packs'},
        parent='promax',
    ),
    Product(
        sku='promax_c',
        price_tzs=PROMAX_PRICE_TZS,
        titles={'sw': 'Pro Max C', 'en': 'Pro Max C'},
        summaries={'sw': '2 za kupaka + 2 za kunywa', 'en': '2 topical + 2 oral'},
        parent='promax',
    ),
)

_BY_SKU = {product.sku: product for product in PRODUCTS}


def get_product(sku: str) -> Optional[Product]:
    return _BY_SKU.get((sku or '').strip().lower())


def listed_products() -> List[Product]:
    """Top-level products for the main menu (variants are reached through their parent)."""
    return [product for product in PRODUCTS if product.parent is None]


def variants_of(product: Product) -> List[Product]:
    return [_BY_SKU[sku] for sku in product.variants if sku in _BY_SKU]


def format_tzs(amount: int) -> str:
    """Ex: 140000 -> 'TSh 140,000'"""
    return f"TSh {max(0, int(amount or 0)):,}"
