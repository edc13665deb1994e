"""
Fee Quoting Engine for UJANI

Turns a delivery distance into a fee in TZS. The schedule is picked by
configuration (DELIVERY_TARIFF) from the presets below.

Formula (linear):   Fee = RoundHalfUp(step, Max(Minimum, Sum(km_segment * rate * relief_segment)))
Formula (tiered):   Fee = RoundHalfUp(step, TierFee, or LastTierFee + extra km priced per km)
"""

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from django.conf import settings

from logistics.services.distance import DistanceSource, Resolution
from logistics.utils import round_half_up_to_step, round_up_to_step

logger = logging.getLogger(__name__)


TARIFF_PRESETS = {
    # rate_per_km None = DELIVERY_RATE_PER_KM
    'linear': {
        'tiers': (),
        'rate_per_km': None,
    },
    'affordable_v1': {
        'tiers': (
            (2, 2500),
            (5, 3500),
            (8, 4500),
            (12, 5500),
            (18, 7000),
            (25, 8500),
        ),
        'rate_per_km': 500,
    },
}


@dataclass(frozen=True)
class DeliveryQuote:
    source: str
    distance_km: float
    fee_tzs: int
    out_of_service: bool = False
    flat_rate: bool = False
    district: str = ''
    ward: str = ''
    street: str = ''
    tariff: str = 'linear'

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['DeliveryQuote']:
        if not data:
            return None
        return cls(**data)


def parse_relief(entries: Sequence) -> List[Tuple[Decimal, Decimal]]:
    """
    Parse relief thresholds, e.g. ["10:0.8", "20:0.6"].
    Beyond 10 km the per-km rate is multiplied by 0.8, beyond 20 km by 0.6.
    """
    relief = []
    for entry in entries or ():
        if isinstance(entry, (tuple, list)):
            threshold, multiplier = entry
        else:
            threshold, _, multiplier = str(entry).partition(':')
        try:
            threshold, multiplier = Decimal(str(threshold).strip()), Decimal(str(multiplier).strip())
        except ArithmeticError:
            logger.warning(f"[PRICING] Ignoring malformed relief entry: {entry!r}")
            continue
        if threshold < 0 or multiplier <= 0:
            logger.warning(f"[PRICING] Ignoring out-of-range relief entry: {entry!r}")
            continue
        relief.append((threshold, multiplier))
    return sorted(relief)


class FeeQuotingEngine:
    """
    Delivery fee calculation, independent of how the distance was obtained.

    Rounding happens once, on the final amount. GPS distances are billed
    per started 100 m so that nearby fixes of one address cost the same.
    """

    def __init__(self, tariff: str = None, rate_per_km: int = None, round_to: int = None,
                 minimum_fee: int = None, relief: Sequence = None, service_radius_km: float = None,
                 outside_flat_fee: int = None):
        self.tariff = tariff or settings.DELIVERY_TARIFF
        if self.tariff not in TARIFF_PRESETS:
            raise ValueError(f"Unknown delivery tariff '{self.tariff}'")
        preset = TARIFF_PRESETS[self.tariff]

        self.tiers = tuple((Decimal(str(km)), Decimal(str(fee))) for km, fee in preset['tiers'])
        if rate_per_km is None:
            rate_per_km = preset['rate_per_km'] or settings.DELIVERY_RATE_PER_KM
        self.rate_per_km = Decimal(str(rate_per_km))
        self.round_to = int(round_to if round_to is not None else settings.DELIVERY_ROUND_TO)
        self.minimum_fee = Decimal(str(minimum_fee if minimum_fee is not None else settings.DELIVERY_MINIMUM_FEE))
        self.relief = parse_relief(relief if relief is not None else settings.DELIVERY_RELIEF)
        self.service_radius_km = float(
            service_radius_km if service_radius_km is not None else settings.SERVICE_RADIUS_KM
        )
        self.outside_flat_fee = int(
            outside_flat_fee if outside_flat_fee is not None else settings.OUTSIDE_DAR_FLAT_FEE
        )

    # ------------------------------------------------------------------
    # Fee
    # ------------------------------------------------------------------

    def quote(self, distance_km: float) -> int:
        """
        Fee in TZS for a distance, a multiple of the rounding step.

        Example (linear, 1000/km, step 500): 6.2 km -> 6000, 6.3 km -> 6500
        """
        km = max(Decimal('0'), Decimal(str(distance_km or 0)))

        if self.tiers:
            raw = self._tiered_amount(km)
        else:
            if km == 0:
                return 0
            raw = self._per_km_amount(Decimal('0'), km)

        if km > 0 and self.minimum_fee > 0:
            raw = max(raw, self.minimum_fee)

        return round_half_up_to_step(raw, self.round_to)

    def _tiered_amount(self, km: Decimal) -> Decimal:
        for up_to_km, fee in self.tiers:
            if km <= up_to_km:
                return fee
        last_km, last_fee = self.tiers[-1]
        return last_fee + self._per_km_amount(last_km, km)

    def _per_km_amount(self, start_km: Decimal, end_km: Decimal) -> Decimal:
        """Per-km charge between two distances, with relief applied past each threshold."""
        bounds = [(Decimal('0'), Decimal('1'))] + self.relief
        total = Decimal('0')
        for index, (threshold, multiplier) in enumerate(bounds):
            upper = bounds[index + 1][0] if index + 1 < len(bounds) else end_km
            low, high = max(start_km, threshold), min(end_km, upper)
            if high > low:
                total += (high - low) * self.rate_per_km * multiplier
        return total

    # ------------------------------------------------------------------
    # Distance & service area
    # ------------------------------------------------------------------

    @staticmethod
    def billable_distance(distance_km: float, source: str) -> float:
        """GPS distances are rounded up to the next 100 m; table distances are used as-is."""
        if source == DistanceSource.GPS:
            return float(round_up_to_step(distance_km))
        return round(float(distance_km), 2)

    def is_out_of_service(self, distance_km: float) -> bool:
        return self.service_radius_km > 0 and float(distance_km) > self.service_radius_km

    def build_quote(self, resolution: Resolution) -> DeliveryQuote:
        """
        Quote for a resolved location. Beyond the service radius the flat
        outside-Dar fee applies when one is configured; otherwise the quote
        is only flagged out of service.
        """
        distance_km = self.billable_distance(resolution.distance_km, resolution.source)
        out_of_service = self.is_out_of_service(distance_km)
        flat_rate = out_of_service and self.outside_flat_fee > 0
        quote = DeliveryQuote(
            source=resolution.source,
            distance_km=distance_km,
            fee_tzs=self.outside_flat_fee if flat_rate else self.quote(distance_km),
            out_of_service=out_of_service,
            flat_rate=flat_rate,
            district=resolution.district,
            ward=resolution.ward,
            street=resolution.street,
            tariff=self.tariff,
        )
        logger.info(
            f"[PRICING] {quote.source} {quote.district}/{quote.ward}/{quote.street} "
            f"-> {quote.distance_km} km = {quote.fee_tzs} TZS"
            f"{' (out of service)' if quote.out_of_service else ''}"
        )
        return quote

    def outside_dar_quote(self) -> Optional[DeliveryQuote]:
        """Flat quote for customers outside Dar es Salaam, None when that service is off."""
        if self.outside_flat_fee <= 0:
            return None
        logger.info(f"[PRICING] outside Dar = {self.outside_flat_fee} TZS (flat)")
        return DeliveryQuote(
            source=DistanceSource.DEFAULT,
            distance_km=0.0,
            fee_tzs=self.outside_flat_fee,
            flat_rate=True,
            tariff=self.tariff,
        )
