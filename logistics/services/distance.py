"""
Distance Resolver for UJANI

Turns a location descriptor (district/ward/street or a WhatsApp location pin)
into a distance in km from the shop at Keko Magurumbasi.

Lookup order:
    gps -> exactStreet -> wardMedian -> districtAverage -> default
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from django.conf import settings

from logistics.utils import haversine_distance, mean_km, median_km, normalize_place

logger = logging.getLogger(__name__)


class DistanceSource:
    GPS = 'gps'
    EXACT_STREET = 'exactStreet'
    WARD_MEDIAN = 'wardMedian'
    DISTRICT_AVERAGE = 'districtAverage'
    DEFAULT = 'default'


@dataclass(frozen=True)
class LocationRow:
    region: str
    district: str
    ward: str
    street: str
    distance_km: float
    places: str = ''

    @classmethod
    def from_raw(cls, raw: dict) -> Optional['LocationRow']:
        """Accepts both the upper-case survey keys and lower-case keys."""
        distance = raw.get('DISTANCE_FROM_KEKO_MAGURUMBASI_KM', raw.get('distance_km'))
        if isinstance(distance, bool) or not isinstance(distance, (int, float)):
            return None
        return cls(
            region=str(raw.get('REGION', raw.get('region', '')) or '').strip(),
            district=str(raw.get('DISTRICT', raw.get('district', '')) or '').strip(),
            ward=str(raw.get('WARD', raw.get('ward', '')) or '').strip(),
            street=str(raw.get('STREET', raw.get('street', '')) or '').strip(),
            distance_km=max(0.0, float(distance)),
            places=str(raw.get('PLACES', raw.get('places', '')) or '').strip(),
        )


@dataclass(frozen=True)
class Resolution:
    distance_km: float
    source: str
    district: str = ''
    ward: str = ''
    street: str = ''


class DistanceResolver:
    """
    Resolves delivery distances against the Dar es Salaam location table.

    The table is read once, on first use. If it cannot be read, a single
    warning is logged and every lookup answers with the default distance.
    """

    def __init__(self, data_path: str = None, origin: Tuple[float, float] = None,
                 default_km: float = None):
        self.data_path = data_path or settings.DATA_LOCATION_PATH
        self.origin = origin or (settings.BUSINESS_ORIGIN_LAT, settings.BUSINESS_ORIGIN_LON)
        self.default_km = float(default_km if default_km is not None else settings.DEFAULT_DISTANCE_KM)
        self._rows: Optional[List[LocationRow]] = None
        self._load_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Dataset
    # ------------------------------------------------------------------

    @property
    def rows(self) -> List[LocationRow]:
        if self._rows is None:
            with self._load_lock:
                if self._rows is None:
                    self._rows = self._load()
        return self._rows

    def _load(self) -> List[LocationRow]:
        try:
            with open(self.data_path, encoding='utf-8') as fh:
                raw_rows = json.load(fh)
            if not isinstance(raw_rows, list):
                raise ValueError("location table must be a JSON array")
        except (OSError, ValueError) as e:
            logger.warning(
                f"[DISTANCE] Location table unavailable ({self.data_path}): {e}. "
                f"Using default distance {self.default_km} km for every lookup."
            )
            return []

        rows = [row for row in (LocationRow.from_raw(r) for r in raw_rows if isinstance(r, dict)) if row]
        logger.info(f"[DISTANCE] Loaded {len(rows)} location rows from {self.data_path}")
        return rows

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, district: str = None, ward: str = None, street: str = None,
                gps: Tuple[float, float] = None) -> Resolution:
        """
        Distance in km from the business origin.

        Args:
            district, ward, street: Names as chosen or typed by the customer
            gps: (latitude, longitude) from a location pin; wins over names

        Returns:
            Resolution with the distance and the tier that produced it
        """
        if gps is not None:
            lat, lng = gps
            km = haversine_distance(self.origin[0], self.origin[1], float(lat), float(lng))
            return Resolution(distance_km=km, source=DistanceSource.GPS,
                              district=district or '', ward=ward or '', street=street or '')

        in_district = self._filter(self.rows, district=district)
        in_ward = self._filter(in_district, ward=ward) if ward else []

        if in_ward and street:
            hit = self._match_street(in_ward, street)
            if hit:
                return Resolution(distance_km=hit.distance_km, source=DistanceSource.EXACT_STREET,
                                  district=hit.district, ward=hit.ward, street=hit.street)

        if in_ward:
            return Resolution(
                distance_km=median_km([r.distance_km for r in in_ward]),
                source=DistanceSource.WARD_MEDIAN,
                district=in_ward[0].district, ward=in_ward[0].ward, street=street or '',
            )

        if in_district:
            return Resolution(
                distance_km=mean_km([r.distance_km for r in in_district]),
                source=DistanceSource.DISTRICT_AVERAGE,
                district=in_district[0].district, ward=ward or '', street=street or '',
            )

        return Resolution(distance_km=self.default_km, source=DistanceSource.DEFAULT,
                          district=district or '', ward=ward or '', street=street or '')

    @staticmethod
    def _filter(rows: List[LocationRow], district: str = None, ward: str = None) -> List[LocationRow]:
        if district is not None:
            key = normalize_place(district)
            if not key:
                return []
            rows = [r for r in rows if normalize_place(r.district) == key]
        if ward is not None:
            key = normalize_place(ward)
            if not key:
                return []
            rows = [r for r in rows if normalize_place(r.ward) == key]
        return rows

    @staticmethod
    def _match_street(rows: List[LocationRow], street: str) -> Optional[LocationRow]:
        key = normalize_place(street)
        if not key:
            return None
        for matches in (
            lambda name: name == key,
            lambda name: name.startswith(key),
            lambda name: key in name,
        ):
            for row in rows:
                if matches(normalize_place(row.street)):
                    return row
        return None

    # ------------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------------

    def districts(self) -> List[str]:
        return self._distinct(r.district for r in self.rows)

    def wards(self, district: str) -> List[str]:
        return self._distinct(r.ward for r in self._filter(self.rows, district=district))

    def streets(self, district: str, ward: str) -> List[str]:
        return self._distinct(r.street for r in self._filter(self.rows, district=district, ward=ward))

    @staticmethod
    def _distinct(names) -> List[str]:
        seen = {}
        for name in names:
            if name:
                seen.setdefault(normalize_place(name), name)
        return sorted(seen.values(), key=normalize_place)

    @staticmethod
    def match_option(text: str, options: List[str]) -> Optional[str]:
        """
        Pick the option a customer typed: exact, then prefix, then substring.
        Returns None unless exactly one option matches at the first level that matches.
        """
        key = normalize_place(text)
        if not key:
            return None
        for matches in (
            lambda name: name == key,
            lambda name: name.startswith(key),
            lambda name: key in name,
        ):
            found = [opt for opt in options if matches(normalize_place(opt))]
            if len(found) == 1:
                return found[0]
            if found:
                return None
        return None


_resolver = None


def get_distance_resolver() -> DistanceResolver:
    global _resolver
    if _resolver is None:
        _resolver = DistanceResolver()
    return _resolver
