"""
UJANI - Logistics Utilities
===========================
Distance, place-name and rounding helpers shared by the resolver and the fee engine.
"""

import math
import statistics
import unicodedata
from decimal import Decimal, ROUND_HALF_UP, ROUND_UP


# ============================================
# CONSTANTS
# ============================================

# Mean Earth radius in km
EARTH_RADIUS_KM = 6371.0

# GPS distances are billed per started 100 m
GPS_DISTANCE_STEP_KM = Decimal('0.1')

_QUOTE_CHARS = "'\"`‘’“”"


# ============================================
# DISTANCE CALCULATION
# ============================================

def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two GPS points.

    Args:
        lat1, lng1: Coordinates of the origin
        lat2, lng2: Coordinates of the destination

    Returns:
        Distance in kilometers (as the crow flies)
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def median_km(values) -> float:
    return float(statistics.median(values))


def mean_km(values) -> float:
    return round(float(statistics.fmean(values)), 2)


# ============================================
# PLACE NAMES
# ============================================

def normalize_place(value) -> str:
    """
    Case- and diacritic-insensitive key for a district/ward/street name.
    Ex: "  Msasani  Peninsula " -> "msasani peninsula", "Ng'ambo" -> "ngambo"
    """
    text = unicodedata.normalize('NFKD', str(value or ''))
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    for ch in _QUOTE_CHARS:
        text = text.replace(ch, '')
    return ' '.join(text.split())


# ============================================
# ROUNDING
# ============================================

def round_half_up_to_step(amount, step: int) -> int:
    """
    Round to the nearest multiple of `step`, halves going up.
    Ex (step 500): 3249 -> 3000, 3250 -> 3500, 6200 -> 6000
    """
    step = Decimal(str(step))
    if step <= 0:
        return int(Decimal(str(amount)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    units = (Decimal(str(amount)) / step).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    return int(units * step)


def round_up_to_step(value, step: Decimal = GPS_DISTANCE_STEP_KM) -> Decimal:
    """
    Round up to the next multiple of `step`.
    Ex (step 0.1): 1.18 -> 1.2, 1.2 -> 1.2
    """
    value = Decimal(str(value))
    if value <= 0:
        return Decimal('0')
    return (value / step).quantize(Decimal('1'), rounding=ROUND_UP) * step
