# utils/distance.py
# Trip distance and rider pay / delivery fee calculation
# Every persisted rider earning and delivery fee goes through this module,
# which is the only place the pay cap is applied.

import logging
import math
from decimal import Decimal
from typing import Any, Optional

from utils.money import round_amount, to_decimal

logger = logging.getLogger(__name__)

# Rider pay rules (currency units)
RIDER_BASE_PAY = 60
RIDER_PER_KM_RATE = 20
RIDER_PAY_CAP = 200

# Used when either endpoint has no usable coordinates
FALLBACK_DISTANCE_KM = 2.0


def calculate_rider_earning(
    distance_km: float,
    base_pay: Any = RIDER_BASE_PAY,
    per_km_rate: Any = RIDER_PER_KM_RATE,
    cap: Any = RIDER_PAY_CAP,
) -> Decimal:
    """
    Rider pay for a trip: min(round(base + rate * km), cap).

    The result always lies in [base_pay, cap] for distance_km >= 0.
    """
    if distance_km is None or isinstance(distance_km, bool):
        raise ValueError("distance_km is required")
    distance = to_decimal(distance_km)
    if not distance.is_finite() or distance < 0:
        raise ValueError(f"distance_km must be a non-negative number, got {distance_km!r}")

    base = to_decimal(base_pay)
    ceiling = to_decimal(cap)
    if base > ceiling:
        raise ValueError("base_pay cannot exceed cap")

    gross = round_amount(base + to_decimal(per_km_rate) * distance)
    return min(gross, round_amount(ceiling))


def calculate_delivery_fee(
    distance_km: float,
    base_pay: Any = RIDER_BASE_PAY,
    per_km_rate: Any = RIDER_PER_KM_RATE,
    cap: Any = RIDER_PAY_CAP,
) -> Decimal:
    """
    Customer delivery fee. Identical to the rider's gross pay: the platform
    keeps no delivery margin at this layer.
    """
    return calculate_rider_earning(distance_km, base_pay, per_km_rate, cap)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate straight-line distance between two GPS points (in km).
    """
    R = 6371  # Earth's radius in km
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def _usable(coord: Any) -> Optional[float]:
    try:
        value = float(coord)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or value == 0:
        return None
    return value


def resolve_trip_distance(
    origin_lat: Any,
    origin_lng: Any,
    dest_lat: Any,
    dest_lng: Any,
    fallback_km: float = FALLBACK_DISTANCE_KM,
) -> float:
    """
    Rider-to-destination distance in km, rounded to 0.1 km.

    Location data is sometimes absent: a missing, zero or non-numeric
    coordinate on either endpoint yields fallback_km instead of an error.
    """
    coords = [_usable(c) for c in (origin_lat, origin_lng, dest_lat, dest_lng)]
    if any(c is None for c in coords):
        logger.info(f"Missing coordinates, using fallback distance {fallback_km} km")
        return fallback_km

    distance = haversine_distance(*coords)
    return round(distance, 1)
