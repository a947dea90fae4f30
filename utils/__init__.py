from .money import to_decimal, round_amount, round_cents, as_float
from .distance import calculate_rider_earning, calculate_delivery_fee, resolve_trip_distance

__all__ = [
    "to_decimal",
    "round_amount",
    "round_cents",
    "as_float",
    "calculate_rider_earning",
    "calculate_delivery_fee",
    "resolve_trip_distance",
]
