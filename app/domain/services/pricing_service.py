"""
Pricing Service - delivery fee quotes, eco bonus and time estimates

All amounts are Decimal rounded half-up to two places. Configuration lives in
``settings`` so the rates can be tuned per deployment.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from app.core.config import settings

_CENTS = Decimal("0.01")

# זמן הכנה ממוצע לפני איסוף, ומהירות ממוצעת של שליח
PREPARATION_MINUTES = 15
AVERAGE_SPEED_KMH = Decimal("30")

# Late-night window is [20:00, 06:00), peak surge is [12:00, 14:00)
LATE_NIGHT_START_HOUR = 20
LATE_NIGHT_END_HOUR = 6
PEAK_START_HOUR = 12
PEAK_END_HOUR = 14


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def is_late_night(at: datetime) -> bool:
    return at.hour >= LATE_NIGHT_START_HOUR or at.hour < LATE_NIGHT_END_HOUR


def is_peak_hour(at: datetime) -> bool:
    return PEAK_START_HOUR <= at.hour < PEAK_END_HOUR


def quote_delivery_fee(
    distance_km,
    at: Optional[datetime] = None,
    include_green_fee: bool = False,
) -> Decimal:
    """
    Quote the delivery fee for a distance.

    The base rate covers the first FREE_DISTANCE_KM; every further km is
    charged at DISTANCE_RATE_PER_KM. Peak surge multiplies the distance fee,
    late-night and green fees are added on top.
    """
    distance = _as_decimal(distance_km)
    if distance < 0:
        raise ValueError("distance_km must be non-negative")
    at = at or datetime.utcnow()

    fee = _as_decimal(settings.DEFAULT_DELIVERY_BASE_RATE)
    chargeable_km = max(Decimal("0"), distance - _as_decimal(settings.FREE_DISTANCE_KM))
    fee += chargeable_km * _as_decimal(settings.DISTANCE_RATE_PER_KM)

    if is_peak_hour(at):
        fee *= _as_decimal(settings.PEAK_SURGE_MULTIPLIER)
    if is_late_night(at):
        fee += _as_decimal(settings.LATE_NIGHT_FEE)
    if include_green_fee:
        fee += _as_decimal(settings.GREEN_FEE)

    return _money(fee)


def calculate_eco_bonus(distance_km, vehicle_type: Optional[str]) -> Decimal:
    """Eco bonus for low-emission vehicles: base + per km, capped"""
    if not vehicle_type or vehicle_type.strip().lower() not in settings.eco_vehicle_types:
        return _money(0)
    distance = max(Decimal("0"), _as_decimal(distance_km))
    bonus = _as_decimal(settings.ECO_BONUS_BASE) + distance * _as_decimal(settings.ECO_BONUS_PER_KM)
    return _money(min(bonus, _as_decimal(settings.ECO_BONUS_CAP)))


def estimate_delivery_times(published_at: datetime, distance_km) -> Tuple[datetime, datetime]:
    """(estimated_pickup_time, estimated_delivery_time) for a freshly published delivery"""
    pickup = published_at + timedelta(minutes=PREPARATION_MINUTES)
    hours = max(Decimal("0"), _as_decimal(distance_km)) / AVERAGE_SPEED_KMH
    return pickup, pickup + timedelta(seconds=float(hours * 3600))


def calculate_commission(subtotal) -> Decimal:
    """Platform share of the item subtotal; the delivery fee carries no commission"""
    return _money(_as_decimal(subtotal) * _as_decimal(settings.PLATFORM_COMMISSION_RATE))


def calculate_payout_fee(amount) -> Decimal:
    return _money(_as_decimal(amount) * _as_decimal(settings.PAYOUT_FEE_RATE))
