"""Volume percentage, envelope multiplier and dB conversions.

Non-finite inputs never propagate: dB results fall back to ``-inf`` and
linear results to ``0``.
"""

from __future__ import annotations

import math

from .scale import _round_half_up

MIN_DB = -30.0
MAX_DB = 6.0
AUTOMATION_MIN_DB = -60.0
AUTOMATION_MAX_DB = 12.0

NEG_INF = -math.inf


def db_to_gain(db: float) -> float:
    if not math.isfinite(db):
        return 0.0
    return 10 ** (db / 20)


def gain_to_db(gain: float) -> float:
    if not math.isfinite(gain) or gain <= 0:
        return NEG_INF
    return 20 * math.log10(gain)


def volume_to_db(volume: float) -> float:
    """Track volume in percent (0-100) to dB; 0% is ``-inf``."""
    if not math.isfinite(volume) or volume <= 0:
        return NEG_INF
    return 20 * math.log10(volume / 100)


def clamp_db(db: float) -> float:
    if not math.isfinite(db):
        return NEG_INF
    return min(MAX_DB, max(MIN_DB, db))


def clamp_automation_db(db: float) -> float:
    if not math.isfinite(db):
        return NEG_INF
    return min(AUTOMATION_MAX_DB, max(AUTOMATION_MIN_DB, db))


def db_to_volume(db: float) -> float:
    """Inverse of ``volume_to_db``, clamped to the track range and rounded to whole percent."""
    if not math.isfinite(db):
        return 0.0
    linear = 10 ** (clamp_db(db) / 20)
    return max(0.0, float(_round_half_up(linear * 100)))


def multiplier_to_db(multiplier: float) -> float:
    if not math.isfinite(multiplier) or multiplier <= 0:
        return NEG_INF
    return 20 * math.log10(multiplier)


def db_to_multiplier(db: float) -> float:
    if not math.isfinite(db):
        return 0.0
    return 10 ** (db / 20)


def effective_db(base_volume_pct: float, envelope_multiplier: float) -> float:
    """Sum of the base and envelope dB, i.e. the product of their linear gains."""
    base_db = volume_to_db(base_volume_pct)
    envelope_db = multiplier_to_db(envelope_multiplier)
    if not math.isfinite(base_db) or not math.isfinite(envelope_db):
        return NEG_INF
    return base_db + envelope_db


def format_db(db: float, precision: int = 1) -> str:
    if not math.isfinite(db):
        return "-inf dB"
    scale = 10**precision
    rounded = _round_half_up(db * scale) / scale
    sign = "+" if rounded > 0 else ""
    return f"{sign}{rounded:.{precision}f} dB"


def format_effective_db(base_volume_pct: float, envelope_multiplier: float, precision: int = 1) -> str:
    return format_db(effective_db(base_volume_pct, envelope_multiplier), precision)
