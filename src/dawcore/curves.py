"""Curve shapes shared by envelope preview, live scheduling and offline render."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

import numpy as np

from .scale import EPS

CurveType = Literal["linear", "easeIn", "easeOut", "sCurve"]

CURVE_MIN = -99.0
CURVE_MAX = 99.0


def _clamp01(x: float) -> float:
    if math.isnan(x):
        return 0.0
    return max(0.0, min(1.0, x))


@runtime_checkable
class Curve(Protocol):
    def evaluate(self, t: float) -> float: ...


@dataclass(frozen=True)
class Linear:
    def evaluate(self, t: float) -> float:
        return _clamp01(t)


@dataclass(frozen=True)
class ExponentialIn:
    """``t ** power``: rises late."""

    shape: float = 0.5

    def evaluate(self, t: float) -> float:
        power = 1 + _clamp01(self.shape) * 3
        return _clamp01(t) ** power


@dataclass(frozen=True)
class LogarithmicOut:
    """``1 - (1 - t) ** power``: rises early."""

    shape: float = 0.5

    def evaluate(self, t: float) -> float:
        power = 1 + _clamp01(self.shape) * 3
        return 1 - (1 - _clamp01(t)) ** power


@dataclass(frozen=True)
class SCurve:
    shape: float = 0.5

    def evaluate(self, t: float) -> float:
        t = _clamp01(t)
        freq = 1 + _clamp01(self.shape) * 2
        range_max = 0.5 - 0.5 * math.cos(math.pi * freq)
        if abs(range_max) < EPS:
            # cos(pi * 2) closes the wave at zero; fall back to one half-period.
            freq, range_max = 1.0, 1.0
        raw = 0.5 - 0.5 * math.cos(math.pi * freq * t)
        return raw / range_max


_CURVES_BY_NAME = {
    "easeIn": ExponentialIn,
    "easeOut": LogarithmicOut,
    "sCurve": SCurve,
}

_LABELS = {
    "linear": "Linear",
    "easeIn": "Exponential",
    "easeOut": "Logarithmic",
    "sCurve": "S-Curve",
}


def curve_for(curve_type: str, shape: float = 0.5) -> Curve:
    """Build the curve variant for a named type. Unknown names and NaN shapes are linear."""
    cls = _CURVES_BY_NAME.get(curve_type)
    if cls is None or math.isnan(shape):
        return Linear()
    return cls(shape)


def evaluate_curve(curve_type: str, t: float, shape: float = 0.5) -> float:
    """Evaluate a named curve at progress *t*.

    >>> evaluate_curve("linear", 0.25)
    0.25
    >>> evaluate_curve("easeIn", 1.0, 0.8)
    1.0
    """
    return curve_for(curve_type, shape).evaluate(t)


def curve_label(curve_type: str) -> str:
    return _LABELS.get(curve_type, "Unknown")


# --- Signed segment curves ---


def clamp_curve(curve: float) -> float:
    if not math.isfinite(curve):
        return 0.0
    return max(CURVE_MIN, min(CURVE_MAX, curve))


def segment_curve(curve: float) -> Curve:
    """Map a signed curve in [-99, 99] onto a curve variant.

    Negative values are exponential, positive values logarithmic, zero linear.
    """
    curve = clamp_curve(curve)
    if curve == 0:
        return Linear()
    shape = abs(curve) / CURVE_MAX
    if curve < 0:
        return ExponentialIn(shape)
    return LogarithmicOut(shape)


def shape_progress(t: float, curve: float) -> float:
    return segment_curve(curve).evaluate(t)


def interpolate(p1: float, p2: float, t: float, curve: float = 0.0) -> float:
    return p1 + (p2 - p1) * shape_progress(t, curve)


def sample_curve(
    start: float,
    end: float,
    curve: float,
    steps: int,
    t0: float = 0.0,
    t1: float = 1.0,
) -> np.ndarray:
    """Sample ``interpolate`` at *steps* evenly spaced progress values in ``[t0, t1]``.

    Each value goes through the scalar path so sampled automation matches
    what a point query at the same progress returns.
    """
    steps = max(2, int(steps))
    shaped = segment_curve(curve)
    last = steps - 1
    span = t1 - t0
    return np.fromiter(
        (start + (end - start) * shaped.evaluate(t0 + span * (i / last)) for i in range(steps)),
        dtype=np.float64,
        count=steps,
    )


def segment_curve_description(curve: float) -> str:
    curve = clamp_curve(curve)
    if curve == 0:
        return "Linear"
    if curve < 0:
        return f"Exponential ({abs(curve):g}) - Slow start, fast end"
    return f"Logarithmic ({curve:g}) - Fast start, slow end"
