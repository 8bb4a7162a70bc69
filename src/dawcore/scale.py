"""Time <-> pixel conversions under zoom and scroll."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Self

EPS = 1e-9

PIXELS_PER_SECOND_AT_ZOOM_1 = 100.0
MIN_ZOOM = 0.05
MAX_ZOOM = 5.0


@dataclass(frozen=True)
class Scale:
    """View state for one frame: zoom as pixels per ms plus horizontal scroll."""

    px_per_ms: float
    scroll_left: float = 0.0

    @classmethod
    def for_zoom(cls, zoom: float, scroll_left: float = 0.0) -> Self:
        return cls(px_per_ms_for_zoom(zoom), scroll_left)

    def with_scroll(self, scroll_left: float) -> Scale:
        return replace(self, scroll_left=scroll_left)


def _round_half_up(x: float) -> float:
    # Python's round() is banker's rounding; the grid wants .5 to go up.
    if not math.isfinite(x):
        return 0.0
    return math.floor(x + 0.5)


def ms_to_px(ms: float, s: Scale) -> float:
    """Absolute pixel position of *ms*, independent of scroll."""
    return ms * s.px_per_ms


def ms_to_viewport_px(ms: float, s: Scale) -> float:
    return ms * s.px_per_ms - s.scroll_left


def viewport_px_to_ms(x: float, s: Scale) -> float:
    """Inverse of ``ms_to_viewport_px``. Returns 0 for a degenerate zoom."""
    if not math.isfinite(s.px_per_ms) or abs(s.px_per_ms) < EPS:
        return 0.0
    return (x + s.scroll_left) / s.px_per_ms


def client_x_to_ms(client_x: float, element_left: float, s: Scale) -> float:
    return max(0.0, viewport_px_to_ms(client_x - element_left, s))


def align_hairline(x: float) -> float:
    """Snap a line position to the pixel grid for crisp 1px strokes.

    >>> align_hairline(10.2)
    10.5
    >>> align_hairline(10.7)
    11.5
    """
    return _round_half_up(x) + 0.5


def snap_ms(ms: float, step_ms: float) -> float:
    if not math.isfinite(step_ms) or step_ms <= 0:
        return max(0.0, ms)
    k = _round_half_up(ms / step_ms)
    return max(0.0, k * step_ms)


def px_per_ms_for_zoom(zoom: float) -> float:
    px_per_ms = PIXELS_PER_SECOND_AT_ZOOM_1 * zoom / 1000.0
    return px_per_ms if math.isfinite(px_per_ms) else 0.0


def clamp_zoom(zoom: float) -> float:
    if not math.isfinite(zoom):
        return 1.0
    return min(MAX_ZOOM, max(MIN_ZOOM, zoom))


def scroll_for_zoom_anchor(local_px: float, world_ms: float, px_per_ms: float) -> float:
    """Scroll offset that keeps *world_ms* under the cursor at *local_px* after a zoom."""
    return max(0.0, world_ms * px_per_ms - local_px)


def visible_range_ms(s: Scale, width_px: float) -> tuple[float, float]:
    return viewport_px_to_ms(0.0, s), viewport_px_to_ms(width_px, s)
