"""Track volume envelopes: points joined by signed-curve segments."""

from __future__ import annotations

import bisect
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from .curves import clamp_curve, interpolate

log = logging.getLogger(__name__)

ENVELOPE_GAIN_MIN = 0.0
ENVELOPE_GAIN_MAX = 4.0


def _new_id() -> str:
    return str(uuid.uuid4())


def clamp_envelope_gain(value: float) -> float:
    if not math.isfinite(value):
        return ENVELOPE_GAIN_MIN
    return max(ENVELOPE_GAIN_MIN, min(ENVELOPE_GAIN_MAX, value))


@dataclass(frozen=True)
class EnvelopePoint:
    id: str
    time: float
    value: float
    clip_id: str | None = None
    clip_relative_time: float | None = None


@dataclass(frozen=True)
class EnvelopeSegment:
    id: str
    from_point_id: str
    to_point_id: str
    curve: float = 0.0


@dataclass
class TrackEnvelope:
    enabled: bool = True
    points: list[EnvelopePoint] = field(default_factory=list)
    segments: list[EnvelopeSegment] = field(default_factory=list)

    def sorted_points(self) -> list[EnvelopePoint]:
        return sorted(self.points, key=lambda p: p.time)

    def segment_between(self, from_id: str, to_id: str) -> EnvelopeSegment | None:
        for seg in self.segments:
            if seg.from_point_id == from_id and seg.to_point_id == to_id:
                return seg
        return None

    def curve_between(self, from_id: str, to_id: str) -> float:
        seg = self.segment_between(from_id, to_id)
        return seg.curve if seg is not None else 0.0


def default_envelope() -> TrackEnvelope:
    return TrackEnvelope(enabled=False)


# --- Evaluation ---


def get_envelope_multiplier_at_time(
    points: list[EnvelopePoint],
    segments: Iterable[EnvelopeSegment],
    t: float,
) -> float:
    """Envelope multiplier at *t*.

    Holds the first point's value before it and the last point's value after
    it. A point pair without a segment interpolates linearly. No points means
    unity gain. A NaN *t* reads as the first point.
    """
    if not points:
        return 1.0
    ordered = sorted(points, key=lambda p: p.time)
    first, last = ordered[0], ordered[-1]
    if math.isnan(t) or t <= first.time:
        return first.value
    if t >= last.time:
        return last.value

    times = [p.time for p in ordered]
    i = bisect.bisect_right(times, t) - 1
    p1, p2 = ordered[i], ordered[i + 1]
    span = p2.time - p1.time
    if span <= 0:
        return p2.value

    curve = 0.0
    for seg in segments:
        if seg.from_point_id == p1.id and seg.to_point_id == p2.id:
            curve = seg.curve
            break
    return interpolate(p1.value, p2.value, (t - p1.time) / span, curve)


def evaluate_envelope_gain_at(envelope: TrackEnvelope | None, t: float) -> float:
    if envelope is None or not envelope.enabled:
        return 1.0
    return get_envelope_multiplier_at_time(envelope.points, envelope.segments, t)


# --- Mutation helpers ---


def generate_segments_from_points(envelope: TrackEnvelope) -> TrackEnvelope:
    ordered = envelope.sorted_points()
    segments = [
        EnvelopeSegment(_new_id(), a.id, b.id, 0.0)
        for a, b in zip(ordered, ordered[1:])
    ]
    return replace(envelope, segments=segments)


def add_point(envelope: TrackEnvelope, point: EnvelopePoint) -> TrackEnvelope:
    """Insert *point*, splitting the segment it lands in.

    Both halves of a split segment inherit its curve.
    """
    ordered = sorted([*envelope.points, point], key=lambda p: p.time)
    index = next(i for i, p in enumerate(ordered) if p.id == point.id)
    segments = list(envelope.segments)

    if index > 0:
        prev = ordered[index - 1]
        if index < len(ordered) - 1:
            nxt = ordered[index + 1]
            old = envelope.segment_between(prev.id, nxt.id)
            curve = 0.0
            if old is not None:
                segments.remove(old)
                curve = old.curve
            segments.append(EnvelopeSegment(_new_id(), prev.id, point.id, curve))
            segments.append(EnvelopeSegment(_new_id(), point.id, nxt.id, curve))
        else:
            segments.append(EnvelopeSegment(_new_id(), prev.id, point.id, 0.0))
    elif len(ordered) > 1:
        segments.append(EnvelopeSegment(_new_id(), point.id, ordered[1].id, 0.0))

    return replace(envelope, points=ordered, segments=segments)


def remove_point(envelope: TrackEnvelope, point_id: str) -> TrackEnvelope:
    """Remove a point and bridge its neighbours with the rounded mean curve."""
    ordered = envelope.sorted_points()
    index = next((i for i, p in enumerate(ordered) if p.id == point_id), None)
    if index is None:
        return envelope

    segments = [
        s for s in envelope.segments
        if s.from_point_id != point_id and s.to_point_id != point_id
    ]

    if 0 < index < len(ordered) - 1:
        prev, nxt = ordered[index - 1], ordered[index + 1]
        incoming = next((s for s in envelope.segments if s.to_point_id == point_id), None)
        outgoing = next((s for s in envelope.segments if s.from_point_id == point_id), None)
        if incoming is not None and outgoing is not None:
            curve = float(math.floor((incoming.curve + outgoing.curve) / 2 + 0.5))
        elif incoming is not None:
            curve = incoming.curve
        elif outgoing is not None:
            curve = outgoing.curve
        else:
            curve = 0.0
        segments.append(EnvelopeSegment(_new_id(), prev.id, nxt.id, curve))

    points = [p for p in envelope.points if p.id != point_id]
    return replace(envelope, points=points, segments=segments)


def update_segment_curve(envelope: TrackEnvelope, segment_id: str, curve: float) -> TrackEnvelope:
    curve = clamp_curve(curve)
    segments = [
        replace(s, curve=curve) if s.id == segment_id else s
        for s in envelope.segments
    ]
    return replace(envelope, segments=segments)


def points_in_range(envelope: TrackEnvelope | None, start_ms: float, end_ms: float) -> list[EnvelopePoint]:
    """Points with ``start_ms <= time <= end_ms``. Disabled envelopes have none."""
    if envelope is None or not envelope.enabled:
        return []
    return [p for p in envelope.points if start_ms <= p.time <= end_ms]


def remove_points_in_range(envelope: TrackEnvelope, start_ms: float, end_ms: float) -> TrackEnvelope:
    if not envelope.enabled:
        return envelope
    removed = {p.id for p in points_in_range(envelope, start_ms, end_ms)}
    points = [p for p in envelope.points if p.id not in removed]
    segments = [
        s for s in envelope.segments
        if s.from_point_id not in removed and s.to_point_id not in removed
    ]
    cleaned = replace(envelope, points=points, segments=segments)
    if len(points) > 1 and not segments:
        return generate_segments_from_points(cleaned)
    return cleaned


def transfer_envelope(
    envelope: TrackEnvelope,
    start_ms: float,
    end_ms: float,
    new_start_ms: float,
    target_clip_id: str | None = None,
) -> tuple[list[EnvelopePoint], list[EnvelopeSegment]]:
    """Copy the points in ``[start_ms, end_ms]`` to *new_start_ms*.

    Copies get fresh ids. Segments travel along only when both ends are
    copied. With *target_clip_id* the copies are bound to that clip.
    """
    source = points_in_range(envelope, start_ms, end_ms)
    if not source:
        return [], []

    offset = new_start_ms - start_ms
    id_map: dict[str, str] = {}
    points = []
    for p in source:
        id_map[p.id] = _new_id()
        moved = replace(p, id=id_map[p.id], time=p.time + offset)
        if target_clip_id is not None:
            moved = replace(moved, clip_id=target_clip_id, clip_relative_time=p.time - start_ms)
        points.append(moved)

    segments = [
        EnvelopeSegment(_new_id(), id_map[s.from_point_id], id_map[s.to_point_id], s.curve)
        for s in envelope.segments
        if s.from_point_id in id_map and s.to_point_id in id_map
    ]
    return points, segments


def make_point_clip_relative(point: EnvelopePoint, clip_id: str, clip_start_ms: float) -> EnvelopePoint:
    return replace(point, clip_id=clip_id, clip_relative_time=point.time - clip_start_ms)


def resolve_clip_relative_point(point: EnvelopePoint, clip_start_ms: float | None) -> float:
    """Absolute time of *point*; unbound points or a missing clip keep ``point.time``."""
    if point.clip_id is None or clip_start_ms is None:
        return point.time
    return clip_start_ms + (point.clip_relative_time or 0.0)


def bind_envelope_to_clips(envelope: TrackEnvelope, clips: Iterable[Any]) -> TrackEnvelope:
    """Re-bind each point to the clip whose audible window contains it.

    Points bound to an existing clip are first resolved through that clip.
    Points outside every clip lose their binding.
    """
    clips = list(clips)
    by_id = {c.id: c for c in clips}
    points = []
    for p in envelope.points:
        bound = by_id.get(p.clip_id) if p.clip_id is not None else None
        abs_time = resolve_clip_relative_point(p, bound.start_time if bound else None)
        owner = next(
            (c for c in clips if c.start_time <= abs_time <= c.start_time + c.duration),
            None,
        )
        if owner is None:
            points.append(replace(p, time=abs_time, clip_id=None, clip_relative_time=None))
        else:
            points.append(
                replace(p, time=abs_time, clip_id=owner.id, clip_relative_time=abs_time - owner.start_time)
            )
    return replace(envelope, points=points)


# --- Legacy migration ---


def legacy_curve_to_signed(curve_type: str, shape: float) -> float:
    """Convert a named curve plus shape in [0, 1] into a signed segment curve.

    This does not reproduce the stored legacy value verbatim. The old format
    applied ``(shape - 0.5) * 2 * 99`` whatever the type; here ``linear``
    maps to 0 and ``easeIn`` is negated so the migrated segment bends the
    same way the named curve did.
    """
    if curve_type not in ("easeIn", "easeOut", "sCurve"):
        return 0.0
    intensity = (shape - 0.5) * 2 * 99
    if curve_type == "easeIn":
        return clamp_curve(-intensity)
    return clamp_curve(intensity)


def _point_from_dict(raw: dict[str, Any]) -> EnvelopePoint:
    rel = raw.get("clipRelativeTime")
    return EnvelopePoint(
        id=str(raw.get("id") or _new_id()),
        time=float(raw["time"]),
        value=clamp_envelope_gain(float(raw.get("value", 1.0))),
        clip_id=raw.get("clipId"),
        clip_relative_time=float(rel) if rel is not None else None,
    )


def migrate_to_segments(raw: dict[str, Any]) -> TrackEnvelope:
    """Build a ``TrackEnvelope`` from its dict form, upgrading legacy point curves.

    Older envelopes stored ``curve``/``curveShape`` on each point to shape
    the span to the next point. Those become segments. Envelopes that
    already carry segments keep them.
    """
    raw_points = []
    for entry in raw.get("points") or []:
        try:
            raw_points.append((entry, _point_from_dict(entry)))
        except (KeyError, TypeError, ValueError):
            log.warning("Skipping malformed envelope point %r", entry)
    raw_points.sort(key=lambda pair: pair[1].time)
    points = [p for _, p in raw_points]
    enabled = bool(raw.get("enabled", True))

    raw_segments = raw.get("segments") or []
    if raw_segments:
        known = {p.id for p in points}
        segments = []
        for s in raw_segments:
            try:
                seg = EnvelopeSegment(
                    id=str(s.get("id") or _new_id()),
                    from_point_id=str(s["fromPointId"]),
                    to_point_id=str(s["toPointId"]),
                    curve=clamp_curve(float(s.get("curve", 0.0))),
                )
            except (KeyError, TypeError, ValueError):
                log.warning("Skipping malformed envelope segment %r", s)
                continue
            if seg.from_point_id in known and seg.to_point_id in known:
                segments.append(seg)
        return TrackEnvelope(enabled=enabled, points=points, segments=segments)

    legacy = any("curve" in entry or "curveShape" in entry for entry, _ in raw_points)
    envelope = TrackEnvelope(enabled=enabled, points=points)
    if not legacy:
        return generate_segments_from_points(envelope)

    segments = []
    for (entry, a), (_, b) in zip(raw_points, raw_points[1:]):
        raw_shape = entry.get("curveShape", 0.5)
        try:
            shape = float(raw_shape)
        except (TypeError, ValueError):
            log.warning("Invalid curveShape %r on envelope point %s, using 0.5", raw_shape, a.id)
            shape = 0.5
        curve = legacy_curve_to_signed(entry.get("curve") or "linear", shape)
        segments.append(EnvelopeSegment(_new_id(), a.id, b.id, curve))
    log.debug("Migrated %d legacy envelope points to %d segments", len(points), len(segments))
    return replace(envelope, segments=segments)
