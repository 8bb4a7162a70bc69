"""JSON serialization and deserialization for projects."""

from __future__ import annotations

import logging
from typing import Any

from .curves import clamp_curve
from .envelope import TrackEnvelope, migrate_to_segments
from .model import Clip, Marker, Project, Track
from .timebase import MusicalMetadata, TimeSignature

log = logging.getLogger(__name__)

SCHEMA = "dawcore-project-v1"
DEFAULT_TRACK_VOLUME = 75.0


def _serialize_envelope(envelope: TrackEnvelope) -> dict:
    points = []
    for p in envelope.sorted_points():
        point: dict[str, Any] = {"id": p.id, "time": p.time, "value": p.value}
        if p.clip_id is not None:
            point["clipId"] = p.clip_id
            point["clipRelativeTime"] = p.clip_relative_time
        points.append(point)
    return {
        "enabled": envelope.enabled,
        "points": points,
        "segments": [
            {"id": s.id, "fromPointId": s.from_point_id, "toPointId": s.to_point_id, "curve": s.curve}
            for s in envelope.segments
        ],
    }


def _serialize_clip(clip: Clip) -> dict:
    data: dict[str, Any] = {
        "id": clip.id,
        "startTime": clip.start_time,
        "trimStart": clip.trim_start,
        "trimEnd": clip.trim_end,
        "fadeIn": clip.fade_in,
        "fadeOut": clip.fade_out,
        "loop": clip.loop,
    }
    # Optional fields are omitted when unset
    if clip.loop_end is not None:
        data["loopEnd"] = clip.loop_end
    if clip.source_id is not None:
        data["sourceId"] = clip.source_id
    if clip.name:
        data["name"] = clip.name
    if clip.fade_in_curve:
        data["fadeInCurve"] = clip.fade_in_curve
    if clip.fade_out_curve:
        data["fadeOutCurve"] = clip.fade_out_curve
    return data


def serialize_project(project: Project) -> dict:
    """Convert a Project to a JSON-compatible dict with camelCase keys."""
    sig = project.music.time_signature
    tracks = []
    for track in project.tracks:
        entry: dict[str, Any] = {
            "id": track.id,
            "name": track.name,
            "volume": track.volume,
            "muted": track.muted,
            "soloed": track.soloed,
            "clips": [_serialize_clip(c) for c in track.clips],
        }
        if track.volume_envelope is not None:
            entry["volumeEnvelope"] = _serialize_envelope(track.volume_envelope)
        tracks.append(entry)

    return {
        "$schema": SCHEMA,
        "music": {
            "tempoBpm": project.music.tempo_bpm,
            "timeSignature": {"num": sig.num, "den": sig.den},
        },
        "tracks": tracks,
        "markers": [
            {"id": m.id, "timeMs": m.time_ms, "durationMs": m.duration_ms, "name": m.name, "color": m.color}
            for m in project.markers
        ],
    }


def _deserialize_clip(data: dict) -> Clip:
    loop_end = data.get("loopEnd")
    return Clip(
        id=str(data["id"]),
        start_time=max(0.0, float(data.get("startTime", 0.0))),
        trim_start=max(0.0, float(data.get("trimStart", 0.0))),
        trim_end=float(data["trimEnd"]),
        fade_in=max(0.0, float(data.get("fadeIn", 0.0))),
        fade_out=max(0.0, float(data.get("fadeOut", 0.0))),
        loop=bool(data.get("loop", False)),
        loop_end=float(loop_end) if loop_end is not None else None,
        source_id=data.get("sourceId"),
        name=str(data.get("name", "")),
        fade_in_curve=clamp_curve(float(data.get("fadeInCurve", 0.0))),
        fade_out_curve=clamp_curve(float(data.get("fadeOutCurve", 0.0))),
    )


def _deserialize_music(data: dict) -> MusicalMetadata:
    sig = data.get("timeSignature") or {}
    try:
        signature = TimeSignature(int(sig.get("num", 4)), int(sig.get("den", 4)))
        tempo = float(data.get("tempoBpm", 120.0))
    except (TypeError, ValueError):
        log.warning("Invalid musical metadata %r, using defaults", data)
        return MusicalMetadata()
    if tempo <= 0 or signature.num <= 0 or signature.den <= 0:
        log.warning("Invalid musical metadata %r, using defaults", data)
        return MusicalMetadata()
    return MusicalMetadata(tempo, signature)


def deserialize_project(data: dict) -> Project:
    """Reconstruct a Project from its dict form.

    Envelopes go through legacy migration, so values end up in [0, 4],
    curves in [-99, 99] and points sorted by time. Malformed clips and
    markers are logged and skipped, and an unreadable track volume is logged
    and replaced by the default; the rest of the project still loads.
    """
    schema = data.get("$schema")
    if schema is not None and schema != SCHEMA:
        log.warning("Unknown project schema %r, attempting to load", schema)

    tracks = []
    for raw_track in data.get("tracks", []):
        track_id = raw_track.get("id")
        if not track_id:
            log.warning("Skipping track with no id: %r", raw_track.get("name"))
            continue

        clips = []
        for raw_clip in raw_track.get("clips", []):
            try:
                clips.append(_deserialize_clip(raw_clip))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed clip in track %s: %s", track_id, e)

        raw_env = raw_track.get("volumeEnvelope")
        envelope = migrate_to_segments(raw_env) if isinstance(raw_env, dict) else None

        raw_volume = raw_track.get("volume", DEFAULT_TRACK_VOLUME)
        try:
            volume = float(raw_volume)
        except (TypeError, ValueError):
            log.warning("Invalid volume %r on track %s, using %s", raw_volume, track_id, DEFAULT_TRACK_VOLUME)
            volume = DEFAULT_TRACK_VOLUME

        tracks.append(Track(
            id=str(track_id),
            clips=clips,
            volume=volume,
            muted=bool(raw_track.get("muted", False)),
            soloed=bool(raw_track.get("soloed", False)),
            volume_envelope=envelope,
            name=str(raw_track.get("name", "")),
        ))

    markers = []
    for raw_marker in data.get("markers", []):
        try:
            markers.append(Marker(
                id=str(raw_marker["id"]),
                time_ms=float(raw_marker["timeMs"]),
                duration_ms=float(raw_marker.get("durationMs", 0.0)),
                name=str(raw_marker.get("name", "")),
                color=str(raw_marker.get("color", "")),
            ))
        except (KeyError, TypeError, ValueError) as e:
            log.warning("Skipping malformed marker: %s", e)

    return Project(tracks=tracks, markers=markers, music=_deserialize_music(data.get("music") or {}))
