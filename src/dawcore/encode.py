"""Convert rendered WAV bytes into export containers."""

from __future__ import annotations

import io
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Literal, Protocol

import soundfile as sf

log = logging.getLogger(__name__)

ExportFormat = Literal["wav", "flac", "m4a", "ogg"]
EXPORT_FORMATS: tuple[str, ...] = ("wav", "flac", "m4a", "ogg")

ProgressFn = Callable[[float], None]


class ConversionError(RuntimeError):
    """A conversion was invalid before it ran, or produced nothing."""


@dataclass
class MonotonicProgress:
    """Forwards progress clamped to [0, 1] and never moving backwards."""

    callback: ProgressFn | None = None
    value: float | None = field(default=None, init=False)

    def __call__(self, p: float) -> None:
        if p != p:  # NaN
            return
        p = min(1.0, max(0.0, p))
        if self.value is not None and p <= self.value:
            return
        self.value = p
        if self.callback is not None:
            self.callback(p)


class Conversion(Protocol):
    @property
    def is_valid(self) -> bool: ...

    @property
    def validation_errors(self) -> list[str]: ...

    def execute(self, on_progress: ProgressFn) -> bytes: ...


class Converter(Protocol):
    def init(self, wav_bytes: bytes, fmt: str) -> Conversion: ...


def _wav_errors(wav_bytes: bytes) -> list[str]:
    if not wav_bytes:
        return ["input is empty"]
    try:
        info = sf.info(io.BytesIO(wav_bytes))
    except (RuntimeError, sf.LibsndfileError) as exc:
        return [f"input is not readable audio: {exc}"]
    if info.frames <= 0:
        return ["input has no audio frames"]
    return []


# --- soundfile backend ---

_SOUNDFILE_FORMATS = {
    "flac": ("FLAC", "PCM_16"),
    "ogg": ("OGG", "VORBIS"),
}


@dataclass
class SoundfileConversion:
    wav_bytes: bytes
    fmt: str
    validation_errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors

    def execute(self, on_progress: ProgressFn) -> bytes:
        container, subtype = _SOUNDFILE_FORMATS[self.fmt]
        data, sample_rate = sf.read(io.BytesIO(self.wav_bytes), dtype="float32", always_2d=True)
        on_progress(0.5)
        out = io.BytesIO()
        sf.write(out, data, sample_rate, format=container, subtype=subtype)
        on_progress(1.0)
        return out.getvalue()


class SoundfileConverter:
    """FLAC and Ogg Vorbis through libsndfile."""

    formats = frozenset(_SOUNDFILE_FORMATS)

    def init(self, wav_bytes: bytes, fmt: str) -> SoundfileConversion:
        errors = []
        if fmt not in self.formats:
            errors.append(f"soundfile backend cannot write {fmt!r}")
        errors.extend(_wav_errors(wav_bytes))
        return SoundfileConversion(wav_bytes, fmt, errors)


# --- ffmpeg backend ---

_FFMPEG_ARGS = {
    "flac": ["-c:a", "flac", "-f", "flac"],
    "ogg": ["-c:a", "libvorbis", "-f", "ogg"],
    "m4a": ["-c:a", "aac", "-b:a", "192k", "-movflags", "frag_keyframe+empty_moov", "-f", "mp4"],
}


@dataclass
class FfmpegConversion:
    binary: str | None
    wav_bytes: bytes
    fmt: str
    timeout_sec: float = 120.0
    validation_errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors

    def command(self) -> list[str]:
        return [
            str(self.binary), "-hide_banner", "-loglevel", "error",
            "-f", "wav", "-i", "pipe:0",
            *_FFMPEG_ARGS[self.fmt],
            "pipe:1",
        ]

    def execute(self, on_progress: ProgressFn) -> bytes:
        on_progress(0.0)
        try:
            proc = subprocess.run(
                self.command(),
                input=self.wav_bytes,
                capture_output=True,
                timeout=self.timeout_sec,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(f"ffmpeg timed out after {self.timeout_sec}s") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.decode(errors="replace")[-4000:]
            raise ConversionError(f"ffmpeg failed with code {proc.returncode}: {stderr}")
        on_progress(1.0)
        return proc.stdout


@dataclass
class FfmpegConverter:
    """Any export format through an ``ffmpeg`` binary found on PATH."""

    binary: str | None = field(default_factory=lambda: shutil.which("ffmpeg"))
    timeout_sec: float = 120.0

    formats = frozenset(_FFMPEG_ARGS)

    def init(self, wav_bytes: bytes, fmt: str) -> FfmpegConversion:
        errors = []
        if not self.binary:
            errors.append("ffmpeg not found")
        if fmt not in self.formats:
            errors.append(f"ffmpeg backend cannot write {fmt!r}")
        errors.extend(_wav_errors(wav_bytes))
        return FfmpegConversion(self.binary, wav_bytes, fmt, self.timeout_sec, errors)


def default_converter(fmt: str) -> Converter:
    if fmt in SoundfileConverter.formats:
        return SoundfileConverter()
    return FfmpegConverter()


def encode(
    wav_bytes: bytes,
    fmt: str,
    on_progress: ProgressFn | None = None,
    converter: Converter | None = None,
) -> bytes:
    """Encode rendered WAV bytes as *fmt*.

    ``wav`` passes through untouched. Other formats go through *converter*
    (libsndfile for flac/ogg, ffmpeg for m4a by default). An invalid
    conversion raises before anything runs; an empty result raises too.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format {fmt!r}; expected one of {EXPORT_FORMATS}")
    progress = MonotonicProgress(on_progress)
    if fmt == "wav":
        progress(1.0)
        return wav_bytes

    conversion = (converter or default_converter(fmt)).init(wav_bytes, fmt)
    if not conversion.is_valid:
        raise ConversionError(f"Conversion not valid: {'; '.join(conversion.validation_errors)}")
    result = conversion.execute(progress)
    if not result:
        raise ConversionError(f"Conversion to {fmt} produced no output")
    progress(1.0)
    log.debug("Encoded %d WAV bytes to %d %s bytes", len(wav_bytes), len(result), fmt)
    return result
