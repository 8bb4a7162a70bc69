"""PCM WAV bytes for rendered buffers."""

from __future__ import annotations

import io
import wave

import numpy as np

from .graph import AudioBuffer

_FULL_SCALE = {16: 32767.0, 24: 8388607.0}
_DITHER_AMPLITUDE = {16: 1 / 65536, 24: 1 / 16777216}


def _quantize(data: np.ndarray, bit_depth: int, dither: bool, seed: int) -> np.ndarray:
    """Float samples in [-1, 1] to integers, truncating toward zero."""
    samples = np.asarray(data, dtype=np.float64)
    if dither:
        rng = np.random.default_rng(seed)
        tpdf = rng.random(samples.shape) - rng.random(samples.shape)
        samples = samples + tpdf * _DITHER_AMPLITUDE[bit_depth]
    samples = np.clip(samples, -1.0, 1.0)
    return (samples * _FULL_SCALE[bit_depth]).astype(np.int32)


def encode_wav(buffer: AudioBuffer, bit_depth: int = 16, dither: bool = False, seed: int = 0) -> bytes:
    """Encode *buffer* as a little-endian PCM RIFF/WAVE file.

    Dither is triangular and seeded, so equal inputs give equal bytes.
    """
    if bit_depth not in _FULL_SCALE:
        raise ValueError(f"Unsupported bit depth {bit_depth}; expected 16 or 24")

    ints = _quantize(buffer.data, bit_depth, dither, seed)
    interleaved = ints.T.reshape(-1)
    if bit_depth == 16:
        raw = interleaved.astype("<i2").tobytes()
    else:
        raw = interleaved.astype("<i4").view(np.uint8).reshape(-1, 4)[:, :3].tobytes()

    out = io.BytesIO()
    with wave.open(out, "wb") as wf:
        wf.setnchannels(buffer.channels)
        wf.setsampwidth(bit_depth // 8)
        wf.setframerate(buffer.sample_rate)
        wf.writeframes(raw)
    return out.getvalue()


def decode_wav(data: bytes) -> AudioBuffer:
    """Read a 16- or 24-bit PCM WAV into float32 samples."""
    with wave.open(io.BytesIO(data), "rb") as wf:
        channels = wf.getnchannels()
        width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())

    if width == 2:
        ints = np.frombuffer(raw, dtype="<i2").astype(np.int32)
        scale = _FULL_SCALE[16]
    elif width == 3:
        triples = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3)
        padded = np.zeros((len(triples), 4), dtype=np.uint8)
        padded[:, 1:] = triples
        ints = padded.view("<i4").reshape(-1) >> 8
        scale = _FULL_SCALE[24]
    else:
        raise ValueError(f"Unsupported sample width {width * 8} bits")

    samples = (ints / scale).astype(np.float32)
    return AudioBuffer(sample_rate, samples.reshape(-1, channels).T.copy())
