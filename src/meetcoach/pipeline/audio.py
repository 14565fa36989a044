"""
PCM Helpers

numpy transforms applied to a flushed segment before it is streamed to the
prosody model: peak normalization, mono downmix, linear resampling and the
44-byte RIFF/WAVE container.
"""

import io
import math

import numpy as np
import soundfile as sf

WAV_HEADER_BYTES = 44
NORMALIZE_TARGET = math.floor(0.9 * 32767)
SILENCE_FLOOR_DBFS = -100.0


def _as_frames(pcm: bytes, channels: int) -> np.ndarray:
    """View s16le bytes as an (n_frames, channels) int16 array, dropping any partial frame."""
    samples = np.frombuffer(pcm, dtype="<i2", count=len(pcm) // 2)
    usable = (len(samples) // channels) * channels
    return samples[:usable].reshape(-1, channels)


def normalize_peak(pcm: bytes) -> bytes:
    """Scale towards 0.9 full scale. Gain is never above 1, so quiet audio is untouched."""
    samples = np.frombuffer(pcm, dtype="<i2", count=len(pcm) // 2)
    if samples.size == 0:
        return pcm

    peak = int(np.max(np.abs(samples.astype(np.int32))))
    if peak == 0:
        return pcm

    gain = NORMALIZE_TARGET / peak
    if gain >= 1:
        return pcm

    scaled = np.clip(np.rint(samples.astype(np.float64) * gain), -32768, 32767)
    return scaled.astype("<i2").tobytes()


def downmix_to_mono(pcm: bytes, channels: int) -> bytes:
    """Average interleaved channels into a single channel."""
    if channels <= 1:
        return pcm

    frames = _as_frames(pcm, channels)
    mono = np.rint(frames.astype(np.float64).mean(axis=1))
    return np.clip(mono, -32768, 32767).astype("<i2").tobytes()


def resample_linear(pcm: bytes, src_rate: int, dst_rate: int, channels: int = 1) -> bytes:
    """
    Linearly interpolate interleaved s16le audio to a new sample rate.

    Output frame count is round(n * dst_rate / src_rate); the right-hand
    neighbour of the final position clamps to the last input frame. Equal
    rates return the input unchanged.
    """
    if src_rate <= 0 or dst_rate <= 0:
        raise ValueError(f"Invalid sample rates: {src_rate} -> {dst_rate}")

    if src_rate == dst_rate:
        return pcm

    frames = _as_frames(pcm, channels)
    n_in = frames.shape[0]
    n_out = int(round(n_in * dst_rate / src_rate))
    if n_in == 0 or n_out == 0:
        return b""

    positions = np.arange(n_out, dtype=np.float64) * (src_rate / dst_rate)
    left = np.minimum(np.floor(positions).astype(np.int64), n_in - 1)
    right = np.minimum(left + 1, n_in - 1)
    frac = (positions - left)[:, None]

    src = frames.astype(np.float64)
    out = src[left] + (src[right] - src[left]) * frac
    return np.clip(np.rint(out), -32768, 32767).astype("<i2").tobytes()


def build_wav(pcm: bytes, sample_rate: int, channels: int) -> bytes:
    """Wrap s16le PCM in a 16-bit RIFF/WAVE container with the canonical 44-byte header."""
    buffer = io.BytesIO()
    sf.write(buffer, _as_frames(pcm, channels), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def rms_dbfs(pcm: bytes) -> float | None:
    """RMS level of s16le samples in dBFS, clamped to [-100, 0]. None for an empty payload."""
    samples = np.frombuffer(pcm, dtype="<i2", count=len(pcm) // 2)
    if samples.size == 0:
        return None

    normalized = samples.astype(np.float64) / 32768.0
    rms = float(np.sqrt(np.mean(normalized * normalized)))
    if rms <= 0:
        return SILENCE_FLOOR_DBFS

    return max(SILENCE_FLOOR_DBFS, min(0.0, 20 * math.log10(rms)))


def rms_dbfs_from_wav(wav: bytes) -> float | None:
    """Loudness of a WAV segment, skipping the fixed-size header."""
    return rms_dbfs(wav[WAV_HEADER_BYTES:])
