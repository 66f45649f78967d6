"""
Audio codec helpers.

Float samples (numpy float32 in [-1, 1]) ↔ signed 16-bit PCM ↔ base64 ↔ WAV.
Every function here is pure: no device access, no network.
"""

import base64
import io
import struct
import wave
from typing import Sequence, Tuple, Union

import numpy as np

SampleArray = Union[np.ndarray, Sequence[float]]

WAV_HEADER_SIZE = 44


def _as_float32(samples: SampleArray) -> np.ndarray:
    return np.asarray(samples, dtype=np.float32).reshape(-1)


def resample_linear(samples: SampleArray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resampler (not band-limited).

    ``ratio = source/target``; output length is ``floor(n / ratio)``; each
    output sample interpolates between ``lo`` and ``min(lo + 1, n - 1)``.
    """
    data = _as_float32(samples)
    if source_rate == target_rate or data.size == 0:
        return data.copy()
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"sample rates must be positive (got {source_rate} -> {target_rate})")

    ratio = source_rate / target_rate
    out_len = int(np.floor(data.size / ratio))
    if out_len <= 0:
        return np.zeros(0, dtype=np.float32)

    positions = np.arange(out_len, dtype=np.float64) * ratio
    lo = np.floor(positions).astype(np.int64)
    hi = np.minimum(lo + 1, data.size - 1)
    frac = (positions - lo).astype(np.float32)
    return (data[lo] * (1.0 - frac) + data[hi] * frac).astype(np.float32)


def float_to_pcm16(samples: SampleArray) -> bytes:
    """Quantize to little-endian int16.

    Clamped to [-1, 1]; negatives scale by 0x8000, the rest by 0x7FFF,
    truncated toward zero.
    """
    data = np.clip(_as_float32(samples), -1.0, 1.0).astype(np.float64)
    scaled = np.where(data < 0, data * 0x8000, data * 0x7FFF)
    return np.trunc(scaled).astype("<i2").tobytes()


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    """Inverse of float_to_pcm16 (within quantization error)."""
    ints = np.frombuffer(pcm, dtype="<i2").astype(np.float32)
    return np.where(ints < 0, ints / 0x8000, ints / 0x7FFF).astype(np.float32)


def encode_samples_to_base64(samples: SampleArray, source_rate: int, target_rate: int) -> str:
    """Resample (when rates differ), quantize to PCM16 and base64 encode."""
    resampled = resample_linear(samples, source_rate, target_rate)
    return base64.b64encode(float_to_pcm16(resampled)).decode("ascii")


def encode_silence_to_base64(sample_count: int) -> str:
    """Base64 PCM16 buffer of ``sample_count`` zero samples."""
    if sample_count < 0:
        raise ValueError("sample_count must be >= 0")
    return base64.b64encode(b"\x00\x00" * sample_count).decode("ascii")


def downmix_to_mono(channels: Union[np.ndarray, Sequence[SampleArray]]) -> np.ndarray:
    """Average channels into one. Accepts a 1-D array or a sequence of per-channel arrays."""
    arr = np.asarray(channels, dtype=np.float32)
    if arr.ndim == 1:
        return arr
    if arr.shape[0] == 1:
        return arr[0]
    return arr.mean(axis=0).astype(np.float32)


def build_wav_header(data_size: int, sample_rate: int) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for mono 16-bit PCM."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,               # fmt chunk size
        1,                # PCM
        1,                # mono
        sample_rate,
        sample_rate * 2,  # byte rate
        2,                # block align
        16,               # bits per sample
        b"data",
        data_size,
    )


def encode_audio_buffer_to_wav(
    channels: Union[np.ndarray, Sequence[SampleArray]],
    sample_rate: int,
) -> bytes:
    """Build a mono 16-bit WAV container, averaging multi-channel input."""
    pcm = float_to_pcm16(downmix_to_mono(channels))
    return build_wav_header(len(pcm), sample_rate) + pcm


def decode_wav_to_float(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode a 16-bit PCM WAV into mono float samples and its sample rate."""
    with wave.open(io.BytesIO(data), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"unsupported sample width: {wf.getsampwidth() * 8} bits")
        n_channels = wf.getnchannels()
        rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    samples = pcm16_to_float(frames)
    if n_channels > 1:
        samples = samples.reshape(-1, n_channels).T
        samples = downmix_to_mono(samples)
    return samples, rate
