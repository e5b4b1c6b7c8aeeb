from __future__ import annotations

import base64
import math
from dataclasses import dataclass

import numpy as np

# Levels below this are reported as silence.
LEVEL_FLOOR_DBFS = -60.0


@dataclass(frozen=True, slots=True)
class AudioFrameF32:
    samples: np.ndarray
    sample_rate_hz: int


def to_mono_f32(samples: np.ndarray) -> np.ndarray:
    samples = np.asarray(samples, dtype=np.float32)
    if samples.ndim == 1:
        return samples
    if samples.ndim == 2:
        return samples.mean(axis=1).astype(np.float32)
    raise ValueError("samples must be 1D (mono) or 2D (frames, channels)")


def resample_linear(samples: np.ndarray, *, from_rate_hz: int, to_rate_hz: int) -> np.ndarray:
    if from_rate_hz <= 0 or to_rate_hz <= 0:
        raise ValueError("sample rates must be > 0")
    samples = np.asarray(samples, dtype=np.float32)
    if from_rate_hz == to_rate_hz or samples.size == 0:
        return samples

    dst_len = max(int(math.floor(samples.shape[0] * (to_rate_hz / from_rate_hz))), 1)
    x_old = np.arange(samples.shape[0], dtype=np.float32)
    x_new = np.linspace(0.0, samples.shape[0] - 1, num=dst_len, dtype=np.float32)
    return np.interp(x_new, x_old, samples).astype(np.float32)


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clipped * 32767.0).astype("<i2").tobytes()


def pcm16le_to_float32(data: bytes) -> np.ndarray:
    if len(data) % 2:
        data = data[:-1]
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def encode_pcm16_base64(samples: np.ndarray) -> str:
    return base64.b64encode(float32_to_pcm16le(samples)).decode("ascii")


def decode_pcm16_base64(payload: str) -> np.ndarray:
    return pcm16le_to_float32(base64.b64decode(payload))


def audio_level(samples: np.ndarray) -> float:
    """Map the RMS of a frame onto 0..1 (linear in dBFS above the floor)."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples))))
    if rms <= 0.0:
        return 0.0
    dbfs = 20.0 * math.log10(rms)
    level = (dbfs - LEVEL_FLOOR_DBFS) / -LEVEL_FLOOR_DBFS
    return min(1.0, max(0.0, level))


def prepare_capture_frame(frame: AudioFrameF32, *, target_rate_hz: int) -> np.ndarray:
    mono = to_mono_f32(frame.samples)
    return resample_linear(mono, from_rate_hz=frame.sample_rate_hz, to_rate_hz=target_rate_hz)
