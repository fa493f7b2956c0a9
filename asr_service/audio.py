"""Channel mixdown, linear resampling and PCM payload conversion.

Resampling is plain linear interpolation with no anti-aliasing filter.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def pcm_f32_to_array(data: bytes) -> np.ndarray:
    """Decode little-endian float32 PCM bytes into a mono array."""
    return np.frombuffer(data, dtype="<f4").astype(np.float32)


def array_to_pcm_f32(samples: np.ndarray) -> bytes:
    return np.ascontiguousarray(samples, dtype="<f4").tobytes()


def mixdown(channels: np.ndarray | Sequence[np.ndarray]) -> np.ndarray:
    """Mix ``(n_channels, n_samples)`` audio to mono, preserving power.

    Stereo becomes ``(left + right) / sqrt(2)``; ragged channel lists are
    truncated to the shortest one.
    """
    if isinstance(channels, np.ndarray) and channels.ndim == 1:
        return channels.astype(np.float32, copy=False)

    channel_list = [np.asarray(c, dtype=np.float32) for c in channels]
    if not channel_list:
        return np.zeros(0, dtype=np.float32)
    if len(channel_list) == 1:
        return channel_list[0]

    length = min(len(c) for c in channel_list)
    stacked = np.stack([c[:length] for c in channel_list])
    return (stacked.sum(axis=0) / math.sqrt(len(channel_list))).astype(np.float32)


def normalize(channels: np.ndarray, source_rate: int) -> tuple[np.ndarray, int]:
    return mixdown(channels), source_rate


def resample(mono: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linearly resample ``mono`` from ``source_rate`` to ``target_rate``."""
    if source_rate == target_rate:
        return mono
    if len(mono) == 0:
        return np.zeros(1, dtype=np.float32)

    ratio = target_rate / source_rate
    length = max(1, int(round(len(mono) * ratio)))
    position = np.arange(length, dtype=np.float64) / ratio
    index = np.floor(position).astype(np.int64)
    index = np.minimum(index, len(mono) - 1)
    following = np.minimum(index + 1, len(mono) - 1)
    weight = position - index
    weight = np.clip(weight, 0.0, 1.0)

    source = mono.astype(np.float64, copy=False)
    output = source[index] * (1.0 - weight) + source[following] * weight
    return output.astype(np.float32)
