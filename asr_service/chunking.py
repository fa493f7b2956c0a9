"""Recognition window arithmetic.

``estimate_total`` only feeds progress bars; the real pass count comes
from the engine and may differ for odd chunk/stride configs.
"""

from __future__ import annotations

import math
from typing import Iterator


def estimate_total(
    sample_count: int,
    sample_rate: int,
    chunk_length_s: float,
    stride_length_s: float,
) -> int:
    """Predict how many windows the recognizer will run over the audio."""
    if chunk_length_s <= 0:
        return 1
    window = sample_rate * chunk_length_s
    stride = sample_rate * stride_length_s
    jump = window - 2 * stride
    if window <= 0:
        return 1
    if sample_count <= window:
        return 1
    if jump <= 0:
        return math.ceil(sample_count / window)
    return max(1, math.ceil((sample_count - window) / jump) + 1)


def window_bounds(
    sample_count: int,
    sample_rate: int,
    chunk_length_s: float,
    stride_length_s: float,
) -> Iterator[tuple[int, int, int, int]]:
    """Yield ``(start, stop, left_stride, right_stride)`` sample windows.

    Windows advance by ``chunk - 2 * stride`` so consecutive windows share
    ``2 * stride`` samples. The first window has no left stride and the
    last one no right stride. Degenerate configs fall back to a single
    pass, or to back-to-back windows when the stride eats the jump.
    """
    window = int(sample_rate * chunk_length_s)
    stride = int(sample_rate * stride_length_s)
    if chunk_length_s <= 0 or window <= 0 or sample_count <= window:
        yield 0, sample_count, 0, 0
        return

    jump = window - 2 * stride
    if jump <= 0:
        jump, stride = window, 0

    start = 0
    while True:
        stop = min(start + window, sample_count)
        is_last = stop >= sample_count
        left = 0 if start == 0 else stride
        right = 0 if is_last else stride
        yield start, stop, left, right
        if is_last:
            return
        start += jump
