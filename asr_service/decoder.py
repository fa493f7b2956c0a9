"""Incremental decoding of streamed alignment chunks into text segments."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Sequence

from asr_service.models import RawAlignmentChunk
from common.schemas import SegmentPayload

if TYPE_CHECKING:
    from asr_service.engine import RecognitionEngine

logger = logging.getLogger(__name__)


def merge_alignment_chunks(
    chunks: Sequence[RawAlignmentChunk],
    time_precision: float,
    return_timestamps: bool,
    sample_rate: int,
    detokenize: Callable[[list[int]], str],
) -> list[SegmentPayload]:
    """Stitch overlapping recognition windows into one ordered segment list.

    Each window only owns the tokens that start outside its stride
    margins; the neighbouring window owns the rest. Runs of tokens that
    share a ``(start, end)`` pair become one segment.
    """
    runs: list[tuple[float, float | None, list[int]]] = []
    offset = 0

    for chunk in chunks:
        chunk_len, stride_left, stride_right = chunk.stride
        offset -= stride_left
        window_start = offset / sample_rate
        keep_from = stride_left / sample_rate
        keep_until = (chunk_len - stride_right) / sample_rate

        current_key = None
        for token, (start_unit, end_unit) in zip(chunk.token_ids, chunk.token_timestamps):
            rel_start = start_unit * time_precision
            if rel_start < keep_from:
                continue
            if stride_right and rel_start >= keep_until:
                continue
            key = (start_unit, end_unit)
            if key != current_key:
                start = window_start + rel_start
                end = None if end_unit is None else window_start + end_unit * time_precision
                runs.append((start, end, []))
                current_key = key
            runs[-1][2].append(token)

        offset += chunk_len - stride_right

    if not return_timestamps:
        text = detokenize([t for _, _, tokens in runs for t in tokens]).strip()
        return [SegmentPayload(timestamp=(0.0, None), text=text)] if text else []

    segments: list[SegmentPayload] = []
    for start, end, tokens in runs:
        text = detokenize(tokens).strip()
        if not text:
            continue
        if end is not None:
            end = round(max(end, start), 3)
        segments.append(SegmentPayload(timestamp=(round(start, 3), end), text=text))
    return segments


def fill_missing_ends(segments: list[SegmentPayload], duration: float) -> list[SegmentPayload]:
    """Close open segments: at the next start, or at ``duration`` for the last."""
    filled: list[SegmentPayload] = []
    for i, seg in enumerate(segments):
        start, end = seg.timestamp
        if end is None:
            if i + 1 < len(segments):
                end = segments[i + 1].timestamp[0]
            else:
                end = duration
            end = max(end, start)
            seg = SegmentPayload(timestamp=(start, end), text=seg.text)
        filled.append(seg)
    return filled


class PartialDecoder:
    """Re-decodes the whole accumulated chunk list on every new chunk.

    Quadratic over a job, but a job has a few dozen windows at most and a
    full re-decode keeps seam merging identical to the final pass.
    """

    def __init__(self, engine: RecognitionEngine, return_timestamps: bool, duration: float):
        self.engine = engine
        self.time_precision = engine.time_precision
        self.return_timestamps = return_timestamps
        self.duration = duration
        self._chunks: list[RawAlignmentChunk] = []

    def __len__(self) -> int:
        return len(self._chunks)

    def push(self, chunk: RawAlignmentChunk) -> list[SegmentPayload]:
        self._chunks.append(chunk)
        return self.decode()

    def decode(self) -> list[SegmentPayload]:
        segments = self.engine.decode(
            list(self._chunks),
            time_precision=self.time_precision,
            return_timestamps=self.return_timestamps,
        )
        logger.debug("Decoded %d chunks into %d segments", len(self._chunks), len(segments))
        return fill_missing_ends(segments, self.duration)

    def decode_all(self, chunks: Sequence[RawAlignmentChunk]) -> list[SegmentPayload]:
        """Decode the engine's final chunk list, replacing what was pushed."""
        self._chunks = list(chunks)
        return self.decode()

    def clear(self) -> None:
        self._chunks.clear()
