import queue
import threading

import numpy as np
import pytest

from asr_service.chunking import window_bounds
from asr_service.decoder import merge_alignment_chunks
from asr_service.models import RawAlignmentChunk
from studio.audio import DecodedAudio


def detokenize(ids):
    return " ".join(f"w{i}" for i in ids)


class FakeEngine:
    """Emits one scripted chunk per recognition window.

    ``script[i]`` is the list of ``(token_id, start_unit, end_unit)`` for
    window ``i``; windows past the script are empty.
    """

    sample_rate = 16000
    time_precision = 0.02

    def __init__(self, script=None, fail_with=None, gate=None):
        self.script = script or []
        self.fail_with = fail_with
        self.gate = gate
        self.calls = 0
        self.closed = False

    def recognize(self, audio, config, on_chunk):
        self.calls += 1
        windows = list(window_bounds(
            len(audio), config.target_sample_rate, config.chunk_length_s, config.stride_length_s
        ))
        chunks = []
        for index, (start, stop, left, right) in enumerate(windows):
            tokens = self.script[index] if index < len(self.script) else []
            chunk = RawAlignmentChunk(
                stride=(stop - start, left, right),
                token_ids=[t for t, _, _ in tokens],
                token_timestamps=[(s, e) for _, s, e in tokens],
                is_last=index == len(windows) - 1,
            )
            chunks.append(chunk)
            on_chunk(chunk)
            if self.gate is not None:
                self.gate.wait(5)
            if self.fail_with is not None:
                raise self.fail_with
        return chunks

    def decode(self, chunks, time_precision, return_timestamps):
        return merge_alignment_chunks(
            chunks,
            time_precision=time_precision,
            return_timestamps=return_timestamps,
            sample_rate=self.sample_rate,
            detokenize=detokenize,
        )

    def close(self):
        self.closed = True


class FakeEncoder:
    extension = "bin"

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def encode(self, channels, sample_rate):
        self.calls.append(([len(c) for c in channels], sample_rate))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise RuntimeError("codec exploded")
        return b"ENC" + bytes(str(len(channels[0])), "ascii")


class FakeWorker:
    """In-memory worker: records submissions, responses are pushed by the test."""

    def __init__(self):
        self.outbox = queue.Queue()
        self.submitted = []
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self, timeout=None):
        self.stopped = True

    def submit(self, message):
        self.submitted.append(message)


@pytest.fixture
def fake_engine():
    return FakeEngine(script=[[(1, 0, 50), (2, 50, 100)]])


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def stereo_audio():
    rate = 16000
    t = np.arange(rate * 5, dtype=np.float32) / rate
    left = 0.5 * np.sin(2 * np.pi * 440 * t).astype(np.float32)
    right = 0.25 * np.sin(2 * np.pi * 220 * t).astype(np.float32)
    return DecodedAudio(channels=np.stack([left, right]), sample_rate=rate)


@pytest.fixture
def gate():
    return threading.Event()
