from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from typing import Callable, Protocol

import numpy as np

from asr_service.chunking import window_bounds
from asr_service.decoder import merge_alignment_chunks
from asr_service.models import EngineConfig, RawAlignmentChunk, RecognitionConfig
from common.schemas import SegmentPayload

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[RawAlignmentChunk], None]


class EngineError(Exception):
    """The recognition engine failed to load or to run."""


class RecognitionEngine(Protocol):
    """A streaming recognizer: mono samples in, alignment chunks out."""

    sample_rate: int
    time_precision: float

    def recognize(
        self,
        audio: np.ndarray,
        config: RecognitionConfig,
        on_chunk: ChunkCallback,
    ) -> list[RawAlignmentChunk]:
        ...

    def decode(
        self,
        chunks: list[RawAlignmentChunk],
        time_precision: float,
        return_timestamps: bool,
    ) -> list[SegmentPayload]:
        ...

    def close(self) -> None:
        ...


class WhisperEngine:
    """faster-whisper model run window by window over the audio.

    ``model_dir`` is a throwaway download directory owned by this engine;
    ``close`` removes it.
    """

    def __init__(self, model, beam_size: int = 5, model_dir: str | None = None):
        from faster_whisper.tokenizer import Tokenizer

        self.model = model
        self.beam_size = beam_size
        self.model_dir = model_dir
        self.sample_rate = model.feature_extractor.sampling_rate
        self.time_precision = model.time_precision
        self._tokenizer = Tokenizer(
            model.hf_tokenizer,
            model.model.is_multilingual,
            task="transcribe",
            # only text tokens are decoded, the language token is never emitted
            language="en",
        )

    def recognize(
        self,
        audio: np.ndarray,
        config: RecognitionConfig,
        on_chunk: ChunkCallback,
    ) -> list[RawAlignmentChunk]:
        windows = list(window_bounds(
            len(audio),
            config.target_sample_rate,
            config.chunk_length_s,
            config.stride_length_s,
        ))
        chunks: list[RawAlignmentChunk] = []
        for index, (start, stop, left, right) in enumerate(windows):
            segments, _ = self.model.transcribe(
                audio[start:stop],
                task="transcribe",
                beam_size=self.beam_size,
                vad_filter=False,
                condition_on_previous_text=False,
                without_timestamps=False,
            )
            token_ids: list[int] = []
            token_timestamps: list[tuple[int, int]] = []
            for seg in segments:
                stamp = (
                    int(round(seg.start / self.time_precision)),
                    int(round(seg.end / self.time_precision)),
                )
                for token in seg.tokens:
                    token_ids.append(token)
                    token_timestamps.append(stamp)

            chunk = RawAlignmentChunk(
                stride=(stop - start, left, right),
                token_ids=token_ids,
                token_timestamps=token_timestamps,
                is_last=index == len(windows) - 1,
            )
            chunks.append(chunk)
            on_chunk(chunk)
        return chunks

    def decode(
        self,
        chunks: list[RawAlignmentChunk],
        time_precision: float,
        return_timestamps: bool,
    ) -> list[SegmentPayload]:
        return merge_alignment_chunks(
            chunks,
            time_precision=time_precision,
            return_timestamps=return_timestamps,
            sample_rate=self.sample_rate,
            detokenize=self._tokenizer.decode,
        )

    def close(self) -> None:
        if self.model_dir:
            shutil.rmtree(self.model_dir, ignore_errors=True)
            logger.info("Removed model directory %s", self.model_dir)
            self.model_dir = None


def load_whisper_engine(config: EngineConfig) -> WhisperEngine:
    from faster_whisper import WhisperModel

    if not config.allow_local and not config.allow_remote:
        raise EngineError("Neither local nor remote models are allowed")

    model_path = config.model_size
    if config.allow_local and config.local_model_path and os.path.isdir(config.local_model_path):
        model_path = config.local_model_path

    download_root = config.runtime_path or None
    model_dir = None
    if not config.use_cache:
        download_root = model_dir = tempfile.mkdtemp(prefix="clipscribe_model_")

    logger.info("Loading faster-whisper model: %s", model_path)
    try:
        model = WhisperModel(
            model_path,
            device=config.device,
            compute_type=config.compute_type,
            download_root=download_root,
            local_files_only=not config.allow_remote,
        )
        engine = WhisperEngine(model, model_dir=model_dir)
    except Exception as exc:
        if model_dir:
            shutil.rmtree(model_dir, ignore_errors=True)
        raise EngineError(f"Failed to load model {model_path}: {exc}") from exc
    logger.info("Model loaded")
    return engine


class EngineCache:
    """Keeps one engine alive until its configuration changes."""

    def __init__(self, factory: Callable[[EngineConfig], RecognitionEngine] = load_whisper_engine):
        self._factory = factory
        self._config: EngineConfig | None = None
        self._engine: RecognitionEngine | None = None
        self._lock = threading.Lock()

    def ensure(self, config: EngineConfig) -> RecognitionEngine:
        with self._lock:
            if self._engine is None or config != self._config:
                if self._engine is not None:
                    logger.info("Engine configuration changed, reloading")
                self._release()
                self._engine = self._factory(config)
                self._config = config
            return self._engine

    def clear(self) -> None:
        with self._lock:
            self._release()

    def _release(self) -> None:
        engine, self._engine, self._config = self._engine, None, None
        if engine is not None:
            engine.close()
