from __future__ import annotations

import logging
import queue
import threading

from asr_service.audio import pcm_f32_to_array, resample
from asr_service.chunking import estimate_total
from asr_service.decoder import PartialDecoder
from asr_service.engine import EngineCache
from asr_service.models import EngineConfig, RawAlignmentChunk, RecognitionConfig
from common.config import ASRSettings
from common.schemas import (
    DoneMessage,
    ErrorMessage,
    PartialMessage,
    ProgressMessage,
    TranscribeMessage,
    TranscribePayload,
    WorkerResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "transcription failed"

_STOP = object()


class TranscriptionWorker:
    """Runs transcription jobs one at a time on a background thread.

    Every job streams ``progress``, ``partial``, then ``done`` or ``error``
    into ``outbox``, tagged with its job id. Stale jobs are not filtered
    here; the host's job controller drops their events.
    """

    def __init__(self, settings: ASRSettings | None = None, engines: EngineCache | None = None):
        self.settings = settings or ASRSettings()
        self.engines = engines or EngineCache()
        self.inbox: queue.Queue = queue.Queue()
        self.outbox: queue.Queue[WorkerResponse] = queue.Queue(maxsize=self.settings.outbox_size)
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="transcription-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        if self._thread:
            self._stopping.set()
            self.inbox.put(_STOP)
            self._thread.join(timeout)
            self._thread = None

    def submit(self, message: TranscribeMessage) -> None:
        self.inbox.put(message)

    def _run(self) -> None:
        while True:
            message = self.inbox.get()
            if message is _STOP:
                break
            self.run_job(message)

    def _emit(self, message: WorkerResponse) -> None:
        # a full outbox is abandoned once stop is requested
        while not self._stopping.is_set():
            try:
                self.outbox.put(message, timeout=0.1)
                return
            except queue.Full:
                continue
        logger.debug("Worker stopping, dropped %s for job %d", message.type.value, message.job_id)

    def _engine_config(self, payload: TranscribePayload) -> EngineConfig:
        return EngineConfig(
            model_size=self.settings.model_size,
            device=self.settings.device,
            compute_type=self.settings.compute_type,
            runtime_path=payload.engine_runtime_path,
            local_model_path=payload.local_model_path,
            allow_local=payload.allow_local,
            allow_remote=payload.allow_remote,
            use_cache=payload.use_cache,
        )

    def run_job(self, message: TranscribeMessage) -> None:
        job_id = message.job_id
        payload = message.payload
        logger.info("Job %d started", job_id)
        decoder: PartialDecoder | None = None
        try:
            engine = self.engines.ensure(self._engine_config(payload))
            rate = engine.sample_rate or payload.sample_rate

            audio = pcm_f32_to_array(payload.audio)
            audio = resample(audio, payload.sample_rate, rate)

            total = estimate_total(len(audio), rate, payload.chunk_length, payload.stride_length)
            config = RecognitionConfig(
                target_sample_rate=rate,
                chunk_length_s=payload.chunk_length,
                stride_length_s=payload.stride_length,
                return_timestamps=payload.return_timestamps,
            )
            decoder = PartialDecoder(engine, payload.return_timestamps, duration=len(audio) / rate)
            self._emit(ProgressMessage(job_id=job_id, processed=0, total=total))

            def on_chunk(chunk: RawAlignmentChunk) -> None:
                segments = decoder.push(chunk)
                self._emit(PartialMessage(
                    job_id=job_id,
                    processed=len(decoder),
                    total=total,
                    segments=segments,
                ))

            final_chunks = engine.recognize(audio, config, on_chunk)
            segments = decoder.decode_all(final_chunks)
            self._emit(DoneMessage(job_id=job_id, segments=segments))
            logger.info("Job %d done: %d segments", job_id, len(segments))
        except Exception as exc:
            logger.exception("Job %d failed", job_id)
            self._emit(ErrorMessage(job_id=job_id, message=str(exc) or DEFAULT_ERROR_MESSAGE))
        finally:
            if decoder is not None:
                decoder.clear()
