from __future__ import annotations

import asyncio
import logging
import queue
import time
import uuid
from typing import Callable, Protocol

from asr_service.audio import array_to_pcm_f32
from common.config import StudioSettings
from common.schemas import (
    JobView,
    SegmentView,
    SessionState,
    TranscribeMessage,
    TranscribePayload,
    WorkerResponse,
)
from studio.audio import DecodedAudio, decode_audio
from studio.controller import EventType, Job, JobController, JobEvent, JobState
from studio.encoders import Encoder, get_encoder
from studio.errors import NothingToExportError, SessionLimitError
from studio.export import build_archive
from studio.grouping import GroupMode, apply_grouping
from studio.segments import SegmentStore

logger = logging.getLogger(__name__)


class WorkerClient(Protocol):
    outbox: queue.Queue

    def start(self) -> None:
        ...

    def stop(self, timeout: float | None = None) -> None:
        ...

    def submit(self, message: TranscribeMessage) -> None:
        ...


class StudioSession:
    """One loaded recording: its audio, transcript segments and jobs.

    Worker messages are applied by ``pump``; grouping and export take the
    store lock, so a snapshot replace is never interleaved with them.
    """

    def __init__(self, session_id: str, worker: WorkerClient, settings: StudioSettings | None = None):
        self.session_id = session_id
        self.worker = worker
        self.settings = settings or StudioSettings()
        self.audio: DecodedAudio | None = None
        self.store = SegmentStore()
        self.controller = JobController()

    def load_audio(self, data: bytes) -> Job:
        audio = decode_audio(data, self.settings.ffmpeg_bin, self.settings.ffprobe_bin)
        return self.submit(audio)

    def submit(self, audio: DecodedAudio) -> Job:
        job = self.controller.submit()
        with self.store.lock:
            self.audio = audio
            self.store.replace([])
        self.worker.submit(TranscribeMessage(
            job_id=job.id,
            payload=TranscribePayload(
                audio=array_to_pcm_f32(audio.mono()),
                sample_rate=audio.sample_rate,
                chunk_length=self.settings.chunk_length_s,
                stride_length=self.settings.stride_length_s,
                return_timestamps=self.settings.return_timestamps,
                engine_runtime_path=self.settings.engine_runtime_path,
                local_model_path=self.settings.local_model_path,
                allow_local=self.settings.allow_local,
                allow_remote=self.settings.allow_remote,
                use_cache=self.settings.use_cache,
            ),
        ))
        return job

    def apply(self, message: WorkerResponse) -> JobEvent | None:
        event = self.controller.handle(message)
        if event is not None and event.type in (EventType.PARTIAL, EventType.DONE):
            self.store.replace(event.segments)
        return event

    def pump(self, timeout: float = 0.0) -> list[JobEvent]:
        """Apply every queued worker message; wait up to ``timeout`` for the first.

        While another thread holds the store lock (an export in progress)
        nothing is applied and messages stay queued for the next pump.
        """
        events: list[JobEvent] = []
        if not self.store.lock.acquire(blocking=False):
            logger.debug("Session %s store busy, leaving worker messages queued", self.session_id)
            return events
        try:
            block = timeout > 0
            while True:
                try:
                    message = self.worker.outbox.get(block, timeout if block else None)
                except queue.Empty:
                    return events
                block = False
                event = self.apply(message)
                if event is not None:
                    events.append(event)
        finally:
            self.store.lock.release()

    def wait(self, timeout: float = 60.0) -> Job | None:
        """Pump until the active job leaves the running state or time runs out."""
        deadline = time.monotonic() + timeout
        while True:
            job = self.controller.active
            if job is None or job.state is not JobState.RUNNING:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return job
            self.pump(timeout=min(remaining, 0.1))

    def group(self, mode: GroupMode | str, value: float) -> list[bool]:
        return apply_grouping(self.store, mode, value)

    def export(self, encoder: Encoder | None = None) -> bytes:
        encoder = encoder or get_encoder(self.settings)
        with self.store.lock:
            if self.audio is None:
                raise NothingToExportError("No audio loaded")
            return build_archive(
                self.store.groups(),
                self.audio,
                encoder,
                title=f"Transcript clips {self.session_id}",
            )

    def state(self) -> SessionState:
        job = self.controller.active
        segments = self.store.snapshot
        return SessionState(
            session_id=self.session_id,
            duration=self.audio.duration if self.audio else 0.0,
            job=None if job is None else JobView(
                id=job.id,
                state=job.state.value,
                processed=job.processed_chunks,
                total=job.total_chunks,
                error=job.error,
            ),
            segments=[
                SegmentView(
                    id=s.id,
                    start=s.start,
                    end=s.end,
                    text=s.text,
                    selected=s.selected,
                    link_next=s.link_next,
                )
                for s in segments
            ],
            group_count=len(self.store.groups()),
        )


class SessionManager:
    def __init__(
        self,
        worker_factory: Callable[[], WorkerClient],
        max_sessions: int = 10,
        settings: StudioSettings | None = None,
    ) -> None:
        self._max = max_sessions
        self._worker_factory = worker_factory
        self._settings = settings
        self._sessions: dict[str, StudioSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session_id: str | None = None) -> StudioSession:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise SessionLimitError(f"Max sessions ({self._max}) reached")
            session_id = session_id or uuid.uuid4().hex
            if session_id in self._sessions:
                raise RuntimeError(f"Session {session_id} already exists")
            worker = self._worker_factory()
            worker.start()
            session = StudioSession(session_id, worker, self._settings)
            self._sessions[session_id] = session
            logger.info("Session created: %s (%d active)", session_id, len(self._sessions))
            return session

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            logger.info("Session removed: %s (%d active)", session_id, len(self._sessions))
        if session is not None:
            await asyncio.to_thread(session.worker.stop, 5.0)

    def get(self, session_id: str) -> StudioSession | None:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
