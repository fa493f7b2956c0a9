"""Job identity and cancellation-by-supersession for transcription jobs.

Submitting a job supersedes whichever job was running. The worker keeps
computing the superseded job, but every message it sends for it from
then on is dropped here, so the caller never observes it.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from common.schemas import (
    DoneMessage,
    ErrorMessage,
    PartialMessage,
    ProgressMessage,
    SegmentPayload,
    WorkerResponse,
)

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    RUNNING = "running"
    SUPERSEDED = "superseded"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: int
    state: JobState = JobState.RUNNING
    processed_chunks: int = 0
    total_chunks: int = 1
    error: Optional[str] = None


class EventType(str, enum.Enum):
    PROGRESS = "progress"
    PARTIAL = "partial"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class JobEvent:
    type: EventType
    job_id: int
    processed: int = 0
    total: int = 0
    segments: list[SegmentPayload] = field(default_factory=list)
    message: Optional[str] = None


class JobController:
    """Single-threaded state machine fed by worker messages."""

    def __init__(self) -> None:
        self._jobs: dict[int, Job] = {}
        self._current_id = 0

    @property
    def current_id(self) -> int:
        return self._current_id

    @property
    def active(self) -> Job | None:
        return self._jobs.get(self._current_id)

    def get(self, job_id: int) -> Job | None:
        return self._jobs.get(job_id)

    def submit(self) -> Job:
        previous = self.active
        if previous is not None and previous.state is JobState.RUNNING:
            previous.state = JobState.SUPERSEDED
            logger.info("Job %d superseded", previous.id)
        self._current_id += 1
        job = Job(id=self._current_id)
        self._jobs[job.id] = job
        logger.info("Job %d submitted", job.id)
        return job

    def handle(self, message: WorkerResponse) -> JobEvent | None:
        job = self._jobs.get(message.job_id)
        if job is None or job.state is not JobState.RUNNING:
            logger.debug("Dropped %s for inactive job %d", message.type.value, message.job_id)
            return None

        if isinstance(message, ProgressMessage):
            job.processed_chunks = message.processed
            job.total_chunks = message.total
            return JobEvent(EventType.PROGRESS, job.id, message.processed, message.total)

        if isinstance(message, PartialMessage):
            job.processed_chunks = message.processed
            job.total_chunks = message.total
            return JobEvent(
                EventType.PARTIAL,
                job.id,
                message.processed,
                message.total,
                segments=list(message.segments),
            )

        if isinstance(message, DoneMessage):
            job.state = JobState.COMPLETED
            job.total_chunks = max(job.total_chunks, job.processed_chunks)
            logger.info("Job %d completed with %d segments", job.id, len(message.segments))
            return JobEvent(
                EventType.DONE,
                job.id,
                job.processed_chunks,
                job.total_chunks,
                segments=list(message.segments),
            )

        if isinstance(message, ErrorMessage):
            job.state = JobState.FAILED
            job.error = message.message
            logger.warning("Job %d failed: %s", job.id, message.message)
            return JobEvent(
                EventType.ERROR,
                job.id,
                job.processed_chunks,
                job.total_chunks,
                message=message.message,
            )

        raise TypeError(f"Unknown worker message: {message!r}")
