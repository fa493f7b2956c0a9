from __future__ import annotations

import logging
import queue
import threading

from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import ClientConnection, connect

from common.schemas import ErrorMessage, TranscribeMessage, WorkerResponse, parse_response

logger = logging.getLogger(__name__)


class RemoteWorker:
    """Worker client backed by the ASR service's ``/transcribe`` websocket.

    Same surface as the in-process worker: ``submit`` sends a job, and
    responses land in ``outbox`` in arrival order. If the connection
    drops, the last submitted job gets an error so it does not hang.
    """

    def __init__(self, url: str, outbox_size: int = 64, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self.outbox: queue.Queue[WorkerResponse] = queue.Queue(maxsize=outbox_size)
        self._conn: ClientConnection | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_job_id: int | None = None

    def start(self) -> None:
        # connection is opened lazily on the first submit
        pass

    def stop(self, timeout: float | None = None) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def submit(self, message: TranscribeMessage) -> None:
        with self._lock:
            conn = self._ensure_connected()
            self._last_job_id = message.job_id
            conn.send(message.to_wire())
            conn.send(message.payload.audio)
        logger.info("Job %d sent to %s", message.job_id, self.url)

    def _ensure_connected(self) -> ClientConnection:
        if self._conn is None:
            logger.info("Connecting to ASR service at %s", self.url)
            self._conn = connect(self.url, open_timeout=self.open_timeout, max_size=None)
            self._thread = threading.Thread(
                target=self._receive_loop,
                args=(self._conn,),
                name="asr-relay",
                daemon=True,
            )
            self._thread.start()
        return self._conn

    def _receive_loop(self, conn: ClientConnection) -> None:
        try:
            for raw in conn:
                try:
                    response = parse_response(raw)
                except ValidationError:
                    logger.warning("Ignoring malformed ASR message: %.200s", raw)
                    continue
                self.outbox.put(response)
        except ConnectionClosed as exc:
            logger.warning("ASR connection closed: %s", exc)
            self._fail_pending(conn, "ASR connection lost")
            return
        with self._lock:
            closed_by_us = self._conn is not conn
        if not closed_by_us:
            self._fail_pending(conn, "ASR connection closed")

    def _fail_pending(self, conn: ClientConnection, reason: str) -> None:
        with self._lock:
            if self._conn is conn:
                self._conn = None
            job_id = self._last_job_id
        if job_id is not None:
            self.outbox.put(ErrorMessage(job_id=job_id, message=reason))
