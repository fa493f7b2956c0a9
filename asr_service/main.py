from __future__ import annotations

import asyncio
import logging
import queue

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from asr_service.engine import EngineCache
from asr_service.models import EngineConfig
from asr_service.worker import TranscriptionWorker
from common.config import ASRSettings
from common.schemas import ErrorMessage, TranscribeMessage

logger = logging.getLogger(__name__)

settings = ASRSettings()
engines = EngineCache()
app = FastAPI(title="ASR Service")

RELAY_POLL_S = 0.1


@app.on_event("startup")
async def startup():
    engines.ensure(EngineConfig(
        model_size=settings.model_size,
        device=settings.device,
        compute_type=settings.compute_type,
    ))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.websocket("/transcribe")
async def transcribe_endpoint(ws: WebSocket):
    await ws.accept()
    worker = TranscriptionWorker(settings, engines=engines)
    worker.start()
    relay_task = asyncio.create_task(_relay_worker_to_client(worker, ws))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                message = TranscribeMessage.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("Rejected transcribe message: %s", exc)
                await ws.send_text(ErrorMessage(job_id=-1, message="Invalid transcribe message").to_wire())
                continue

            # audio follows as one binary frame
            audio = await ws.receive_bytes()
            payload = message.payload.model_copy(update={"audio": audio})
            logger.info("Job %d received: %d bytes at %d Hz", message.job_id, len(audio), payload.sample_rate)
            worker.submit(message.model_copy(update={"payload": payload}))

    except WebSocketDisconnect:
        logger.info("ASR client disconnected")
    except Exception:
        logger.exception("ASR websocket error")
    finally:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        await asyncio.to_thread(worker.stop, 5.0)


async def _relay_worker_to_client(worker: TranscriptionWorker, ws: WebSocket):
    """Forward worker responses to the client in the order they were produced."""
    while True:
        try:
            response = await asyncio.to_thread(worker.outbox.get, True, RELAY_POLL_S)
        except queue.Empty:
            continue
        await ws.send_text(response.to_wire())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
