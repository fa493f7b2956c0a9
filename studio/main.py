from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, HTTPException, Request, Response

from asr_service.engine import EngineCache
from asr_service.worker import TranscriptionWorker
from common.config import ASRSettings, StudioSettings
from common.schemas import GroupingRequest, SegmentUpdate, SegmentView, SessionState
from studio.errors import DecodeError, ExportError, NothingToExportError, SessionLimitError
from studio.grouping import GroupMode
from studio.remote import RemoteWorker
from studio.segments import Segment
from studio.session import SessionManager, StudioSession, WorkerClient

logger = logging.getLogger(__name__)

settings = StudioSettings()
engines = EngineCache()
app = FastAPI(title="Clipscribe Studio")


def _make_worker() -> WorkerClient:
    if settings.use_remote_worker:
        return RemoteWorker(settings.asr_ws_url)
    return TranscriptionWorker(ASRSettings(), engines=engines)


manager = SessionManager(_make_worker, max_sessions=settings.max_sessions, settings=settings)


def _get_session(session_id: str) -> StudioSession:
    session = manager.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")
    return session


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.post("/sessions", response_model=SessionState, status_code=201)
async def create_session():
    try:
        session = await manager.create()
    except SessionLimitError as exc:
        raise HTTPException(status_code=429, detail=str(exc))
    return session.state()


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str):
    _get_session(session_id)
    await manager.remove(session_id)
    return Response(status_code=204)


@app.get("/sessions/{session_id}", response_model=SessionState)
async def get_session(session_id: str):
    session = _get_session(session_id)
    await asyncio.to_thread(session.pump)
    return session.state()


@app.post("/sessions/{session_id}/audio", response_model=SessionState, status_code=202)
async def upload_audio(session_id: str, request: Request):
    session = _get_session(session_id)
    data = await request.body()
    try:
        job = await asyncio.to_thread(session.load_audio, data)
    except DecodeError as exc:
        logger.warning("Rejected audio for %s: %s", session_id, exc)
        raise HTTPException(status_code=400, detail=f"Unreadable audio: {exc}")
    logger.info("Session %s submitted job %d", session_id, job.id)
    return session.state()


@app.post("/sessions/{session_id}/grouping", response_model=SessionState)
async def group_segments(session_id: str, req: GroupingRequest):
    session = _get_session(session_id)
    mode_name = req.mode or settings.default_group_mode
    value = settings.default_group_value if req.value is None else req.value
    try:
        mode = GroupMode(mode_name)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown grouping mode {mode_name!r}")
    await asyncio.to_thread(session.pump)
    await asyncio.to_thread(session.group, mode, value)
    return session.state()


def _edit_segment(session: StudioSession, segment_id: int, req: SegmentUpdate) -> Segment:
    store = session.store
    with store.lock:
        if req.selected is not None:
            store.set_selected(segment_id, req.selected)
        if req.link_next is not None:
            store.set_link(segment_id, req.link_next)
        return store.get(segment_id)


@app.patch("/sessions/{session_id}/segments/{segment_id}", response_model=SegmentView)
async def update_segment(session_id: str, segment_id: int, req: SegmentUpdate):
    session = _get_session(session_id)
    await asyncio.to_thread(session.pump)
    try:
        seg = await asyncio.to_thread(_edit_segment, session, segment_id, req)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown segment {segment_id}")
    return SegmentView(
        id=seg.id,
        start=seg.start,
        end=seg.end,
        text=seg.text,
        selected=seg.selected,
        link_next=seg.link_next,
    )


@app.post("/sessions/{session_id}/export")
async def export_session(session_id: str):
    session = _get_session(session_id)
    await asyncio.to_thread(session.pump)
    try:
        archive = await asyncio.to_thread(session.export)
    except NothingToExportError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ExportError as exc:
        logger.warning("Export failed for %s: %s", session_id, exc)
        raise HTTPException(status_code=502, detail=f"Export failed: {exc}")
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="clips-{session_id}.zip"'},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
