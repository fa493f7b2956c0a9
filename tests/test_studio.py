import asyncio
import io
import threading
import time
import zipfile

import httpx
import pytest
from fastapi.testclient import TestClient

import studio.main
import studio.session
from asr_service.engine import EngineCache
from asr_service.worker import TranscriptionWorker
from common.config import ASRSettings, StudioSettings
from common.schemas import DoneMessage, ErrorMessage, PartialMessage, SegmentPayload
from conftest import FakeEncoder, FakeEngine, FakeWorker
from studio.audio import decode_audio
from studio.controller import EventType, JobState
from studio.errors import DecodeError, ExportError, SessionLimitError
from studio.session import SessionManager, StudioSession


def segments(*texts):
    return [SegmentPayload(timestamp=(float(i), float(i) + 1.0), text=t) for i, t in enumerate(texts)]


class TestDecodeAudio:
    def test_empty_input(self):
        with pytest.raises(DecodeError, match="Empty"):
            decode_audio(b"")

    def test_missing_probe_binary(self):
        with pytest.raises(DecodeError, match="not found"):
            decode_audio(b"RIFF", ffprobe_bin="definitely-not-ffprobe")


class TestStudioSession:
    @pytest.fixture
    def session(self):
        return StudioSession("s1", FakeWorker(), StudioSettings(chunk_length_s=20, stride_length_s=4))

    def test_submit_sends_mono_payload(self, session, stereo_audio):
        job = session.submit(stereo_audio)
        message = session.worker.submitted[0]
        assert message.job_id == job.id == 1
        assert message.payload.sample_rate == 16000
        assert message.payload.chunk_length == 20
        assert len(message.payload.audio) == stereo_audio.sample_count * 4

    def test_superseded_job_never_reaches_store(self, session, stereo_audio):
        session.submit(stereo_audio)
        session.submit(stereo_audio)
        session.worker.outbox.put(PartialMessage(job_id=1, processed=1, total=1, segments=segments("stale")))
        session.worker.outbox.put(PartialMessage(job_id=2, processed=1, total=2, segments=segments("fresh")))
        session.worker.outbox.put(DoneMessage(job_id=1, segments=segments("stale", "late")))

        events = session.pump()
        assert [(e.type, e.job_id) for e in events] == [(EventType.PARTIAL, 2)]
        assert [s.text for s in session.store] == ["fresh"]

    def test_done_replaces_segments_and_resets_grouping(self, session, stereo_audio):
        session.submit(stereo_audio)
        session.worker.outbox.put(PartialMessage(job_id=1, processed=1, total=2, segments=segments("a", "b")))
        session.pump()
        session.group("count", 2)
        session.worker.outbox.put(DoneMessage(job_id=1, segments=segments("a", "b", "c")))
        session.pump()
        assert [s.link_next for s in session.store] == [False, False, False]
        assert session.controller.active.state is JobState.COMPLETED

    def test_error_keeps_prior_segments(self, session, stereo_audio):
        session.submit(stereo_audio)
        session.worker.outbox.put(PartialMessage(job_id=1, processed=1, total=2, segments=segments("kept")))
        session.worker.outbox.put(ErrorMessage(job_id=1, message="engine crashed"))
        events = session.pump()
        assert events[-1].type is EventType.ERROR
        assert [s.text for s in session.store] == ["kept"]
        assert session.state().job.error == "engine crashed"

    def test_export_without_audio(self, session):
        with pytest.raises(ExportError):
            session.export(FakeEncoder())

    def test_end_to_end_with_local_worker(self, stereo_audio):
        engine = FakeEngine(script=[[(1, 0, 50), (2, 50, 100), (3, 100, 200)]])
        worker = TranscriptionWorker(ASRSettings(), engines=EngineCache(lambda config: engine))
        worker.start()
        try:
            session = StudioSession("local", worker, StudioSettings())
            session.submit(stereo_audio)
            job = session.wait(timeout=10)
        finally:
            worker.stop(timeout=5)

        assert job.state is JobState.COMPLETED
        assert [(s.start, s.end, s.text) for s in session.store] == [
            (0.0, 1.0, "w1"),
            (1.0, 2.0, "w2"),
            (2.0, 4.0, "w3"),
        ]
        session.group("total", 2)
        archive = zipfile.ZipFile(io.BytesIO(session.export(FakeEncoder())))
        assert archive.read("transcription.txt").decode().splitlines() == [
            "audio/1-0.00-2.00.bin\tw1 w2",
            "audio/2-2.00-4.00.bin\tw3",
        ]

    def test_superseded_local_job_output_is_dropped(self, stereo_audio, gate):
        engine = FakeEngine(script=[[(1, 0, 50)]], gate=gate)
        worker = TranscriptionWorker(ASRSettings(), engines=EngineCache(lambda config: engine))
        worker.start()
        events = []
        try:
            session = StudioSession("local", worker, StudioSettings())
            first = session.submit(stereo_audio)
            session.submit(stereo_audio)
            gate.set()
            deadline = time.monotonic() + 10
            while session.controller.active.state is JobState.RUNNING and time.monotonic() < deadline:
                events += session.pump(timeout=0.1)
        finally:
            worker.stop(timeout=5)

        assert engine.calls == 2
        assert first.state is JobState.SUPERSEDED
        assert session.controller.active.state is JobState.COMPLETED
        assert events
        assert {e.job_id for e in events} == {2}


class TestSessionManager:
    @pytest.fixture
    def manager(self):
        return SessionManager(FakeWorker, max_sessions=2)

    @pytest.mark.asyncio
    async def test_create_and_remove(self, manager):
        session = await manager.create("s1")
        assert session.session_id == "s1"
        assert session.worker.started
        assert manager.active_count == 1
        await manager.remove("s1")
        assert manager.active_count == 0
        assert session.worker.stopped

    @pytest.mark.asyncio
    async def test_max_sessions_enforced(self, manager):
        await manager.create("s1")
        await manager.create("s2")
        with pytest.raises(SessionLimitError, match="Max sessions"):
            await manager.create("s3")

    @pytest.mark.asyncio
    async def test_duplicate_session_id_rejected(self, manager):
        await manager.create("s1")
        with pytest.raises(RuntimeError, match="already exists"):
            await manager.create("s1")

    @pytest.mark.asyncio
    async def test_generated_ids(self, manager):
        first = await manager.create()
        second = await manager.create()
        assert first.session_id != second.session_id


class TestStudioAPI:
    @pytest.fixture
    def client(self, monkeypatch, stereo_audio):
        monkeypatch.setattr(studio.main, "manager", SessionManager(FakeWorker, max_sessions=2))
        monkeypatch.setattr(studio.session, "decode_audio", lambda data, *args: stereo_audio)
        monkeypatch.setattr(studio.session, "get_encoder", lambda settings=None: FakeEncoder())
        return TestClient(studio.main.app)

    def create(self, client):
        resp = client.post("/sessions")
        assert resp.status_code == 201
        return resp.json()["session_id"]

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.json() == {"status": "ok", "active_sessions": 0}

    def test_transcribe_group_edit_export(self, client):
        session_id = self.create(client)
        resp = client.post(f"/sessions/{session_id}/audio", content=b"fake audio")
        assert resp.status_code == 202
        assert resp.json()["job"]["state"] == "running"
        assert resp.json()["duration"] == 5.0

        session = studio.main.manager.get(session_id)
        session.worker.outbox.put(DoneMessage(job_id=1, segments=segments("a", "b", "c", "d")))

        state = client.get(f"/sessions/{session_id}").json()
        assert state["job"]["state"] == "completed"
        assert [s["text"] for s in state["segments"]] == ["a", "b", "c", "d"]
        assert state["group_count"] == 4

        state = client.post(f"/sessions/{session_id}/grouping", json={"mode": "count", "value": 2}).json()
        assert state["group_count"] == 2

        resp = client.patch(f"/sessions/{session_id}/segments/4", json={"selected": False})
        assert resp.status_code == 200
        assert resp.json()["selected"] is False

        resp = client.post(f"/sessions/{session_id}/export")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/zip"
        archive = zipfile.ZipFile(io.BytesIO(resp.content))
        assert archive.read("transcription.txt").decode().splitlines() == [
            "audio/1-0.00-2.00.bin\ta b",
            "audio/2-2.00-3.00.bin\tc",
        ]

    def test_grouping_defaults_from_settings(self, client):
        session_id = self.create(client)
        client.post(f"/sessions/{session_id}/audio", content=b"fake audio")
        studio.main.manager.get(session_id).worker.outbox.put(
            DoneMessage(job_id=1, segments=segments("a", "b", "c"))
        )
        # default is time mode, 30s: three one-second segments fit one group
        state = client.post(f"/sessions/{session_id}/grouping", json={}).json()
        assert state["group_count"] == 1

    def test_unknown_session(self, client):
        assert client.get("/sessions/nope").status_code == 404

    def test_unknown_segment(self, client):
        session_id = self.create(client)
        resp = client.patch(f"/sessions/{session_id}/segments/1", json={"link_next": True})
        assert resp.status_code == 404

    def test_bad_grouping_mode(self, client):
        session_id = self.create(client)
        resp = client.post(f"/sessions/{session_id}/grouping", json={"mode": "speaker", "value": 1})
        assert resp.status_code == 422

    def test_unreadable_audio(self, client, monkeypatch):
        def broken(data, *args):
            raise DecodeError("moov atom not found")

        monkeypatch.setattr(studio.session, "decode_audio", broken)
        session_id = self.create(client)
        resp = client.post(f"/sessions/{session_id}/audio", content=b"junk")
        assert resp.status_code == 400
        assert "moov atom" in resp.json()["detail"]
        assert studio.main.manager.get(session_id).worker.submitted == []

    def test_export_before_audio(self, client):
        session_id = self.create(client)
        assert client.post(f"/sessions/{session_id}/export").status_code == 409

    def test_export_without_segments(self, client):
        session_id = self.create(client)
        client.post(f"/sessions/{session_id}/audio", content=b"fake audio")
        resp = client.post(f"/sessions/{session_id}/export")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Nothing to export"

    def test_session_limit(self, client):
        self.create(client)
        self.create(client)
        assert client.post("/sessions").status_code == 429

    def test_delete_session(self, client):
        session_id = self.create(client)
        assert client.delete(f"/sessions/{session_id}").status_code == 204
        assert client.get(f"/sessions/{session_id}").status_code == 404

    @pytest.mark.asyncio
    async def test_state_stays_responsive_during_slow_export(self, monkeypatch, stereo_audio):
        started = threading.Event()
        release = threading.Event()

        class SlowEncoder(FakeEncoder):
            def encode(self, channels, sample_rate):
                started.set()
                release.wait(5)
                return super().encode(channels, sample_rate)

        monkeypatch.setattr(studio.main, "manager", SessionManager(FakeWorker, max_sessions=1))
        monkeypatch.setattr(studio.session, "decode_audio", lambda data, *args: stereo_audio)
        monkeypatch.setattr(studio.session, "get_encoder", lambda settings=None: SlowEncoder())

        transport = httpx.ASGITransport(app=studio.main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://studio") as ac:
            session_id = (await ac.post("/sessions")).json()["session_id"]
            await ac.post(f"/sessions/{session_id}/audio", content=b"fake audio")
            outbox = studio.main.manager.get(session_id).worker.outbox
            outbox.put(PartialMessage(job_id=1, processed=1, total=2, segments=segments("a", "b")))
            assert len((await ac.get(f"/sessions/{session_id}")).json()["segments"]) == 2

            export = asyncio.create_task(ac.post(f"/sessions/{session_id}/export"))
            assert await asyncio.to_thread(started.wait, 5)
            outbox.put(DoneMessage(job_id=1, segments=segments("a", "b", "c")))
            try:
                resp = await asyncio.wait_for(ac.get(f"/sessions/{session_id}"), timeout=2)
            finally:
                release.set()
            assert resp.status_code == 200
            assert len(resp.json()["segments"]) == 2

            assert (await export).status_code == 200
            state = (await ac.get(f"/sessions/{session_id}")).json()
            assert len(state["segments"]) == 3
            assert state["job"]["state"] == "completed"
