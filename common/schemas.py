from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


# --- Worker messages: host -> transcription worker ---

class ClientMessageType(str, Enum):
    transcribe = "transcribe"


class TranscribePayload(WireModel):
    # float32 little-endian mono PCM, sent as a separate binary frame
    audio: bytes = Field(default=b"", exclude=True)
    sample_rate: int
    chunk_length: float = 30.0
    stride_length: float = 5.0
    return_timestamps: bool = True
    engine_runtime_path: str = ""
    local_model_path: str = ""
    allow_local: bool = True
    allow_remote: bool = True
    use_cache: bool = True


class TranscribeMessage(WireModel):
    type: Literal[ClientMessageType.transcribe] = ClientMessageType.transcribe
    job_id: int
    payload: TranscribePayload


# --- Worker messages: transcription worker -> host ---

class SegmentPayload(WireModel):
    timestamp: tuple[float, Optional[float]]
    text: str


class ServerMessageType(str, Enum):
    progress = "progress"
    partial = "partial"
    done = "done"
    error = "error"


class ProgressMessage(WireModel):
    type: Literal[ServerMessageType.progress] = ServerMessageType.progress
    job_id: int
    processed: int
    total: int


class PartialMessage(WireModel):
    type: Literal[ServerMessageType.partial] = ServerMessageType.partial
    job_id: int
    processed: int
    total: int
    segments: list[SegmentPayload]


class DoneMessage(WireModel):
    type: Literal[ServerMessageType.done] = ServerMessageType.done
    job_id: int
    segments: list[SegmentPayload]


class ErrorMessage(WireModel):
    type: Literal[ServerMessageType.error] = ServerMessageType.error
    job_id: int
    message: str


WorkerResponse = Annotated[
    Union[ProgressMessage, PartialMessage, DoneMessage, ErrorMessage],
    Field(discriminator="type"),
]

_response_adapter: TypeAdapter[WorkerResponse] = TypeAdapter(WorkerResponse)


def parse_response(raw: str | bytes) -> WorkerResponse:
    return _response_adapter.validate_json(raw)


# --- Studio HTTP request / response ---

class GroupingRequest(BaseModel):
    mode: Optional[str] = None
    value: Optional[float] = None


class SegmentUpdate(BaseModel):
    selected: Optional[bool] = None
    link_next: Optional[bool] = None


class SegmentView(BaseModel):
    id: int
    start: float
    end: float
    text: str
    selected: bool
    link_next: bool


class JobView(BaseModel):
    id: int
    state: str
    processed: int
    total: int
    error: Optional[str] = None


class SessionState(BaseModel):
    session_id: str
    duration: float = 0.0
    job: Optional[JobView] = None
    segments: list[SegmentView] = []
    group_count: int = 0
