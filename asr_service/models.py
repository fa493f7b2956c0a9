"""Internal models for ASR service processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RecognitionConfig:
    target_sample_rate: int
    chunk_length_s: float
    stride_length_s: float
    return_timestamps: bool = True


@dataclass(frozen=True)
class EngineConfig:
    """Everything that forces an engine reload when it changes."""

    model_size: str = "tiny"
    device: str = "auto"
    compute_type: str = "auto"
    runtime_path: str = ""
    local_model_path: str = ""
    allow_local: bool = True
    allow_remote: bool = True
    use_cache: bool = True


@dataclass
class RawAlignmentChunk:
    # (chunk_samples, left_stride_samples, right_stride_samples)
    stride: tuple[int, int, int]
    token_ids: list[int] = field(default_factory=list)
    # (start, end) in timestamp units relative to the window start; end may be None
    token_timestamps: list[tuple[int, Optional[int]]] = field(default_factory=list)
    is_last: bool = False

    def __post_init__(self) -> None:
        if len(self.token_ids) != len(self.token_timestamps):
            raise ValueError(
                f"token_ids ({len(self.token_ids)}) and token_timestamps "
                f"({len(self.token_timestamps)}) must align"
            )
