from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass

import numpy as np

from asr_service.audio import mixdown
from studio.errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class DecodedAudio:
    """Raw decoded audio, shape ``(n_channels, n_samples)``. Read-only."""

    channels: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        self.channels.setflags(write=False)

    @property
    def channel_count(self) -> int:
        return self.channels.shape[0]

    @property
    def sample_count(self) -> int:
        return self.channels.shape[1]

    @property
    def duration(self) -> float:
        return self.sample_count / self.sample_rate if self.sample_rate else 0.0

    def mono(self) -> np.ndarray:
        return mixdown(self.channels)


def probe_audio(data: bytes, ffprobe_bin: str = "ffprobe") -> tuple[int, int]:
    """Return ``(channels, sample_rate)`` of the first audio stream."""
    cmd = [
        ffprobe_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-select_streams", "a:0",
        "-show_entries", "stream=channels,sample_rate",
        "-of", "json",
        "pipe:0",
    ]
    try:
        result = subprocess.run(cmd, input=data, capture_output=True, check=True)
        streams = json.loads(result.stdout).get("streams") or []
    except FileNotFoundError as exc:
        raise DecodeError(f"{ffprobe_bin} not found") from exc
    except subprocess.CalledProcessError as exc:
        raise DecodeError(_stderr_message(exc) or "Unreadable audio") from exc
    except json.JSONDecodeError as exc:
        raise DecodeError("Unreadable probe output") from exc

    if not streams:
        raise DecodeError("No audio stream found")
    return int(streams[0]["channels"]), int(streams[0]["sample_rate"])


def decode_audio(
    data: bytes,
    ffmpeg_bin: str = "ffmpeg",
    ffprobe_bin: str = "ffprobe",
) -> DecodedAudio:
    """Decode any ffmpeg-readable file into float32 channels at its native rate."""
    if not data:
        raise DecodeError("Empty audio file")
    channels, sample_rate = probe_audio(data, ffprobe_bin)

    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-i", "pipe:0",
        "-f", "f32le",
        "-acodec", "pcm_f32le",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "pipe:1",
    ]
    try:
        result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    except FileNotFoundError as exc:
        raise DecodeError(f"{ffmpeg_bin} not found") from exc
    except subprocess.CalledProcessError as exc:
        raise DecodeError(_stderr_message(exc) or "Unsupported audio") from exc

    interleaved = np.frombuffer(result.stdout, dtype="<f4")
    frames = len(interleaved) // channels
    planar = interleaved[: frames * channels].reshape(frames, channels).T.astype(np.float32)
    logger.info("Decoded audio: %dch, %dHz, %.2fs", channels, sample_rate, frames / sample_rate)
    return DecodedAudio(channels=planar, sample_rate=sample_rate)


def _stderr_message(exc: subprocess.CalledProcessError) -> str:
    stderr = exc.stderr or b""
    return stderr.decode("utf-8", errors="replace").strip()
