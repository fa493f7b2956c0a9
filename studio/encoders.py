from __future__ import annotations

import io
import logging
import subprocess
import wave
from typing import Protocol, Sequence

import numpy as np

from common.config import StudioSettings
from studio.errors import ExportError

logger = logging.getLogger(__name__)

# name -> (ffmpeg muxer, codec, file extension)
FFMPEG_FORMATS = {
    "mp3": ("mp3", "libmp3lame", "mp3"),
    "ogg": ("ogg", "libvorbis", "ogg"),
    "flac": ("flac", "flac", "flac"),
}


class Encoder(Protocol):
    extension: str

    def encode(self, channels: Sequence[np.ndarray], sample_rate: int) -> bytes:
        ...


def interleave(channels: Sequence[np.ndarray]) -> np.ndarray:
    """``(n_channels, n)`` planar audio to ``(n, n_channels)`` frames."""
    if not len(channels):
        raise ExportError("No channels to encode")
    length = min(len(c) for c in channels)
    return np.stack([np.asarray(c[:length], dtype=np.float32) for c in channels], axis=1)


class FfmpegEncoder:
    """Compresses float PCM by piping it through ffmpeg."""

    def __init__(self, fmt: str = "mp3", bitrate: str = "128k", ffmpeg_bin: str = "ffmpeg"):
        if fmt not in FFMPEG_FORMATS:
            raise ValueError(f"Unsupported format: {fmt}")
        self.muxer, self.codec, self.extension = FFMPEG_FORMATS[fmt]
        self.bitrate = bitrate
        self.ffmpeg_bin = ffmpeg_bin

    def encode(self, channels: Sequence[np.ndarray], sample_rate: int) -> bytes:
        frames = interleave(channels)
        cmd = [
            self.ffmpeg_bin,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "f32le",
            "-ar", str(sample_rate),
            "-ac", str(frames.shape[1]),
            "-i", "pipe:0",
            "-c:a", self.codec,
        ]
        if self.codec != "flac":
            cmd += ["-b:a", self.bitrate]
        cmd += ["-f", self.muxer, "pipe:1"]

        try:
            result = subprocess.run(
                cmd,
                input=frames.astype("<f4").tobytes(),
                capture_output=True,
                check=True,
            )
        except FileNotFoundError as exc:
            raise ExportError(f"{self.ffmpeg_bin} not found") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise ExportError(f"ffmpeg failed: {detail or exc.returncode}") from exc
        return result.stdout


class WavEncoder:
    """16-bit PCM WAV, no external tools needed."""

    extension = "wav"

    def encode(self, channels: Sequence[np.ndarray], sample_rate: int) -> bytes:
        frames = interleave(channels)
        pcm = (np.clip(frames, -1.0, 1.0) * 32767).astype("<i2")
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(frames.shape[1])
            wf.setsampwidth(2)
            wf.setframerate(sample_rate)
            wf.writeframes(pcm.tobytes())
        return buf.getvalue()


def get_encoder(settings: StudioSettings | None = None) -> Encoder:
    settings = settings or StudioSettings()
    if settings.encoder == "wav":
        return WavEncoder()
    return FfmpegEncoder(settings.encoder, bitrate=settings.bitrate, ffmpeg_bin=settings.ffmpeg_bin)
