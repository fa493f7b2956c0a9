"""Group-wise audio slicing and archive assembly.

The archive is built entirely in memory and only returned once every
group encoded cleanly, so a failed export never leaves a partial file
behind.
"""

from __future__ import annotations

import io
import logging
import math
import os
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np

from studio.audio import DecodedAudio
from studio.encoders import Encoder
from studio.errors import ExportError, NothingToExportError
from studio.player import render_player
from studio.segments import Group

logger = logging.getLogger(__name__)

AUDIO_DIR = "audio"
TRANSCRIPT_NAME = "transcription.txt"
PLAYER_NAME = "player.html"


@dataclass(frozen=True)
class ExportClip:
    ordinal: int
    start: float
    end: float
    text: str
    path: str


def clip_path(ordinal: int, start: float, end: float, extension: str) -> str:
    return f"{AUDIO_DIR}/{ordinal}-{start:.2f}-{end:.2f}.{extension}"


def plan_clips(groups: Sequence[Group], extension: str) -> list[ExportClip]:
    return [
        ExportClip(
            ordinal=n,
            start=group.start,
            end=group.end,
            text=group.text,
            path=clip_path(n, group.start, group.end, extension),
        )
        for n, group in enumerate(groups, start=1)
    ]


def slice_channels(audio: DecodedAudio, start: float, end: float) -> list[np.ndarray]:
    first = max(0, math.floor(start * audio.sample_rate))
    last = min(audio.sample_count, math.floor(end * audio.sample_rate))
    last = max(first, last)
    return [channel[first:last] for channel in audio.channels]


def render_transcript(clips: Sequence[ExportClip]) -> str:
    return "".join(f"{clip.path}\t{clip.text}\n" for clip in clips)


def build_archive(
    groups: Sequence[Group],
    audio: DecodedAudio,
    encoder: Encoder,
    title: str = "Transcript clips",
) -> bytes:
    """Encode every group and zip clips, transcript and player together."""
    if not groups:
        raise NothingToExportError("Nothing to export")

    clips = plan_clips(groups, encoder.extension)
    buf = io.BytesIO()
    try:
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for clip in clips:
                encoded = encoder.encode(slice_channels(audio, clip.start, clip.end), audio.sample_rate)
                # compressed audio does not deflate further
                archive.writestr(clip.path, encoded, compress_type=zipfile.ZIP_STORED)
                logger.debug("Encoded %s (%d bytes)", clip.path, len(encoded))
            archive.writestr(TRANSCRIPT_NAME, render_transcript(clips))
            archive.writestr(
                PLAYER_NAME,
                render_player([(clip.path, clip.text) for clip in clips], title=title),
            )
    except ExportError:
        raise
    except Exception as exc:
        raise ExportError(str(exc) or exc.__class__.__name__) from exc

    logger.info("Exported %d clips (%d bytes)", len(clips), buf.tell())
    return buf.getvalue()


def export_to_file(
    path: str | Path,
    groups: Sequence[Group],
    audio: DecodedAudio,
    encoder: Encoder,
    title: str = "Transcript clips",
) -> Path:
    """Write the archive next to ``path`` and move it into place when done."""
    path = Path(path)
    data = build_archive(groups, audio, encoder, title=title)
    fd, tmp_name = tempfile.mkstemp(prefix=".export_", suffix=".zip", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise ExportError(f"Could not write {path}: {exc}") from exc
    return path
