"""Shared helpers for locating ffmpeg and building its command lines."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Sequence

SNIFF_BYTES = 16

CONTAINER_MATROSKA = "matroska"
CONTAINER_MP4 = "mp4"
CONTAINER_OGG = "ogg"
CONTAINER_WAV = "wav"
CONTAINER_UNKNOWN = "unknown"

_NORMALIZE_CONTAINERS = {CONTAINER_MATROSKA, CONTAINER_MP4}

_BASE_ARGS = ["-hide_banner", "-loglevel", "error", "-nostdin", "-y"]


def resolve_ffmpeg_binary(configured: str | None = None) -> str | None:
    """Return an executable ffmpeg path or ``None`` when nothing usable exists.

    An explicit path (``FFMPEG_BIN`` or ``transcode.ffmpeg_bin``) wins; a bare
    command name is looked up on ``PATH``.
    """

    candidate = (configured or "").strip()
    if candidate:
        if os.sep in candidate:
            path = Path(candidate).expanduser()
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
            return None
        return shutil.which(candidate)
    return shutil.which("ffmpeg")


def sniff_container(head: bytes) -> str:
    """Classify a file from its leading bytes."""

    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return CONTAINER_MATROSKA
    if len(head) >= 8 and head[4:8] == b"ftyp":
        return CONTAINER_MP4
    if head.startswith(b"OggS"):
        return CONTAINER_OGG
    if head.startswith(b"RIFF") and head[8:12] == b"WAVE":
        return CONTAINER_WAV
    return CONTAINER_UNKNOWN


def sniff_file(path: Path) -> str:
    with path.open("rb") as handle:
        return sniff_container(handle.read(SNIFF_BYTES))


def requires_normalization(container: str) -> bool:
    """WebM/Matroska and MP4 uploads get a timestamp-regenerating remux first."""

    return container in _NORMALIZE_CONTAINERS


def remux_args(binary: str, source: Path, target: Path) -> list[str]:
    return [
        binary,
        *_BASE_ARGS,
        "-fflags",
        "+genpts",
        "-i",
        str(source),
        "-vn",
        "-map",
        "0:a:0",
        "-c",
        "copy",
        "-f",
        "matroska",
        str(target),
    ]


def encode_args(
    binary: str,
    source: Path,
    target: Path,
    *,
    codec: str,
    bitrate_kbps: int,
    sample_rate: int,
    channels: int,
) -> list[str]:
    return [
        binary,
        *_BASE_ARGS,
        "-i",
        str(source),
        "-vn",
        "-ac",
        str(channels),
        "-ar",
        str(sample_rate),
        "-c:a",
        codec,
        "-b:a",
        f"{bitrate_kbps}k",
        str(target),
    ]


def concat_args(binary: str, list_file: Path, target: Path) -> list[str]:
    return [
        binary,
        *_BASE_ARGS,
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_file),
        "-c",
        "copy",
        str(target),
    ]


def _quote_concat_path(path: Path) -> str:
    text = str(path.resolve())
    return "'" + text.replace("'", "'\\''") + "'"


def write_concat_list(list_file: Path, inputs: Sequence[Path]) -> Path:
    """Write an ffmpeg concat-demuxer list naming ``inputs`` in order."""

    lines = [f"file {_quote_concat_path(path)}\n" for path in inputs]
    with list_file.open("w", encoding="utf-8") as handle:
        handle.writelines(lines)
    return list_file


def capture_args(
    binary: str,
    *,
    capture_format: str,
    device: str,
    encoder: str,
    bitrate_kbps: int,
    output_format: str,
    target: Path,
) -> list[str]:
    """Arguments for one recorder capture segment finalized via ``q`` on stdin."""

    return [
        binary,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-f",
        capture_format,
        "-i",
        device,
        "-vn",
        "-c:a",
        encoder,
        "-b:a",
        f"{bitrate_kbps}k",
        "-f",
        output_format,
        str(target),
    ]


__all__ = [
    "CONTAINER_MATROSKA",
    "CONTAINER_MP4",
    "CONTAINER_OGG",
    "CONTAINER_UNKNOWN",
    "CONTAINER_WAV",
    "capture_args",
    "concat_args",
    "encode_args",
    "remux_args",
    "requires_normalization",
    "resolve_ffmpeg_binary",
    "sniff_container",
    "sniff_file",
    "write_concat_list",
]
