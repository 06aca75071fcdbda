"""ffmpeg-backed normalization of uploaded segments and stream-copy appends."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from shiftrec import ffmpeg_io
from shiftrec.config import section
from shiftrec.errors import MergeFailed, TranscodeFailed

LOGGER = logging.getLogger("shiftrec.transcoder")

STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class TranscodeResult:
    path: Path
    source_container: str
    remuxed: bool


class _ProcessFailure(Exception):
    def __init__(self, reason: str, stderr_tail: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.stderr_tail = stderr_tail


def _tail(raw: bytes | None) -> str:
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace").strip()
    return text[-STDERR_TAIL_CHARS:]


def _unlink_quietly(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


class Transcoder:
    """Single capability wrapping every ffmpeg invocation of the pipeline.

    The binary is resolved once at construction. When no binary exists every
    call fails with a pipeline error instead of raising ``FileNotFoundError``.
    """

    def __init__(
        self,
        binary: str | None,
        *,
        codec: str = "aac",
        bitrate_kbps: int = 96,
        sample_rate: int = 48000,
        channels: int = 1,
        container_ext: str = ".m4a",
        timeout_sec: float = 120.0,
    ) -> None:
        self.binary = binary
        self.codec = codec
        self.bitrate_kbps = int(bitrate_kbps)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.container_ext = container_ext
        self.timeout_sec = float(timeout_sec)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None = None) -> "Transcoder":
        cfg = dict(cfg) if cfg is not None else section("transcode")
        binary = ffmpeg_io.resolve_ffmpeg_binary(cfg.get("ffmpeg_bin"))
        if binary is None:
            LOGGER.warning("ffmpeg not found; segments will be stored as raw fallbacks")
        else:
            LOGGER.info("Using ffmpeg at %s", binary)
        return cls(
            binary,
            codec=str(cfg.get("codec", "aac")),
            bitrate_kbps=int(cfg.get("bitrate_kbps", 96)),
            sample_rate=int(cfg.get("sample_rate", 48000)),
            channels=int(cfg.get("channels", 1)),
            container_ext=str(cfg.get("container_ext", ".m4a")),
            timeout_sec=float(cfg.get("timeout_sec", 120.0)),
        )

    @property
    def available(self) -> bool:
        return self.binary is not None

    async def normalize(self, source: Path, target: Path) -> TranscodeResult:
        """Encode ``source`` into the canonical codec at ``target``.

        Raises ``TranscodeFailed``; ``target`` never survives a failure.
        """

        if self.binary is None:
            raise TranscodeFailed(detail="ffmpeg binary unavailable")
        try:
            container = await asyncio.to_thread(ffmpeg_io.sniff_file, source)
        except OSError as exc:
            raise TranscodeFailed(detail=f"unreadable segment: {exc}") from exc

        encode_input = source
        remuxed = False
        remux_path: Path | None = None
        if ffmpeg_io.requires_normalization(container):
            remux_path = target.with_name(f"{target.stem}-{secrets.token_hex(3)}.mka")
            try:
                await self._run(
                    ffmpeg_io.remux_args(self.binary, source, remux_path), remux_path
                )
                encode_input = remux_path
                remuxed = True
            except _ProcessFailure as exc:
                LOGGER.info(
                    "Remux of %s (%s) failed, encoding original: %s",
                    source.name,
                    container,
                    exc.reason,
                )

        try:
            await self._run(
                ffmpeg_io.encode_args(
                    self.binary,
                    encode_input,
                    target,
                    codec=self.codec,
                    bitrate_kbps=self.bitrate_kbps,
                    sample_rate=self.sample_rate,
                    channels=self.channels,
                ),
                target,
            )
        except _ProcessFailure as exc:
            LOGGER.warning(
                "Transcode of %s failed: %s %s", source.name, exc.reason, exc.stderr_tail
            )
            raise TranscodeFailed(detail=exc.stderr_tail or exc.reason) from None
        finally:
            if remux_path is not None:
                _unlink_quietly(remux_path)

        if not target.exists() or target.stat().st_size == 0:
            _unlink_quietly(target)
            raise TranscodeFailed(detail="encoder produced no output")
        return TranscodeResult(path=target, source_container=container, remuxed=remuxed)

    async def concat(self, inputs: Sequence[Path], target: Path) -> Path:
        """Stream-copy ``inputs`` in order into ``target``; raises ``MergeFailed``."""

        if self.binary is None:
            raise MergeFailed(detail="ffmpeg binary unavailable")
        list_file = target.with_name(f"{target.name}.txt")
        try:
            await asyncio.to_thread(ffmpeg_io.write_concat_list, list_file, inputs)
            await self._run(ffmpeg_io.concat_args(self.binary, list_file, target), target)
        except OSError as exc:
            _unlink_quietly(target)
            raise MergeFailed(detail=str(exc)) from exc
        except _ProcessFailure as exc:
            LOGGER.warning("Concat into %s failed: %s %s", target.name, exc.reason, exc.stderr_tail)
            raise MergeFailed(detail=exc.stderr_tail or exc.reason) from None
        finally:
            _unlink_quietly(list_file)
        if not target.exists() or target.stat().st_size == 0:
            _unlink_quietly(target)
            raise MergeFailed(detail="concat produced no output")
        return target

    async def _run(self, cmd: list[str], output: Path) -> None:
        LOGGER.debug("Running %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise _ProcessFailure(f"spawn failed: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            await _kill_and_reap(proc)
            _unlink_quietly(output)
            raise _ProcessFailure(f"timed out after {self.timeout_sec:.1f}s") from None
        except asyncio.CancelledError:
            await _kill_and_reap(proc)
            _unlink_quietly(output)
            raise

        if proc.returncode != 0:
            _unlink_quietly(output)
            raise _ProcessFailure(f"exit status {proc.returncode}", _tail(stderr))


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


__all__ = ["TranscodeResult", "Transcoder"]
