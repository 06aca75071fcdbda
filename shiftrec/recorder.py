#!/usr/bin/env python3
"""Rotating microphone capture that uploads each finalized segment.

Every rotation stops the current capture so the file is written with intact
container headers, then starts a fresh one. Finished segments are uploaded in
the background; a failed upload is logged and dropped while capture goes on.
"""

from __future__ import annotations

import abc
import argparse
import asyncio
import contextlib
import logging
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import aiohttp

from shiftrec import ffmpeg_io
from shiftrec.config import reload_cfg, section
from shiftrec.media_types import content_type_for

LOGGER = logging.getLogger("shiftrec.recorder")

UPLOAD_PATH = "/api/audio/upload"
CAPTURE_STARTUP_GRACE_SECONDS = 0.5
FINALIZE_TIMEOUT_SECONDS = 5.0


class RecorderError(Exception):
    pass


class MicrophonePermissionDenied(RecorderError):
    pass


class MicrophoneNotFound(RecorderError):
    pass


class CaptureFailed(RecorderError):
    pass


_PERMISSION_MARKERS = ("permission denied", "operation not permitted", "access denied")
_NOT_FOUND_MARKERS = (
    "no such file or directory",
    "no such device",
    "cannot open audio device",
    "device not found",
    "could not find audio",
)


def classify_capture_error(stderr: str) -> RecorderError:
    text = (stderr or "").strip()
    lowered = text.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return MicrophonePermissionDenied(text or "microphone permission denied")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return MicrophoneNotFound(text or "microphone not found")
    return CaptureFailed(text or "capture failed")


@dataclass(frozen=True)
class CodecChoice:
    encoder: str
    format: str
    ext: str


def select_codec(
    available: Iterable[str], preference: Iterable[Mapping[str, Any]]
) -> CodecChoice:
    """First preferred encoder that ffmpeg reports, else the last preference."""

    names = set(available)
    choices = [
        CodecChoice(str(item["encoder"]), str(item["format"]), str(item["ext"]))
        for item in preference
    ]
    if not choices:
        raise ValueError("codec preference list is empty")
    for choice in choices:
        if choice.encoder in names:
            return choice
    return choices[-1]


def parse_encoder_list(output: str) -> set[str]:
    """Parse ``ffmpeg -encoders`` output into encoder names."""

    names: set[str] = set()
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("------"):
            in_table = True
            continue
        if not in_table or not stripped:
            continue
        parts = stripped.split()
        if len(parts) >= 2 and parts[0][:1] in "VAS":
            names.add(parts[1])
    return names


async def probe_encoders(binary: str) -> set[str]:
    proc = await asyncio.create_subprocess_exec(
        binary,
        "-hide_banner",
        "-encoders",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await proc.communicate()
    return parse_encoder_list(stdout.decode("utf-8", errors="replace"))


class CaptureBackend(abc.ABC):
    """One capture at a time, written to a file until finalized."""

    @abc.abstractmethod
    async def open(self, target: Path, codec: CodecChoice) -> None: ...

    @abc.abstractmethod
    async def finalize(self) -> Path | None:
        """Stop the current capture cleanly and return its file, if any audio was written."""

    @abc.abstractmethod
    async def release(self) -> None:
        """Free the device no matter what state the capture is in."""


class FfmpegCaptureBackend(CaptureBackend):
    def __init__(
        self,
        binary: str,
        *,
        capture_format: str = "alsa",
        device: str = "default",
        bitrate_kbps: int = 128,
        startup_grace: float = CAPTURE_STARTUP_GRACE_SECONDS,
        finalize_timeout: float = FINALIZE_TIMEOUT_SECONDS,
    ) -> None:
        self.binary = binary
        self.capture_format = capture_format
        self.device = device
        self.bitrate_kbps = int(bitrate_kbps)
        self.startup_grace = startup_grace
        self.finalize_timeout = finalize_timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._target: Path | None = None

    async def open(self, target: Path, codec: CodecChoice) -> None:
        if self._proc is not None:
            raise CaptureFailed("capture already running")
        cmd = ffmpeg_io.capture_args(
            self.binary,
            capture_format=self.capture_format,
            device=self.device,
            encoder=codec.encoder,
            bitrate_kbps=self.bitrate_kbps,
            output_format=codec.format,
            target=target,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureFailed(f"unable to start ffmpeg: {exc}") from exc
        # release() must see the process while the startup grace is pending
        self._proc = proc
        self._target = target

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=self.startup_grace)
        if proc.returncode is not None:
            self._proc = None
            self._target = None
            stderr = await proc.stderr.read() if proc.stderr is not None else b""
            with contextlib.suppress(FileNotFoundError):
                target.unlink()
            raise classify_capture_error(stderr.decode("utf-8", errors="replace"))

        LOGGER.debug("Capture started into %s (pid %s)", target.name, proc.pid)

    async def finalize(self) -> Path | None:
        proc, target = self._proc, self._target
        self._proc = None
        self._target = None
        if proc is None or target is None:
            return None
        if proc.returncode is None and proc.stdin is not None:
            try:
                proc.stdin.write(b"q")
                await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                LOGGER.debug("ffmpeg stdin closed before finalize")
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.finalize_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("ffmpeg did not finalize %s in time; killing", target.name)
            await _kill(proc)
        if not target.exists() or target.stat().st_size == 0:
            with contextlib.suppress(FileNotFoundError):
                target.unlink()
            return None
        return target

    async def release(self) -> None:
        proc = self._proc
        self._proc = None
        self._target = None
        if proc is not None:
            await _kill(proc)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


class SegmentUploader:
    """Posts segments as multipart ``audio`` + ``duration`` with bearer auth."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        device_id: str | None = None,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = server_url.rstrip("/") + UPLOAD_PATH
        self.token = token
        self.device_id = device_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def upload(self, path: Path, duration: float) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"}
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        payload = await asyncio.to_thread(path.read_bytes)
        form = aiohttp.FormData()
        form.add_field(
            "audio", payload, filename=path.name, content_type=content_type_for(path)
        )
        form.add_field("duration", f"{duration:.3f}")
        session = await self._client()
        try:
            async with session.post(
                self.url, data=form, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    LOGGER.warning(
                        "Upload of %s rejected: HTTP %s %s", path.name, resp.status, body[:200]
                    )
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Upload of %s failed: %s", path.name, exc)
            return False
        LOGGER.debug("Uploaded %s (%.1fs, %d bytes)", path.name, duration, len(payload))
        return True

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None


class SegmentRecorder:
    def __init__(
        self,
        backend: CaptureBackend,
        uploader: SegmentUploader,
        *,
        codec: CodecChoice,
        workdir: Path,
        rotation_seconds: float = 60.0,
        first_segment_seconds: float = 10.0,
    ) -> None:
        if rotation_seconds <= 0 or first_segment_seconds <= 0:
            raise ValueError("rotation intervals must be positive")
        self.backend = backend
        self.uploader = uploader
        self.codec = codec
        self.workdir = Path(workdir)
        self.rotation_seconds = float(rotation_seconds)
        self.first_segment_seconds = float(first_segment_seconds)
        self._lock = asyncio.Lock()
        self._rotation_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._segment_started = 0.0
        self._sequence = 0
        self._running = False
        self.last_error: RecorderError | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("recorder already started")
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.last_error = None
        try:
            await self._open_segment()
        except BaseException:
            await self.backend.release()
            raise
        self._running = True
        self._rotation_task = asyncio.create_task(self._rotate_forever())
        LOGGER.info("Recording started with %s/%s", self.codec.encoder, self.codec.format)

    async def stop(self) -> None:
        """Finalize and upload the open segment; the device is always released."""

        if not self._running:
            await self.wait_uploads()
            return
        self._running = False
        try:
            task = self._rotation_task
            self._rotation_task = None
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            async with self._lock:
                finished = await self.backend.finalize()
                if finished is not None:
                    self._schedule_upload(finished, time.monotonic() - self._segment_started)
            if self._pending:
                await asyncio.gather(*list(self._pending), return_exceptions=True)
        finally:
            await self.backend.release()
            LOGGER.info("Recording stopped")

    async def wait_uploads(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _open_segment(self) -> None:
        self._sequence += 1
        name = f"segment-{int(time.time() * 1000)}-{self._sequence:05d}{self.codec.ext}"
        await self.backend.open(self.workdir / name, self.codec)
        self._segment_started = time.monotonic()

    async def _rotate_forever(self) -> None:
        delay = self.first_segment_seconds
        while True:
            await asyncio.sleep(delay)
            delay = self.rotation_seconds
            try:
                await self.rotate()
            except RecorderError as exc:
                self.last_error = exc
                LOGGER.error("Capture restart failed: %s", exc)
                await self.backend.release()
                self._running = False
                return

    async def rotate(self) -> None:
        async with self._lock:
            finished = await self.backend.finalize()
            if finished is not None:
                self._schedule_upload(finished, time.monotonic() - self._segment_started)
            await self._open_segment()

    def _schedule_upload(self, path: Path, duration: float) -> None:
        task = asyncio.create_task(self._upload_and_discard(path, duration))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _upload_and_discard(self, path: Path, duration: float) -> None:
        try:
            await self.uploader.upload(path, duration)
        except OSError as exc:
            LOGGER.warning("Could not read segment %s: %s", path.name, exc)
        finally:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()


async def _run_cli(args: argparse.Namespace) -> int:
    cfg = section("recorder")
    binary = ffmpeg_io.resolve_ffmpeg_binary(section("transcode").get("ffmpeg_bin"))
    if binary is None:
        LOGGER.error("ffmpeg not found; cannot capture audio")
        return 2
    codec = select_codec(await probe_encoders(binary), cfg["codec_preference"])
    backend = FfmpegCaptureBackend(
        binary,
        capture_format=args.format or str(cfg["capture_format"]),
        device=args.device or str(cfg["capture_device"]),
        bitrate_kbps=int(cfg["bitrate_kbps"]),
    )
    uploader = SegmentUploader(
        args.server or str(cfg["server_url"]),
        args.token,
        device_id=args.device_id,
        timeout=float(cfg["upload_timeout_sec"]),
    )
    workdir = Path(args.workdir) if args.workdir else Path(tempfile.mkdtemp(prefix="shiftrec-"))
    recorder = SegmentRecorder(
        backend,
        uploader,
        codec=codec,
        workdir=workdir,
        rotation_seconds=float(cfg["rotation_seconds"]),
        first_segment_seconds=float(cfg["first_segment_seconds"]),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await recorder.start()
    except MicrophonePermissionDenied as exc:
        LOGGER.error("Microphone permission denied: %s", exc)
        await uploader.close()
        return 3
    except MicrophoneNotFound as exc:
        LOGGER.error("Microphone not found: %s", exc)
        await uploader.close()
        return 4
    except RecorderError as exc:
        LOGGER.error("Capture failed: %s", exc)
        await uploader.close()
        return 1

    try:
        while recorder.running and not stop_event.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
    finally:
        await recorder.stop()
        await uploader.close()
    return 1 if recorder.last_error is not None else 0


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Capture and upload rotating audio segments.")
    parser.add_argument("--server", help="Upload server base URL (defaults to config).")
    parser.add_argument("--token", required=True, help="Bearer upload token.")
    parser.add_argument("--device-id", help="Device identifier sent as X-Device-Id.")
    parser.add_argument("--device", help="Capture device (defaults to config).")
    parser.add_argument("--format", help="ffmpeg capture input format (defaults to config).")
    parser.add_argument("--workdir", help="Directory for in-progress segments.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    reload_cfg()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    return asyncio.run(_run_cli(args))


if __name__ == "__main__":
    raise SystemExit(cli_main())
