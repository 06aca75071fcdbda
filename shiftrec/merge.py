"""Append-merge of normalized segments into one master file per user per day."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

from shiftrec import audio_paths, events
from shiftrec.config import section
from shiftrec.errors import (
    MergeFailed,
    NoActiveAttendance,
    PipelineError,
    StorageIOFailed,
    TranscodeFailed,
)
from shiftrec.locks import KeyedLockRegistry
from shiftrec.models import (
    Failed,
    FallbackStored,
    IncomingSegment,
    Merged,
    MergeOutcome,
    RecordingSession,
)
from shiftrec.retention import RetentionEnforcer
from shiftrec.sessions import SessionStateTracker
from shiftrec.storage import RecordingStore
from shiftrec.transcoder import Transcoder

LOGGER = logging.getLogger("shiftrec.merge")


def estimate_seconds(size_bytes: int, bitrate_kbps: int) -> float:
    if size_bytes <= 0 or bitrate_kbps <= 0:
        return 0.0
    return round(size_bytes * 8 / (bitrate_kbps * 1000), 3)


def segment_seconds(
    hint: float | None, size_bytes: int, bitrate_kbps: int, max_hint_seconds: float
) -> float:
    """Client hint when plausible, otherwise a byte-size estimate at ``bitrate_kbps``."""

    if hint is not None and 0 < hint <= max_hint_seconds:
        return round(float(hint), 3)
    return estimate_seconds(size_bytes, bitrate_kbps)


def _unlink_quietly(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.warning("Could not remove temporary %s: %s", path, exc)


class DailyMergeEngine:
    """Runs the transcode-then-merge-then-update critical section per user-day."""

    def __init__(
        self,
        store: RecordingStore,
        transcoder: Transcoder,
        tracker: SessionStateTracker,
        locks: KeyedLockRegistry,
        *,
        retention: RetentionEnforcer | None = None,
        cfg: Mapping[str, Any] | None = None,
    ) -> None:
        cfg = dict(cfg) if cfg is not None else section("merge")
        self.store = store
        self.transcoder = transcoder
        self.tracker = tracker
        self.locks = locks
        self.retention = retention
        self.max_hint_seconds = float(cfg.get("max_hint_seconds", 600.0))
        self.raw_bitrate_kbps = int(cfg.get("raw_fallback_bitrate_kbps", 128))
        self.io_retries = max(1, int(cfg.get("io_retries", 3)))
        self.io_retry_delay = max(0.0, float(cfg.get("io_retry_delay_sec", 0.05)))

    async def ingest(self, segment: IncomingSegment) -> MergeOutcome:
        date = segment.attendance.date
        try:
            async with self.locks.hold((segment.user_id, date)):
                outcome = await self._ingest_locked(segment, date)
        finally:
            _unlink_quietly(segment.raw_path)

        if isinstance(outcome, Merged):
            events.publish(
                events.RECORDING_MERGED,
                {"userId": segment.user_id, "recording": outcome.record.to_payload()},
            )
        elif isinstance(outcome, FallbackStored):
            events.publish(
                events.RECORDING_FALLBACK,
                {
                    "userId": segment.user_id,
                    "fileName": outcome.file_name,
                    "recording": outcome.record.to_payload(),
                },
            )
        else:
            return outcome

        if self.retention is not None:
            try:
                await self.retention.enforce_quota()
            except PipelineError as exc:
                LOGGER.warning("Quota pass after merge failed: %s", exc.message)
        return outcome

    async def _ingest_locked(self, segment: IncomingSegment, date: str) -> MergeOutcome:
        try:
            record = self.tracker.accept_segment(
                segment.attendance, dir_key=segment.dir_key, now=segment.received_at
            )
        except NoActiveAttendance as exc:
            LOGGER.info("Rejected segment from %s: %s", segment.user_id, exc.message)
            return Failed(exc)

        ext = self.transcoder.container_ext
        normalized = segment.directory / audio_paths.merge_tmp_name(date, ext)
        try:
            await self.transcoder.normalize(segment.raw_path, normalized)
        except TranscodeFailed as exc:
            LOGGER.warning(
                "Storing raw fallback for %s on %s: %s", segment.user_id, date, exc.detail
            )
            try:
                return await self._store_fallback(record, segment, date)
            except PipelineError as fallback_exc:
                return Failed(fallback_exc)

        try:
            return await self._append(record, segment, date, normalized)
        except PipelineError as exc:
            LOGGER.error("Merge for %s on %s failed: %s", segment.user_id, date, exc.detail)
            return Failed(exc)
        finally:
            _unlink_quietly(normalized)

    async def _append(
        self, record: RecordingSession, segment: IncomingSegment, date: str, normalized: Path
    ) -> Merged:
        master_name = audio_paths.master_name(date, self.transcoder.container_ext)
        master = segment.directory / master_name
        seconds = segment_seconds(
            segment.duration_hint,
            normalized.stat().st_size,
            self.transcoder.bitrate_kbps,
            self.max_hint_seconds,
        )

        if master.exists():
            combined = segment.directory / audio_paths.merge_tmp_name(
                date, self.transcoder.container_ext
            )
            try:
                await self.transcoder.concat([master, normalized], combined)
                await self._retry_io(os.replace, combined, master)
            except PipelineError:
                _unlink_quietly(combined)
                raise
        else:
            await self._retry_io(os.replace, normalized, master)

        size = master.stat().st_size
        grown = record.with_contribution(seconds)
        updated = self.store.update(
            record.id,
            file_name=master_name,
            file_url=audio_paths.file_url(segment.dir_key, master_name),
            file_size=size,
            duration=grown.duration,
            merged_seconds=grown.merged_seconds,
            duration_estimated=grown.duration_estimated,
            segment_count=grown.segment_count,
        )
        if updated is None:
            raise MergeFailed(detail=f"recording {record.id} vanished during merge")
        LOGGER.info(
            "Merged %.1fs into %s/%s (%d bytes, total %.1fs)",
            seconds,
            segment.dir_key,
            master_name,
            size,
            updated.duration,
        )
        return Merged(record=updated, segment_seconds=seconds)

    async def _store_fallback(
        self, record: RecordingSession, segment: IncomingSegment, date: str
    ) -> FallbackStored:
        uploaded_ms = int(segment.received_at.timestamp() * 1000)
        name = audio_paths.fallback_name(date, uploaded_ms, segment.extension)
        target = segment.directory / name
        while target.exists():
            uploaded_ms += 1
            name = audio_paths.fallback_name(date, uploaded_ms, segment.extension)
            target = segment.directory / name

        await self._retry_io(os.replace, segment.raw_path, target)
        size = target.stat().st_size
        seconds = segment_seconds(
            segment.duration_hint, size, self.raw_bitrate_kbps, self.max_hint_seconds
        )
        grown = record.with_contribution(seconds)
        updated = self.store.update(
            record.id,
            fallback_files=[*record.fallback_files, name],
            fallback_size=record.fallback_size + size,
            duration=grown.duration,
            merged_seconds=grown.merged_seconds,
            duration_estimated=grown.duration_estimated,
            segment_count=grown.segment_count,
        )
        if updated is None:
            _unlink_quietly(target)
            raise MergeFailed(detail=f"recording {record.id} vanished during fallback")
        LOGGER.info("Stored raw fallback %s/%s (%d bytes)", segment.dir_key, name, size)
        return FallbackStored(record=updated, file_name=name, segment_seconds=seconds)

    async def _retry_io(self, op: Callable[..., Any], *args: Any) -> Any:
        last: OSError | None = None
        for attempt in range(1, self.io_retries + 1):
            try:
                return await asyncio.to_thread(op, *args)
            except OSError as exc:
                last = exc
                LOGGER.debug(
                    "%s attempt %d/%d failed: %s",
                    getattr(op, "__name__", "io"),
                    attempt,
                    self.io_retries,
                    exc,
                )
                if attempt < self.io_retries:
                    await asyncio.sleep(self.io_retry_delay)
        raise StorageIOFailed(detail=str(last))


__all__ = ["DailyMergeEngine", "estimate_seconds", "segment_seconds"]
