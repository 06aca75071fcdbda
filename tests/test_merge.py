from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from pathlib import Path

import pytest

from pipeline_support import at_utc, employee, ffmpeg_calls, open_attendance
from shiftrec import audio_paths, events
from shiftrec.audio_paths import AudioDirectoryRegistry
from shiftrec.errors import MergeFailed, NoActiveAttendance, StorageIOFailed
from shiftrec.locks import KeyedLockRegistry
from shiftrec.merge import DailyMergeEngine, estimate_seconds, segment_seconds
from shiftrec.models import Failed, FallbackStored, IncomingSegment, Merged, utcnow
from shiftrec.retention import RetentionEnforcer
from shiftrec.sessions import SessionStateTracker
from shiftrec.storage import MemoryRecordingStore
from shiftrec.transcoder import Transcoder


class Pipeline:
    def __init__(self, root: Path, ffmpeg: Path | None, *, cap: int = 10**9) -> None:
        self.store = MemoryRecordingStore()
        self.locks = KeyedLockRegistry()
        self.registry = AudioDirectoryRegistry(self.store, root)
        self.tracker = SessionStateTracker(self.store, self.locks)
        self.retention = RetentionEnforcer(
            self.store, self.registry, self.locks, max_total_bytes=cap
        )
        self.engine = DailyMergeEngine(
            self.store,
            Transcoder(str(ffmpeg) if ffmpeg else None),
            self.tracker,
            self.locks,
            retention=self.retention,
        )
        self.user = employee()
        self.attendance = open_attendance(self.user.id)

    def segment(self, payload: bytes, *, ext: str = ".ogg", hint: float | None = 60.0):
        key, directory = self.registry.ensure_directory(self.user)
        raw = directory / audio_paths.incoming_name(ext)
        raw.write_bytes(payload)
        return IncomingSegment(
            user_id=self.user.id,
            dir_key=key,
            directory=directory,
            raw_path=raw,
            extension=ext,
            duration_hint=hint,
            received_at=utcnow(),
            attendance=self.attendance,
        )

    @property
    def directory(self) -> Path:
        return self.registry.directory_for_key(self.registry.key_for(self.user))

    @property
    def master(self) -> Path:
        return self.directory / audio_paths.master_name(self.attendance.date)

    def record(self):
        return self.store.get_by_user_and_date(self.user.id, self.attendance.date)


def _leftovers(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir() if p.name.startswith("."))


def test_duration_contribution_rules():
    assert estimate_seconds(12000, 96) == pytest.approx(1.0)
    assert estimate_seconds(0, 96) == 0.0
    assert segment_seconds(59.5, 12000, 96, 600) == pytest.approx(59.5)
    assert segment_seconds(None, 12000, 96, 600) == pytest.approx(1.0)
    assert segment_seconds(0, 12000, 96, 600) == pytest.approx(1.0)
    assert segment_seconds(900, 16000, 128, 600) == pytest.approx(1.0)


def test_first_segment_becomes_master_then_appends(audio_root, fake_ffmpeg):
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        first = await pipeline.engine.ingest(pipeline.segment(b"AAAA"))
        assert isinstance(first, Merged)
        assert pipeline.master.read_bytes() == b"AAAA"
        second = await pipeline.engine.ingest(pipeline.segment(b"BBB", hint=30.0))
        assert isinstance(second, Merged)
        return second

    outcome = asyncio.run(runner())

    assert pipeline.master.read_bytes() == b"AAAABBB"
    record = pipeline.record()
    assert record == outcome.record
    assert record.file_name == f"daily-{pipeline.attendance.date}.m4a"
    assert record.file_url == (
        f"/uploads/audio/{record.dir_key}/daily-{pipeline.attendance.date}.m4a"
    )
    assert record.file_size == 7
    assert record.segment_count == 2
    assert record.duration == pytest.approx(90.0)
    assert record.is_active is True
    assert _leftovers(pipeline.directory) == []
    assert any("concat" in call for call in ffmpeg_calls(audio_root.parent))


def test_concurrent_segments_are_serialized(audio_root, fake_ffmpeg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_DELAY", "0.1")
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        return await asyncio.gather(
            pipeline.engine.ingest(pipeline.segment(b"AAAA")),
            pipeline.engine.ingest(pipeline.segment(b"BBBB")),
        )

    outcomes = asyncio.run(runner())

    assert all(isinstance(outcome, Merged) for outcome in outcomes)
    assert pipeline.master.read_bytes() in (b"AAAABBBB", b"BBBBAAAA")
    record = pipeline.record()
    assert record.segment_count == 2
    assert record.file_size == 8
    assert record.duration == pytest.approx(120.0)
    assert pipeline.locks.active_keys() == []


def test_undecodable_segment_is_kept_as_fallback(audio_root, fake_ffmpeg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    outcome = asyncio.run(pipeline.engine.ingest(pipeline.segment(b"RAWDATA", ext=".webm")))

    assert isinstance(outcome, FallbackStored)
    stored = pipeline.directory / outcome.file_name
    assert stored.read_bytes() == b"RAWDATA"
    assert outcome.file_name.startswith(f"{pipeline.attendance.date}-")
    assert outcome.file_name.endswith(".webm")
    record = pipeline.record()
    assert record.fallback_files == [outcome.file_name]
    assert record.fallback_size == 7
    assert record.file_name is None
    assert record.duration == pytest.approx(60.0)
    assert record.stored_bytes == 7

    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    merged = asyncio.run(pipeline.engine.ingest(pipeline.segment(b"GOOD")))
    assert isinstance(merged, Merged)
    assert merged.record.fallback_files == [outcome.file_name]
    assert merged.record.duration == pytest.approx(120.0)
    assert merged.record.stored_bytes == 11
    assert stored.exists()


def test_missing_ffmpeg_falls_back_to_raw(audio_root):
    pipeline = Pipeline(audio_root, None)

    outcome = asyncio.run(pipeline.engine.ingest(pipeline.segment(b"x" * 16000, hint=None)))

    assert isinstance(outcome, FallbackStored)
    assert outcome.segment_seconds == pytest.approx(1.0)


def test_concat_failure_keeps_master_intact(audio_root, fake_ffmpeg, monkeypatch):
    pipeline = Pipeline(audio_root, fake_ffmpeg)
    asyncio.run(pipeline.engine.ingest(pipeline.segment(b"AAAA")))
    before = pipeline.record()

    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail_concat")
    segment = pipeline.segment(b"BBBB")
    outcome = asyncio.run(pipeline.engine.ingest(segment))

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, MergeFailed)
    assert outcome.error.status == 500
    assert pipeline.master.read_bytes() == b"AAAA"
    after = pipeline.record()
    assert after.file_size == before.file_size
    assert after.segment_count == 1
    assert after.duration == before.duration
    assert not segment.raw_path.exists()
    assert _leftovers(pipeline.directory) == []


def test_segment_after_admin_stop_is_rejected(audio_root, fake_ffmpeg):
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        first = await pipeline.engine.ingest(pipeline.segment(b"AAAA"))
        await pipeline.tracker.admin_stop(first.record.id)
        segment = pipeline.segment(b"BBBB")
        return segment, await pipeline.engine.ingest(segment)

    segment, outcome = asyncio.run(runner())

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, NoActiveAttendance)
    assert not segment.raw_path.exists()
    assert pipeline.master.read_bytes() == b"AAAA"


def test_size_estimate_used_without_plausible_hint(audio_root, fake_ffmpeg):
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        await pipeline.engine.ingest(pipeline.segment(b"x" * 12000, hint=None))
        return await pipeline.engine.ingest(pipeline.segment(b"y" * 24000, hint=3600.0))

    outcome = asyncio.run(runner())

    assert outcome.segment_seconds == pytest.approx(2.0)
    assert outcome.record.duration == pytest.approx(3.0)


def test_merge_publishes_events(audio_root, fake_ffmpeg, monkeypatch):
    pipeline = Pipeline(audio_root, fake_ffmpeg)
    bus = events.RecordingEventBus()
    events.install_event_bus(bus)

    asyncio.run(pipeline.engine.ingest(pipeline.segment(b"AAAA")))
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
    asyncio.run(pipeline.engine.ingest(pipeline.segment(b"BBBB")))

    types = [event["type"] for event in bus.history_snapshot()]
    assert types == [events.AUDIO_START, events.RECORDING_MERGED, events.RECORDING_FALLBACK]
    assert bus.history_snapshot()[1]["payload"]["userId"] == pipeline.user.id


def test_quota_pass_after_merge_evicts_oldest_day(audio_root, fake_ffmpeg):
    pipeline = Pipeline(audio_root, fake_ffmpeg, cap=250)
    days = [
        open_attendance(pipeline.user.id, at_utc(2024, 3, 1, 9)),
        open_attendance(pipeline.user.id, at_utc(2024, 3, 2, 9)),
        open_attendance(pipeline.user.id),
    ]
    masters = []

    async def runner():
        for attendance in days:
            pipeline.attendance = attendance
            outcome = await pipeline.engine.ingest(pipeline.segment(b"x" * 100))
            assert isinstance(outcome, Merged)
            masters.append(pipeline.master)

    asyncio.run(runner())

    remaining = sorted(record.recording_date for record in pipeline.store.list_all())
    assert remaining == [days[1].date, days[2].date]
    assert not masters[0].exists()
    assert masters[1].exists() and masters[2].exists()
    assert pipeline.store.total_stored_bytes() == 200


def _failing_master_replace(monkeypatch, master: Path, failures: int) -> list[str]:
    attempts: list[str] = []
    replace = os.replace

    def flaky_replace(src, dst):
        if Path(dst) == master and len(attempts) < failures:
            attempts.append(Path(src).name)
            raise OSError("device busy")
        return replace(src, dst)

    monkeypatch.setattr(os, "replace", flaky_replace)
    return attempts


def test_transient_rename_failure_is_retried(audio_root, fake_ffmpeg, monkeypatch):
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        await pipeline.engine.ingest(pipeline.segment(b"AAAA"))
        attempts = _failing_master_replace(monkeypatch, pipeline.master, failures=1)
        outcome = await pipeline.engine.ingest(pipeline.segment(b"BBB", hint=30.0))
        return attempts, outcome

    attempts, outcome = asyncio.run(runner())

    assert len(attempts) == 1
    assert isinstance(outcome, Merged)
    assert pipeline.master.read_bytes() == b"AAAABBB"
    assert pipeline.record().file_size == 7
    assert _leftovers(pipeline.directory) == []


def test_persistent_rename_failure_keeps_previous_master(audio_root, fake_ffmpeg, monkeypatch):
    pipeline = Pipeline(audio_root, fake_ffmpeg)

    async def runner():
        await pipeline.engine.ingest(pipeline.segment(b"AAAA"))
        attempts = _failing_master_replace(monkeypatch, pipeline.master, failures=99)
        outcome = await pipeline.engine.ingest(pipeline.segment(b"BBB", hint=30.0))
        return attempts, outcome

    attempts, outcome = asyncio.run(runner())

    assert len(attempts) == pipeline.engine.io_retries
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, StorageIOFailed)
    assert outcome.error.status == 500
    assert pipeline.master.read_bytes() == b"AAAA"
    record = pipeline.record()
    assert record.file_size == 4
    assert record.segment_count == 1
    assert record.duration == pytest.approx(60.0)
    assert _leftovers(pipeline.directory) == []
    assert pipeline.locks.active_keys() == []


def test_check_out_uses_merged_total_not_wall_clock(audio_root, fake_ffmpeg):
    pipeline = Pipeline(audio_root, fake_ffmpeg)
    checked_in = at_utc(2024, 3, 4, 9)
    pipeline.attendance = open_attendance(pipeline.user.id, checked_in)

    async def runner():
        await pipeline.tracker.check_in(pipeline.user.id, pipeline.attendance.id, checked_in)
        for payload in (b"AAAA", b"BBBB", b"CCCC"):
            outcome = await pipeline.engine.ingest(pipeline.segment(payload, hint=60.0))
            assert isinstance(outcome, Merged)
        return await pipeline.tracker.check_out(
            pipeline.user.id, pipeline.attendance.id, checked_in + timedelta(seconds=190)
        )

    stopped = asyncio.run(runner())

    assert stopped.duration == pytest.approx(180.0)
    assert stopped.duration_estimated is False
    assert stopped.segment_count == 3
    assert pipeline.master.read_bytes() == b"AAAABBBBCCCC"
