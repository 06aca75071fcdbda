"""Storage quota and age-based eviction of recording sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

from shiftrec import events
from shiftrec.audio_paths import AudioDirectoryRegistry
from shiftrec.config import section
from shiftrec.errors import RecordingNotFound
from shiftrec.locks import KeyedLockRegistry
from shiftrec.models import RecordingSession, day_key, utcnow
from shiftrec.storage import RecordingStore

LOGGER = logging.getLogger("shiftrec.retention")

REASON_QUOTA = "quota"
REASON_AGE = "age"
REASON_ADMIN = "admin_delete"


class RetentionEnforcer:
    def __init__(
        self,
        store: RecordingStore,
        directories: AudioDirectoryRegistry,
        locks: KeyedLockRegistry,
        *,
        max_total_bytes: int | None = None,
        max_age_days: int | None = None,
    ) -> None:
        cfg = section("retention")
        self.store = store
        self.directories = directories
        self.locks = locks
        self.max_total_bytes = int(
            max_total_bytes if max_total_bytes is not None else cfg["max_total_bytes"]
        )
        self.max_age_days = int(max_age_days if max_age_days is not None else cfg["max_age_days"])

    async def enforce_quota(self, cap: int | None = None, today: str | None = None) -> list[str]:
        """Evict the oldest sessions until stored bytes fit under ``cap``.

        Today's active sessions are never candidates; older days go first, then
        earlier ``created_at`` within a day.
        """

        cap = self.max_total_bytes if cap is None else int(cap)
        today = today or day_key()
        total = self.store.total_stored_bytes()
        if total <= cap:
            return []

        candidates = [
            record
            for record in self.store.list_all()
            if not (record.is_active and record.recording_date == today)
        ]
        candidates.sort(key=lambda record: (record.recording_date, record.created_at))

        evicted: list[str] = []
        for candidate in candidates:
            if total <= cap:
                break
            removed = await self._remove(candidate.id, REASON_QUOTA)
            if removed is None:
                continue
            total -= removed.stored_bytes
            evicted.append(removed.id)

        if total > cap:
            LOGGER.warning(
                "Stored audio still above cap after eviction: %d > %d bytes", total, cap
            )
        elif evicted:
            LOGGER.info("Quota pass evicted %d recording(s); %d bytes stored", len(evicted), total)
        return evicted

    async def purge_expired(
        self, max_age_days: int | None = None, now: datetime | None = None
    ) -> list[str]:
        days = self.max_age_days if max_age_days is None else int(max_age_days)
        cutoff = (now or utcnow()) - timedelta(days=days)
        removed: list[str] = []
        for record in self.store.list_all():
            if record.created_at >= cutoff:
                continue
            if await self._remove(record.id, REASON_AGE) is not None:
                removed.append(record.id)
        if removed:
            LOGGER.info("Age purge removed %d recording(s) older than %d days", len(removed), days)
        return removed

    async def delete_recording(self, recording_id: str) -> RecordingSession:
        removed = await self._remove(recording_id, REASON_ADMIN)
        if removed is None:
            raise RecordingNotFound()
        return removed

    async def run_sweeps(self, interval: float) -> None:
        """Run ``purge_expired`` forever; cancelled by the web app on shutdown."""

        while True:
            try:
                await self.purge_expired()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Retention sweep failed")
            await asyncio.sleep(interval)

    async def _remove(self, recording_id: str, reason: str) -> RecordingSession | None:
        record = self.store.get(recording_id)
        if record is None:
            LOGGER.debug("Eviction skipped for %s: already removed", recording_id)
            return None
        async with self.locks.hold(record.lock_key):
            current = self.store.get(recording_id)
            if current is None:
                LOGGER.debug("Eviction skipped for %s: removed concurrently", recording_id)
                return None
            directory = self._directory(current)
            if directory is not None:
                for name in current.backing_files():
                    _unlink_best_effort(directory / name)
            self.store.delete(current.id)
            if directory is not None and not self.store.list_for_user(current.user_id):
                _remove_dir_if_empty(directory)
        LOGGER.info(
            "Removed recording %s (%s, %s, %d bytes)",
            current.id,
            reason,
            current.recording_date,
            current.stored_bytes,
        )
        events.publish(
            events.RECORDING_EVICTED,
            {"userId": current.user_id, "recordingId": current.id, "reason": reason},
        )
        return current

    def _directory(self, record: RecordingSession) -> Path | None:
        key = record.dir_key or self.store.get_dir_key(record.user_id)
        if not key:
            return None
        try:
            return self.directories.directory_for_key(key)
        except ValueError:
            LOGGER.warning("Recording %s has an unusable directory key %r", record.id, key)
            return None


def _unlink_best_effort(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.warning("Could not delete %s: %s", path, exc)


def _remove_dir_if_empty(directory: Path) -> None:
    try:
        directory.rmdir()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.debug("Keeping %s: %s", directory, exc)
    else:
        LOGGER.info("Removed empty audio directory %s", directory)


__all__ = ["RetentionEnforcer"]
