"""Storage interfaces consumed by the pipeline, with in-memory and JSON backends.

The relational schema lives with the attendance application; the pipeline only
needs the narrow views defined here.
"""

from __future__ import annotations

import abc
import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from shiftrec.models import AttendanceRef, RecordingSession, UserRecord

LOGGER = logging.getLogger("shiftrec.storage")


class RecordingStore(abc.ABC):
    """Persistence for RecordingSession rows and per-user directory keys."""

    @abc.abstractmethod
    def create(self, record: RecordingSession) -> RecordingSession: ...

    @abc.abstractmethod
    def get(self, recording_id: str) -> RecordingSession | None: ...

    @abc.abstractmethod
    def get_by_user_and_date(self, user_id: str, date: str) -> RecordingSession | None: ...

    @abc.abstractmethod
    def update(self, recording_id: str, **changes: Any) -> RecordingSession | None: ...

    @abc.abstractmethod
    def delete(self, recording_id: str) -> bool: ...

    @abc.abstractmethod
    def list_all(self) -> list[RecordingSession]: ...

    @abc.abstractmethod
    def get_dir_key(self, user_id: str) -> str | None: ...

    @abc.abstractmethod
    def assign_dir_key(self, user_id: str, key: str) -> str:
        """Persist ``key`` for ``user_id`` unless one is already assigned.

        Returns the key that is in effect afterwards.
        """

    @abc.abstractmethod
    def dir_key_in_use(self, key: str) -> bool: ...

    def list_active(self) -> list[RecordingSession]:
        return [record for record in self.list_all() if record.is_active]

    def list_for_user(self, user_id: str) -> list[RecordingSession]:
        return [record for record in self.list_all() if record.user_id == user_id]

    def total_stored_bytes(self) -> int:
        return sum(record.stored_bytes for record in self.list_all())

    def flush(self) -> None:
        """Block until every accepted mutation is durable."""


class MemoryRecordingStore(RecordingStore):
    def __init__(self, records: Iterable[RecordingSession] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, RecordingSession] = {}
        self._dir_keys: dict[str, str] = {}
        for record in records or ():
            self._records[record.id] = replace(record)

    def create(self, record: RecordingSession) -> RecordingSession:
        with self._lock:
            for existing in self._records.values():
                if (
                    existing.user_id == record.user_id
                    and existing.recording_date == record.recording_date
                ):
                    raise ValueError(
                        f"recording already exists for {record.user_id} on {record.recording_date}"
                    )
            self._records[record.id] = replace(record)
            self._changed()
            return replace(record)

    def get(self, recording_id: str) -> RecordingSession | None:
        with self._lock:
            record = self._records.get(recording_id)
            return replace(record) if record is not None else None

    def get_by_user_and_date(self, user_id: str, date: str) -> RecordingSession | None:
        with self._lock:
            for record in self._records.values():
                if record.user_id == user_id and record.recording_date == date:
                    return replace(record)
        return None

    def update(self, recording_id: str, **changes: Any) -> RecordingSession | None:
        with self._lock:
            record = self._records.get(recording_id)
            if record is None:
                return None
            updated = replace(record, **changes)
            self._records[recording_id] = updated
            self._changed()
            return replace(updated)

    def delete(self, recording_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(recording_id, None)
            if removed is not None:
                self._changed()
            return removed is not None

    def list_all(self) -> list[RecordingSession]:
        with self._lock:
            records = [replace(record) for record in self._records.values()]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records

    def get_dir_key(self, user_id: str) -> str | None:
        with self._lock:
            return self._dir_keys.get(user_id)

    def assign_dir_key(self, user_id: str, key: str) -> str:
        with self._lock:
            current = self._dir_keys.get(user_id)
            if current:
                return current
            self._dir_keys[user_id] = key
            self._changed()
            return key

    def dir_key_in_use(self, key: str) -> bool:
        with self._lock:
            return key in self._dir_keys.values()

    def _changed(self) -> None:
        """Hook invoked with the lock held after every mutation."""


class JsonRecordingStore(MemoryRecordingStore):
    """Single-node store persisted to one JSON document after each mutation.

    Mutations snapshot the document under the lock; a single writer thread
    persists the snapshots in order, off the event loop.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        super().__init__()
        self.path = Path(path)
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recording-store")
        self._last_write: Future | None = None
        self._load()

    def _load(self) -> None:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable recording store %s: %s", self.path, exc)
            return
        if not isinstance(payload, dict):
            return
        for raw in payload.get("recordings") or []:
            try:
                record = RecordingSession.from_payload(raw)
            except (KeyError, TypeError, ValueError):
                continue
            self._records[record.id] = record
        dir_keys = payload.get("dirKeys") or {}
        if isinstance(dir_keys, dict):
            self._dir_keys.update({str(k): str(v) for k, v in dir_keys.items()})

    def _changed(self) -> None:
        payload = {
            "version": 1,
            "recordings": [record.to_payload() for record in self._records.values()],
            "dirKeys": dict(self._dir_keys),
        }
        self._last_write = self._writer.submit(self._write, payload)

    def _write(self, payload: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, separators=(",", ":"))
                handle.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            LOGGER.error("Failed to persist recording store %s: %s", self.path, exc)
            raise

    def flush(self) -> None:
        with self._lock:
            pending = self._last_write
        if pending is not None:
            pending.result()

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self._writer.shutdown(wait=True)


class UserDirectory(abc.ABC):
    @abc.abstractmethod
    def get_user(self, user_id: str) -> UserRecord | None: ...

    def remember(self, user: UserRecord) -> None:
        """Accept a user announced by an attendance signal; external directories ignore it."""


class AttendanceDirectory(abc.ABC):
    @abc.abstractmethod
    def attendance_for_day(self, user_id: str, date: str) -> AttendanceRef | None: ...

    def note_check_in(self, attendance: AttendanceRef) -> AttendanceRef:
        return attendance

    def note_check_out(self, user_id: str, date: str, at: datetime) -> AttendanceRef | None:
        return self.attendance_for_day(user_id, date)


class SessionDirectory(abc.ABC):
    """Maps an established cookie session onto a user id."""

    @abc.abstractmethod
    def lookup(self, session_token: str) -> str | None: ...


class DeviceBindingStore(abc.ABC):
    @abc.abstractmethod
    def bound_device(self, user_id: str) -> str | None: ...

    @abc.abstractmethod
    def bind(self, user_id: str, device_id: str) -> None: ...

    @abc.abstractmethod
    def unbind(self, user_id: str) -> None: ...


class MemoryUserDirectory(UserDirectory):
    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users = {user.id: user for user in users}

    def remember(self, user: UserRecord) -> None:
        self._users[user.id] = user

    def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)


class MemoryAttendanceDirectory(AttendanceDirectory):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], AttendanceRef] = {}

    def note_check_in(self, attendance: AttendanceRef) -> AttendanceRef:
        with self._lock:
            self._records[(attendance.user_id, attendance.date)] = attendance
        return attendance

    def note_check_out(self, user_id: str, date: str, at: datetime) -> AttendanceRef | None:
        with self._lock:
            current = self._records.get((user_id, date))
            if current is None:
                return None
            closed = replace(current, check_out_time=at)
            self._records[(user_id, date)] = closed
            return closed

    def attendance_for_day(self, user_id: str, date: str) -> AttendanceRef | None:
        with self._lock:
            return self._records.get((user_id, date))


class MemorySessionDirectory(SessionDirectory):
    def __init__(self, sessions: dict[str, str] | None = None) -> None:
        self._sessions = dict(sessions or {})

    def add(self, session_token: str, user_id: str) -> None:
        self._sessions[session_token] = user_id

    def lookup(self, session_token: str) -> str | None:
        return self._sessions.get(session_token)


class MemoryDeviceBindingStore(DeviceBindingStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bindings: dict[str, str] = {}

    def bound_device(self, user_id: str) -> str | None:
        with self._lock:
            return self._bindings.get(user_id)

    def bind(self, user_id: str, device_id: str) -> None:
        with self._lock:
            self._bindings[user_id] = device_id

    def unbind(self, user_id: str) -> None:
        with self._lock:
            self._bindings.pop(user_id, None)


__all__ = [
    "AttendanceDirectory",
    "DeviceBindingStore",
    "JsonRecordingStore",
    "MemoryAttendanceDirectory",
    "MemoryDeviceBindingStore",
    "MemoryRecordingStore",
    "MemorySessionDirectory",
    "MemoryUserDirectory",
    "RecordingStore",
    "SessionDirectory",
    "UserDirectory",
]
