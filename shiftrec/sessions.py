"""Recording session state driven by attendance check-in/check-out signals."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from shiftrec import events
from shiftrec.config import section
from shiftrec.errors import NoActiveAttendance, RecordingNotFound
from shiftrec.locks import KeyedLockRegistry
from shiftrec.models import (
    STOP_ADMIN,
    STOP_CHECK_OUT,
    AttendanceRef,
    RecordingSession,
    SessionState,
    day_key,
    utcnow,
)
from shiftrec.storage import RecordingStore

LOGGER = logging.getLogger("shiftrec.sessions")


class SessionStateTracker:
    """Owns the one-recording-per-user-per-day row and its active flag."""

    def __init__(
        self,
        store: RecordingStore,
        locks: KeyedLockRegistry,
        *,
        stop_grace_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        if stop_grace_seconds is None:
            stop_grace_seconds = float(section("sessions").get("stop_grace_seconds", 90.0))
        self.stop_grace = timedelta(seconds=max(0.0, float(stop_grace_seconds)))

    def state(self, user_id: str, date: str) -> SessionState:
        record = self.store.get_by_user_and_date(user_id, date)
        if record is None:
            return SessionState.NO_SESSION
        return SessionState.ACTIVE if record.is_active else SessionState.STOPPED

    async def check_in(
        self, user_id: str, attendance_id: str | None, at: datetime | None = None
    ) -> RecordingSession:
        at = at or utcnow()
        date = day_key(at)
        async with self.locks.hold((user_id, date)):
            record = self.store.get_by_user_and_date(user_id, date)
            if record is None:
                record = self.store.create(
                    RecordingSession(
                        user_id=user_id,
                        recording_date=date,
                        attendance_id=attendance_id,
                        is_active=True,
                        created_at=at,
                        activated_at=at,
                    )
                )
                LOGGER.info("Opened recording %s for %s on %s", record.id, user_id, date)
            else:
                record = self._require(
                    self.store.update(
                        record.id,
                        attendance_id=attendance_id or record.attendance_id,
                        is_active=True,
                        activated_at=at,
                        stopped_at=None,
                        stop_reason=None,
                    ),
                    record.id,
                )
                LOGGER.info("Reactivated recording %s for %s on %s", record.id, user_id, date)
        events.publish(events.AUDIO_START, _event_payload(record))
        return record

    async def check_out(
        self, user_id: str, attendance_id: str | None = None, at: datetime | None = None
    ) -> RecordingSession | None:
        at = at or utcnow()
        date = day_key(at)
        async with self.locks.hold((user_id, date)):
            record = self.store.get_by_user_and_date(user_id, date)
            if record is None or not record.is_active:
                LOGGER.debug("Check-out for %s on %s with no active recording", user_id, date)
                return record
            if attendance_id and record.attendance_id and attendance_id != record.attendance_id:
                LOGGER.warning(
                    "Check-out attendance %s does not match recording %s (%s)",
                    attendance_id,
                    record.id,
                    record.attendance_id,
                )
            record = self._stop(record, STOP_CHECK_OUT, at)
        events.publish(events.AUDIO_STOP, _event_payload(record))
        return record

    async def admin_stop(self, recording_id: str, at: datetime | None = None) -> RecordingSession:
        at = at or utcnow()
        record = self.store.get(recording_id)
        if record is None:
            raise RecordingNotFound()
        async with self.locks.hold(record.lock_key):
            record = self.store.get(recording_id)
            if record is None:
                raise RecordingNotFound()
            if record.is_active:
                record = self._stop(record, STOP_ADMIN, at)
            elif record.stop_reason != STOP_ADMIN:
                # A later admin stop still closes the check-out grace window.
                record = self._require(
                    self.store.update(record.id, stop_reason=STOP_ADMIN), record.id
                )
        events.publish(events.AUDIO_STOP, _event_payload(record))
        return record

    def accept_segment(
        self,
        attendance: AttendanceRef,
        *,
        dir_key: str,
        now: datetime | None = None,
    ) -> RecordingSession:
        """Return the row a segment merges into, creating it for the day's first segment.

        The caller must hold the ``(user_id, date)`` lock.
        """

        now = now or utcnow()
        user_id, date = attendance.user_id, attendance.date
        record = self.store.get_by_user_and_date(user_id, date)

        if record is None:
            checked_out = attendance.check_out_time
            if checked_out is not None and now - checked_out > self.stop_grace:
                raise NoActiveAttendance("Attendance already closed")
            fresh = RecordingSession(
                user_id=user_id,
                recording_date=date,
                attendance_id=attendance.id,
                dir_key=dir_key,
                is_active=checked_out is None,
                created_at=now,
                activated_at=attendance.check_in_time,
                stopped_at=checked_out,
                stop_reason=STOP_CHECK_OUT if checked_out is not None else None,
            )
            record = self.store.create(fresh)
            LOGGER.info("Created recording %s for %s on %s from upload", record.id, user_id, date)
            if record.is_active:
                events.publish(events.AUDIO_START, _event_payload(record))
        elif not record.is_active:
            if record.stop_reason == STOP_ADMIN:
                raise NoActiveAttendance("Recording stopped by an administrator")
            stopped = record.stopped_at
            if stopped is None or now - stopped > self.stop_grace:
                raise NoActiveAttendance("Recording session is closed")
            LOGGER.debug("Accepting late segment for %s within stop grace", record.id)

        if record.dir_key != dir_key:
            record = self._require(self.store.update(record.id, dir_key=dir_key), record.id)
        return record

    def _stop(self, record: RecordingSession, reason: str, at: datetime) -> RecordingSession:
        changes: dict[str, Any] = {"is_active": False, "stopped_at": at, "stop_reason": reason}
        if record.merged_seconds <= 0:
            started = record.activated_at or record.created_at
            span = max(0.0, (at - started).total_seconds())
            changes["duration"] = round(record.duration + span, 3)
            changes["duration_estimated"] = True
        stopped = self._require(self.store.update(record.id, **changes), record.id)
        LOGGER.info(
            "Stopped recording %s (%s) duration=%.1fs%s",
            stopped.id,
            reason,
            stopped.duration,
            " estimated" if stopped.duration_estimated else "",
        )
        return stopped

    @staticmethod
    def _require(record: RecordingSession | None, recording_id: str) -> RecordingSession:
        if record is None:
            raise RecordingNotFound(detail=recording_id)
        return record


def _event_payload(record: RecordingSession) -> dict[str, Any]:
    return {"userId": record.user_id, "recording": record.to_payload()}


__all__ = ["SessionStateTracker"]
