"""Value types shared by the ingest, merge, session, and retention layers."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

from shiftrec.errors import PipelineError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime | None = None) -> str:
    """Return the logical recording day (YYYY-MM-DD, UTC) for ``moment``."""

    moment = moment or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date().isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Identity:
    """Authenticated caller resolved once per request by the auth middleware."""

    subject_id: str
    role: str
    device_id: str | None = None
    source: str = "session"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: str
    role: str = "employee"
    employee_id: str | None = None


@dataclass(frozen=True)
class AttendanceRef:
    id: str
    user_id: str
    date: str
    check_in_time: datetime
    check_out_time: datetime | None = None


class SessionState(str, enum.Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    STOPPED = "stopped"


STOP_CHECK_OUT = "check_out"
STOP_ADMIN = "admin_stop"


@dataclass
class RecordingSession:
    """One user's recording for one logical day."""

    user_id: str
    recording_date: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attendance_id: str | None = None
    dir_key: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int = 0
    duration: float = 0.0
    merged_seconds: float = 0.0
    duration_estimated: bool = False
    segment_count: int = 0
    fallback_files: list[str] = field(default_factory=list)
    fallback_size: int = 0
    is_active: bool = False
    created_at: datetime = field(default_factory=utcnow)
    activated_at: datetime | None = None
    stopped_at: datetime | None = None
    stop_reason: str | None = None

    @property
    def stored_bytes(self) -> int:
        return int(self.file_size or 0) + int(self.fallback_size or 0)

    @property
    def lock_key(self) -> tuple[str, str]:
        return (self.user_id, self.recording_date)

    def backing_files(self) -> list[str]:
        names: list[str] = []
        if self.file_name:
            names.append(self.file_name)
        names.extend(name for name in self.fallback_files if name not in names)
        return names

    def with_contribution(self, seconds: float) -> "RecordingSession":
        """Return a copy with ``seconds`` of ingested audio accounted for.

        ``duration`` never decreases: while it holds a wall-clock estimate the
        merged total only replaces it once it catches up.
        """

        merged = round(self.merged_seconds + max(0.0, seconds), 3)
        if self.duration_estimated:
            duration = max(self.duration, merged)
            estimated = merged < self.duration
        else:
            duration = round(self.duration + max(0.0, seconds), 3)
            estimated = False
        return replace(
            self,
            merged_seconds=merged,
            duration=duration,
            duration_estimated=estimated,
            segment_count=self.segment_count + 1,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "attendanceId": self.attendance_id,
            "dirKey": self.dir_key,
            "fileUrl": self.file_url,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "duration": self.duration,
            "mergedSeconds": self.merged_seconds,
            "durationEstimated": self.duration_estimated,
            "segmentCount": self.segment_count,
            "fallbackFiles": list(self.fallback_files),
            "fallbackSize": self.fallback_size,
            "recordingDate": self.recording_date,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "activatedAt": _iso(self.activated_at),
            "stoppedAt": _iso(self.stopped_at),
            "stopReason": self.stop_reason,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RecordingSession":
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["userId"]),
            recording_date=str(payload["recordingDate"]),
            attendance_id=payload.get("attendanceId"),
            dir_key=payload.get("dirKey"),
            file_url=payload.get("fileUrl"),
            file_name=payload.get("fileName"),
            file_size=int(payload.get("fileSize") or 0),
            duration=float(payload.get("duration") or 0.0),
            merged_seconds=float(payload.get("mergedSeconds") or 0.0),
            duration_estimated=bool(payload.get("durationEstimated", False)),
            segment_count=int(payload.get("segmentCount") or 0),
            fallback_files=[str(name) for name in payload.get("fallbackFiles") or []],
            fallback_size=int(payload.get("fallbackSize") or 0),
            is_active=bool(payload.get("isActive", False)),
            created_at=_parse_iso(payload.get("createdAt")) or utcnow(),
            activated_at=_parse_iso(payload.get("activatedAt")),
            stopped_at=_parse_iso(payload.get("stoppedAt")),
            stop_reason=payload.get("stopReason"),
        )


@dataclass(frozen=True)
class IncomingSegment:
    """A buffered upload waiting for transcode and merge."""

    user_id: str
    dir_key: str
    directory: Path
    raw_path: Path
    extension: str
    duration_hint: float | None
    received_at: datetime
    attendance: AttendanceRef


@dataclass(frozen=True)
class Merged:
    record: RecordingSession
    segment_seconds: float


@dataclass(frozen=True)
class FallbackStored:
    record: RecordingSession
    file_name: str
    segment_seconds: float


@dataclass(frozen=True)
class Failed:
    error: PipelineError


MergeOutcome = Union[Merged, FallbackStored, Failed]


__all__ = [
    "AttendanceRef",
    "Failed",
    "FallbackStored",
    "Identity",
    "IncomingSegment",
    "Merged",
    "MergeOutcome",
    "RecordingSession",
    "STOP_ADMIN",
    "STOP_CHECK_OUT",
    "SessionState",
    "UserRecord",
    "day_key",
    "utcnow",
]
