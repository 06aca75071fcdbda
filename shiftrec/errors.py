"""Error taxonomy for the segment upload and merge pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures that map onto an HTTP response."""

    status = 500
    default_message = "Audio pipeline failure"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class AuthRequired(PipelineError):
    status = 401
    default_message = "Employee access required"


class Forbidden(PipelineError):
    status = 403
    default_message = "Admin access required"


class DeviceMismatch(PipelineError):
    status = 403
    default_message = "Account linked to a different device"


class NoActiveAttendance(PipelineError):
    status = 400
    default_message = "No attendance record found"


class UploadRejected(PipelineError):
    status = 400
    default_message = "No audio file provided"


class RecordingNotFound(PipelineError):
    status = 404
    default_message = "Recording not found"


class TranscodeFailed(PipelineError):
    """Recoverable: the segment is stored as a raw fallback instead."""

    default_message = "Segment transcode failed"


class MergeFailed(PipelineError):
    default_message = "Failed to merge audio segment"


class StorageIOFailed(PipelineError):
    default_message = "Failed to store audio"


__all__ = [
    "AuthRequired",
    "DeviceMismatch",
    "Forbidden",
    "MergeFailed",
    "NoActiveAttendance",
    "PipelineError",
    "RecordingNotFound",
    "StorageIOFailed",
    "TranscodeFailed",
    "UploadRejected",
]
