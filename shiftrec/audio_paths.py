"""Per-user audio directory keys and on-disk naming."""

from __future__ import annotations

import re
import secrets
import time
from pathlib import Path

from shiftrec.config import section
from shiftrec.models import UserRecord
from shiftrec.storage import RecordingStore

URL_PREFIX = "/uploads/audio"
MASTER_PREFIX = "daily-"
INCOMING_PREFIX = ".incoming-"
MERGE_TMP_PREFIX = ".merge-"
MAX_SLUG_LENGTH = 40

_SLUG_INVALID = re.compile(r"[^a-z0-9._-]+")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def audio_base_dir() -> Path:
    """Return the storage root, creating it when missing."""

    root = Path(str(section("paths").get("audio_root") or "./uploads/audio")).expanduser()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _slug(value: str | None) -> str:
    if not value:
        return ""
    cleaned = _SLUG_INVALID.sub("-", value.strip().lower()).strip("-.")
    return cleaned[:MAX_SLUG_LENGTH].strip("-.")


def derive_dir_key(user: UserRecord) -> str:
    """Build the human-browsable key from username, employee id, and user id."""

    key = _slug(user.username)
    employee = _slug(user.employee_id)
    if employee:
        key = f"{key}-{employee}" if key else employee
    if not key:
        key = f"user-{_slug(user.id)[:8] or 'unknown'}"
    return key


class AudioDirectoryRegistry:
    """Resolves and lazily creates each user's stable audio directory."""

    def __init__(self, store: RecordingStore, base_dir: Path | None = None) -> None:
        self.store = store
        self._base_dir = base_dir

    @property
    def base_dir(self) -> Path:
        if self._base_dir is None:
            self._base_dir = audio_base_dir()
        return self._base_dir

    def key_for(self, user: UserRecord) -> str:
        existing = self.store.get_dir_key(user.id)
        if existing:
            return existing
        candidate = derive_dir_key(user)
        if self.store.dir_key_in_use(candidate):
            candidate = f"{candidate}-{_slug(user.id)[:8]}"
        return self.store.assign_dir_key(user.id, candidate)

    def directory_for_key(self, key: str) -> Path:
        if not is_safe_component(key):
            raise ValueError(f"unsafe directory key: {key!r}")
        return self.base_dir / key

    def ensure_directory(self, user: UserRecord) -> tuple[str, Path]:
        key = self.key_for(user)
        directory = self.directory_for_key(key)
        directory.mkdir(parents=True, exist_ok=True)
        return key, directory


def is_safe_component(value: str) -> bool:
    """Return True for a single, visible path component."""

    if not value or value.startswith("."):
        return False
    if "/" in value or "\\" in value or "\x00" in value:
        return False
    return value not in {".", ".."}


def master_name(date: str, ext: str = ".m4a") -> str:
    if not _DATE_RE.match(date):
        raise ValueError(f"invalid recording date: {date!r}")
    return f"{MASTER_PREFIX}{date}{ext}"


def fallback_name(date: str, uploaded_ms: int, ext: str) -> str:
    return f"{date}-{uploaded_ms}{normalize_extension(ext)}"


def incoming_name(ext: str) -> str:
    stamp = int(time.time() * 1000)
    return f"{INCOMING_PREFIX}{stamp}-{secrets.token_hex(4)}{normalize_extension(ext)}"


def merge_tmp_name(date: str, ext: str = ".m4a") -> str:
    return f"{MERGE_TMP_PREFIX}{date}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext}"


def file_url(dir_key: str, name: str) -> str:
    return f"{URL_PREFIX}/{dir_key}/{name}"


_KNOWN_EXTENSIONS = {".webm", ".ogg", ".opus", ".m4a", ".mp4", ".wav", ".mp3", ".aac", ".mka"}

_MIME_EXTENSIONS = (
    ("audio/mp4", ".mp4"),
    ("audio/m4a", ".m4a"),
    ("audio/x-m4a", ".m4a"),
    ("audio/ogg", ".ogg"),
    ("audio/webm", ".webm"),
    ("audio/wav", ".wav"),
    ("audio/mpeg", ".mp3"),
)


def normalize_extension(ext: str | None) -> str:
    value = (ext or "").strip().lower()
    if value and not value.startswith("."):
        value = f".{value}"
    return value if value in _KNOWN_EXTENSIONS else ".webm"


def extension_for_upload(filename: str | None, content_type: str | None) -> str:
    """Pick a file extension from the declared MIME type, then the file name."""

    mime = (content_type or "").lower()
    for prefix, ext in _MIME_EXTENSIONS:
        if mime.startswith(prefix):
            return ext
    suffix = Path(filename or "").suffix
    return normalize_extension(suffix)


__all__ = [
    "AudioDirectoryRegistry",
    "audio_base_dir",
    "derive_dir_key",
    "extension_for_upload",
    "fallback_name",
    "file_url",
    "incoming_name",
    "is_safe_component",
    "master_name",
    "merge_tmp_name",
    "normalize_extension",
]
