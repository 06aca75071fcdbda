"""Authentication middleware and buffering of uploaded audio segments."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

import jwt
from aiohttp import hdrs, web

from shiftrec import audio_paths
from shiftrec.config import DEFAULT_JWT_SECRET, section
from shiftrec.errors import (
    AuthRequired,
    DeviceMismatch,
    Forbidden,
    NoActiveAttendance,
    UploadRejected,
)
from shiftrec.models import Identity, IncomingSegment, UserRecord, day_key, utcnow
from shiftrec.storage import (
    AttendanceDirectory,
    DeviceBindingStore,
    SessionDirectory,
    UserDirectory,
)

LOGGER = logging.getLogger("shiftrec.ingress")

SESSION_COOKIE = "shiftrec_session"
DEVICE_HEADER = "X-Device-Id"
IDENTITY_KEY = "identity"
AUDIO_DIR_KEY = "audio_dir"
CHUNK_SIZE = 64 * 1024

ROLE_EMPLOYEE = "employee"
ROLE_ADMIN = "admin"
ROLE_SERVICE = "service"


class Authenticator:
    """Turns a cookie session or bearer token into an immutable ``Identity``."""

    def __init__(
        self,
        *,
        sessions: SessionDirectory,
        users: UserDirectory,
        devices: DeviceBindingStore,
        secret: str,
        algorithm: str = "HS256",
        token_ttl_days: int = 180,
        device_lock: bool = False,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.devices = devices
        self.secret = secret
        self.algorithm = algorithm
        self.token_ttl = timedelta(days=int(token_ttl_days))
        self.device_lock = bool(device_lock)

    @classmethod
    def from_config(
        cls,
        *,
        sessions: SessionDirectory,
        users: UserDirectory,
        devices: DeviceBindingStore,
        cfg: dict[str, Any] | None = None,
    ) -> "Authenticator":
        cfg = cfg if cfg is not None else section("auth")
        secret = str(cfg.get("jwt_secret") or "")
        if secret == DEFAULT_JWT_SECRET:
            LOGGER.warning(
                "Upload tokens are signed with the built-in default secret; "
                "set JWT_SECRET or auth.jwt_secret before exposing this server"
            )
        return cls(
            sessions=sessions,
            users=users,
            devices=devices,
            secret=secret,
            algorithm=str(cfg.get("jwt_algorithm") or "HS256"),
            token_ttl_days=int(cfg.get("token_ttl_days", 180)),
            device_lock=bool(cfg.get("device_lock", False)),
        )

    def issue_upload_token(
        self, user_id: str, role: str = ROLE_EMPLOYEE, device_id: str | None = None
    ) -> str:
        now = utcnow()
        claims: dict[str, Any] = {
            "sub": user_id,
            "role": role,
            "iat": now,
            "exp": now + self.token_ttl,
        }
        if device_id:
            claims["did"] = device_id
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def resolve(self, request: web.Request) -> Identity | None:
        header_device = (request.headers.get(DEVICE_HEADER) or "").strip() or None
        authorization = request.headers.get(hdrs.AUTHORIZATION, "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return self._from_bearer(token.strip(), header_device)

        cookie = request.cookies.get(SESSION_COOKIE)
        if cookie:
            user_id = self.sessions.lookup(cookie)
            user = self.users.get_user(user_id) if user_id else None
            if user is not None:
                self._check_device(user.id, None, header_device)
                return Identity(
                    subject_id=user.id,
                    role=user.role,
                    device_id=header_device,
                    source="session",
                )
        return None

    def _from_bearer(self, token: str, header_device: str | None) -> Identity:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as exc:
            LOGGER.info("Rejected bearer token: %s", exc)
            raise AuthRequired("Invalid or expired token") from exc
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthRequired("Invalid or expired token")
        token_device = claims.get("did") if isinstance(claims.get("did"), str) else None
        self._check_device(subject, token_device, header_device)
        return Identity(
            subject_id=subject,
            role=str(claims.get("role") or ROLE_EMPLOYEE),
            device_id=token_device or header_device,
            source="bearer",
        )

    def _check_device(
        self, user_id: str, token_device: str | None, header_device: str | None
    ) -> None:
        if not self.device_lock:
            return
        bound = self.devices.bound_device(user_id)
        if bound is None:
            presented = token_device or header_device
            if presented:
                self.devices.bind(user_id, presented)
                LOGGER.info("Bound user %s to device %s", user_id, presented)
            if token_device and header_device and token_device != header_device:
                raise DeviceMismatch()
            return
        if token_device and token_device != bound:
            raise DeviceMismatch()
        if header_device and header_device != bound:
            raise DeviceMismatch()


def auth_middleware(authenticator: Authenticator, public_paths: Iterable[str] = ()):
    public = frozenset(public_paths)

    @web.middleware
    async def _auth(request: web.Request, handler):
        if request.path in public:
            request[IDENTITY_KEY] = None
        else:
            request[IDENTITY_KEY] = authenticator.resolve(request)
        return await handler(request)

    return _auth


def require_identity(request: web.Request, roles: Iterable[str] | None = None) -> Identity:
    identity = request.get(IDENTITY_KEY)
    if not isinstance(identity, Identity):
        raise AuthRequired()
    if roles is not None and identity.role not in set(roles):
        raise Forbidden("Insufficient role for this operation")
    return identity


def require_admin(request: web.Request) -> Identity:
    identity = request.get(IDENTITY_KEY)
    if not isinstance(identity, Identity):
        raise AuthRequired("Authentication required")
    if not identity.is_admin:
        raise Forbidden()
    return identity


class UploadIngress:
    """Authenticates the uploader and buffers the segment into their directory."""

    def __init__(
        self,
        *,
        users: UserDirectory,
        attendance: AttendanceDirectory,
        directories: audio_paths.AudioDirectoryRegistry,
        max_bytes: int | None = None,
    ) -> None:
        self.users = users
        self.attendance = attendance
        self.directories = directories
        if max_bytes is None:
            max_bytes = int(section("upload").get("max_bytes", 200 * 1024 * 1024))
        self.max_bytes = int(max_bytes)

    async def resolve_audio_dir(self, request: web.Request, user: UserRecord) -> tuple[str, Path]:
        """Resolve and create the user's directory once per request."""

        cached = request.get(AUDIO_DIR_KEY)
        if cached is not None:
            return cached
        resolved = await asyncio.to_thread(self.directories.ensure_directory, user)
        request[AUDIO_DIR_KEY] = resolved
        return resolved

    async def receive(self, request: web.Request) -> IncomingSegment:
        identity = require_identity(request)
        if identity.role != ROLE_EMPLOYEE:
            raise Forbidden("Employee access required")
        user = self.users.get_user(identity.subject_id)
        if user is None:
            raise AuthRequired()

        received_at = utcnow()
        attendance = self.attendance.attendance_for_day(user.id, day_key(received_at))
        if attendance is None:
            raise NoActiveAttendance()

        if not request.content_type.startswith("multipart/"):
            raise UploadRejected()
        dir_key, directory = await self.resolve_audio_dir(request, user)

        raw_path: Path | None = None
        extension = ".webm"
        duration_hint: float | None = None
        try:
            reader = await request.multipart()
            while True:
                part = await reader.next()
                if part is None:
                    break
                if part.name == "audio" and raw_path is None:
                    extension = audio_paths.extension_for_upload(
                        part.filename, part.headers.get(hdrs.CONTENT_TYPE)
                    )
                    raw_path = directory / audio_paths.incoming_name(extension)
                    await self._buffer(part, raw_path)
                elif part.name == "duration":
                    duration_hint = _parse_duration(await part.text())
                else:
                    await part.release()
        except (UploadRejected, OSError, ValueError) as exc:
            if raw_path is not None:
                raw_path.unlink(missing_ok=True)
            if isinstance(exc, UploadRejected):
                raise
            raise UploadRejected("Invalid upload payload", detail=str(exc)) from exc

        if raw_path is None or not raw_path.exists() or raw_path.stat().st_size == 0:
            if raw_path is not None:
                raw_path.unlink(missing_ok=True)
            raise UploadRejected()

        LOGGER.debug(
            "Buffered %s for %s (%d bytes, hint=%s)",
            raw_path.name,
            dir_key,
            raw_path.stat().st_size,
            duration_hint,
        )
        return IncomingSegment(
            user_id=user.id,
            dir_key=dir_key,
            directory=directory,
            raw_path=raw_path,
            extension=extension,
            duration_hint=duration_hint,
            received_at=received_at,
            attendance=attendance,
        )

    async def _buffer(self, part, target: Path) -> None:
        written = 0
        with target.open("wb") as handle:
            while True:
                chunk = await part.read_chunk(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > self.max_bytes:
                    raise UploadRejected("Audio file too large")
                await asyncio.to_thread(handle.write, chunk)


def _parse_duration(text: str) -> float | None:
    try:
        value = float(text.strip())
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


__all__ = [
    "Authenticator",
    "IDENTITY_KEY",
    "SESSION_COOKIE",
    "UploadIngress",
    "auth_middleware",
    "require_admin",
    "require_identity",
]
