#!/usr/bin/env python3
"""aiohttp application exposing segment upload, retrieval, and admin controls."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

from shiftrec import events
from shiftrec.audio_paths import AudioDirectoryRegistry, file_url, is_safe_component
from shiftrec.config import reload_cfg, section
from shiftrec.errors import Forbidden, MergeFailed, PipelineError, UploadRejected
from shiftrec.ingress import (
    ROLE_ADMIN,
    ROLE_SERVICE,
    Authenticator,
    UploadIngress,
    auth_middleware,
    require_admin,
    require_identity,
)
from shiftrec.locks import KeyedLockRegistry
from shiftrec.media_types import content_type_for
from shiftrec.merge import DailyMergeEngine
from shiftrec.models import (
    AttendanceRef,
    Failed,
    FallbackStored,
    Merged,
    RecordingSession,
    UserRecord,
    day_key,
    utcnow,
)
from shiftrec.retention import RetentionEnforcer
from shiftrec.sessions import SessionStateTracker
from shiftrec.storage import (
    AttendanceDirectory,
    DeviceBindingStore,
    JsonRecordingStore,
    MemoryAttendanceDirectory,
    MemoryDeviceBindingStore,
    MemoryRecordingStore,
    MemorySessionDirectory,
    MemoryUserDirectory,
    RecordingStore,
    SessionDirectory,
    UserDirectory,
)
from shiftrec.transcoder import Transcoder

LOGGER = logging.getLogger("shiftrec.web")

EVENT_STREAM_HEARTBEAT_SECONDS = 20.0
EVENT_STREAM_RETRY_MILLIS = 5000

STORE_KEY: AppKey[RecordingStore] = web.AppKey("recording_store", RecordingStore)
USERS_KEY: AppKey[UserDirectory] = web.AppKey("user_directory", UserDirectory)
ATTENDANCE_KEY: AppKey[AttendanceDirectory] = web.AppKey(
    "attendance_directory", AttendanceDirectory
)
DIRECTORIES_KEY: AppKey[AudioDirectoryRegistry] = web.AppKey(
    "audio_directories", AudioDirectoryRegistry
)
AUTH_KEY: AppKey[Authenticator] = web.AppKey("authenticator", Authenticator)
INGRESS_KEY: AppKey[UploadIngress] = web.AppKey("upload_ingress", UploadIngress)
TRACKER_KEY: AppKey[SessionStateTracker] = web.AppKey("session_tracker", SessionStateTracker)
ENGINE_KEY: AppKey[DailyMergeEngine] = web.AppKey("merge_engine", DailyMergeEngine)
RETENTION_KEY: AppKey[RetentionEnforcer] = web.AppKey("retention", RetentionEnforcer)
EVENT_BUS_KEY: AppKey[events.RecordingEventBus] = web.AppKey(
    "event_bus", events.RecordingEventBus
)


def recording_payload(record: RecordingSession) -> dict[str, Any]:
    payload = record.to_payload()
    key = record.dir_key
    payload["fallbackUrls"] = [file_url(key, name) for name in record.fallback_files] if key else []
    return payload


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except PipelineError as exc:
        if exc.status >= 500:
            LOGGER.error(
                "%s %s failed: %s (%s)", request.method, request.path, exc.message, exc.detail
            )
        else:
            LOGGER.info("%s %s rejected: %s", request.method, request.path, exc.message)
        return web.json_response({"message": exc.message}, status=exc.status)
    except web.HTTPException:
        raise
    except asyncio.CancelledError:
        raise
    except Exception:
        LOGGER.exception("Unhandled error for %s %s", request.method, request.path)
        return web.json_response({"message": "Internal server error"}, status=500)


def _parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise UploadRejected("Invalid timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise UploadRejected("Invalid timestamp") from exc
    if parsed.tzinfo is None:
        raise UploadRejected("Timestamp must include a timezone")
    return parsed


def build_app(
    *,
    store: RecordingStore | None = None,
    users: UserDirectory | None = None,
    attendance: AttendanceDirectory | None = None,
    sessions: SessionDirectory | None = None,
    devices: DeviceBindingStore | None = None,
    transcoder: Transcoder | None = None,
    audio_root: Path | None = None,
    sweep_interval: float | None = None,
) -> web.Application:
    """Wire the pipeline from config, with any collaborator overridable."""

    store = store if store is not None else MemoryRecordingStore()
    users = users if users is not None else MemoryUserDirectory()
    attendance = attendance if attendance is not None else MemoryAttendanceDirectory()
    sessions = sessions if sessions is not None else MemorySessionDirectory()
    devices = devices if devices is not None else MemoryDeviceBindingStore()
    transcoder = transcoder if transcoder is not None else Transcoder.from_config()
    if sweep_interval is None:
        sweep_interval = float(section("retention").get("sweep_interval_sec", 3600.0))

    locks = KeyedLockRegistry()
    directories = AudioDirectoryRegistry(store, audio_root)
    authenticator = Authenticator.from_config(sessions=sessions, users=users, devices=devices)
    ingress = UploadIngress(users=users, attendance=attendance, directories=directories)
    tracker = SessionStateTracker(store, locks)
    retention = RetentionEnforcer(store, directories, locks)
    engine = DailyMergeEngine(store, transcoder, tracker, locks, retention=retention)

    app = web.Application(
        middlewares=[error_middleware, auth_middleware(authenticator, public_paths=("/healthz",))],
        client_max_size=ingress.max_bytes + 1024 * 1024,
    )
    app[STORE_KEY] = store
    app[USERS_KEY] = users
    app[ATTENDANCE_KEY] = attendance
    app[DIRECTORIES_KEY] = directories
    app[AUTH_KEY] = authenticator
    app[INGRESS_KEY] = ingress
    app[TRACKER_KEY] = tracker
    app[ENGINE_KEY] = engine
    app[RETENTION_KEY] = retention

    event_bus = events.RecordingEventBus()
    app[EVENT_BUS_KEY] = event_bus

    async def _install_event_bus(_: web.Application) -> None:
        events.install_event_bus(event_bus)

    async def _close_event_streams(_: web.Application) -> None:
        event_bus.close()

    async def _flush_store(_: web.Application) -> None:
        await asyncio.to_thread(store.flush)

    async def _uninstall_event_bus(_: web.Application) -> None:
        events.uninstall_event_bus(event_bus)

    sweep_tasks: list[asyncio.Task] = []

    async def _start_retention_sweep(_: web.Application) -> None:
        if sweep_interval > 0:
            sweep_tasks.append(asyncio.create_task(retention.run_sweeps(sweep_interval)))

    async def _stop_retention_sweep(_: web.Application) -> None:
        while sweep_tasks:
            task = sweep_tasks.pop()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app.on_startup.append(_install_event_bus)
    app.on_startup.append(_start_retention_sweep)
    app.on_shutdown.append(_close_event_streams)
    app.on_cleanup.append(_stop_retention_sweep)
    app.on_cleanup.append(_uninstall_event_bus)
    app.on_cleanup.append(_flush_store)

    async def upload_segment(request: web.Request) -> web.Response:
        segment = await ingress.receive(request)
        outcome = await engine.ingest(segment)
        if isinstance(outcome, Merged):
            return web.json_response(
                {
                    "message": "Audio segment merged",
                    "recording": recording_payload(outcome.record),
                }
            )
        if isinstance(outcome, FallbackStored):
            return web.json_response(
                {
                    "message": "Audio segment stored without merge",
                    "recording": recording_payload(outcome.record),
                    "fileUrl": file_url(segment.dir_key, outcome.file_name),
                }
            )
        if isinstance(outcome, Failed):
            raise outcome.error
        raise MergeFailed(detail=f"unexpected merge outcome {type(outcome).__name__}")

    async def serve_audio(request: web.Request) -> web.StreamResponse:
        identity = require_identity(request)
        dir_key = request.match_info["dir_key"]
        filename = request.match_info["filename"]
        if not is_safe_component(dir_key) or not is_safe_component(filename):
            raise web.HTTPNotFound()
        if not identity.is_admin and store.get_dir_key(identity.subject_id) != dir_key:
            raise Forbidden("Not allowed to access this recording")

        path = directories.directory_for_key(dir_key) / filename
        if not await asyncio.to_thread(path.is_file):
            raise web.HTTPNotFound()

        return web.FileResponse(
            path,
            headers={
                "Accept-Ranges": "bytes",
                "Cache-Control": "no-cache",
                "Content-Type": content_type_for(path),
            },
        )

    async def admin_recordings(request: web.Request) -> web.Response:
        require_admin(request)
        await retention.purge_expired()
        return web.json_response(
            {"recordings": [recording_payload(record) for record in store.list_all()]}
        )

    async def admin_active(request: web.Request) -> web.Response:
        require_admin(request)
        return web.json_response(
            {"recordings": [recording_payload(record) for record in store.list_active()]}
        )

    async def admin_stop(request: web.Request) -> web.Response:
        require_admin(request)
        record = await tracker.admin_stop(request.match_info["recording_id"])
        return web.json_response(
            {"message": "Recording stopped", "recording": recording_payload(record)}
        )

    async def admin_cleanup(request: web.Request) -> web.Response:
        require_admin(request)
        removed = await retention.purge_expired()
        return web.json_response(
            {"message": f"Removed {len(removed)} expired recording(s)", "removed": removed}
        )

    async def admin_delete(request: web.Request) -> web.Response:
        require_admin(request)
        record = await retention.delete_recording(request.match_info["recording_id"])
        return web.json_response({"message": "Recording deleted", "id": record.id})

    async def attendance_event(request: web.Request) -> web.Response:
        require_identity(request, roles=(ROLE_ADMIN, ROLE_SERVICE))
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UploadRejected("Invalid JSON body") from exc
        if not isinstance(data, dict):
            raise UploadRejected("Invalid JSON body")

        kind = data.get("type")
        user_id = data.get("userId")
        if kind not in ("check_in", "check_out") or not isinstance(user_id, str) or not user_id:
            raise UploadRejected("type must be check_in or check_out with a userId")
        attendance_id = data.get("attendanceId")
        attendance_id = str(attendance_id) if attendance_id else None
        at = _parse_timestamp(data.get("at")) or utcnow()

        user_info = data.get("user")
        if isinstance(user_info, dict) and user_info.get("username"):
            users.remember(
                UserRecord(
                    id=user_id,
                    username=str(user_info["username"]),
                    role=str(user_info.get("role") or "employee"),
                    employee_id=user_info.get("employeeId"),
                )
            )

        if kind == "check_in":
            attendance.note_check_in(
                AttendanceRef(
                    id=attendance_id or f"{user_id}:{day_key(at)}",
                    user_id=user_id,
                    date=day_key(at),
                    check_in_time=at,
                )
            )
            record = await tracker.check_in(user_id, attendance_id, at=at)
        else:
            attendance.note_check_out(user_id, day_key(at), at)
            record = await tracker.check_out(user_id, attendance_id, at=at)
        return web.json_response(
            {"recording": recording_payload(record) if record is not None else None}
        )

    async def events_stream(request: web.Request) -> web.StreamResponse:
        require_admin(request)
        last_event_id = request.headers.get("Last-Event-ID") or request.query.get(
            "last_event_id", ""
        )
        queue = await event_bus.subscribe(last_event_id=last_event_id)
        response = web.StreamResponse(
            status=200,
            headers={
                "Cache-Control": "no-store",
                "Content-Type": "text/event-stream",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        await response.prepare(request)
        heartbeat = b"event: heartbeat\ndata: {}\n\n"
        try:
            await response.write(f"retry: {EVENT_STREAM_RETRY_MILLIS}\n\n".encode("utf-8"))
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=EVENT_STREAM_HEARTBEAT_SECONDS
                    )
                except asyncio.TimeoutError:
                    await response.write(heartbeat)
                    continue
                if event is None:
                    break
                data_text = json.dumps(event["payload"], separators=(",", ":"), default=str)
                chunk = f"id: {event['id']}\nevent: {event['type']}\ndata: {data_text}\n\n"
                await response.write(chunk.encode("utf-8"))
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError):
            LOGGER.debug("Event stream client disconnected")
        finally:
            event_bus.unsubscribe(queue)
        return response

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_post("/api/audio/upload", upload_segment)
    app.router.add_get("/uploads/audio/{dir_key}/{filename}", serve_audio)
    app.router.add_get("/api/admin/audio/recordings", admin_recordings)
    app.router.add_get("/api/admin/audio/active", admin_active)
    app.router.add_get("/api/admin/audio/events", events_stream)
    app.router.add_post("/api/admin/audio/stop/{recording_id}", admin_stop)
    app.router.add_delete("/api/admin/audio/cleanup", admin_cleanup)
    app.router.add_delete("/api/admin/audio/{recording_id}", admin_delete)
    app.router.add_post("/api/attendance/events", attendance_event)
    app.router.add_get("/healthz", healthz)
    return app


def configure_logging(log_level: str | None = None) -> None:
    dev_mode = bool(section("logging").get("dev_mode"))
    level_name = "DEBUG" if dev_mode else (log_level or "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Shift recorder upload and merge server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    reload_cfg()
    configure_logging(args.log_level)
    server_cfg = section("web_server")
    bind_host = args.host or str(server_cfg.get("listen_host", "0.0.0.0"))
    bind_port = args.port or int(server_cfg.get("listen_port", 8080))

    store = JsonRecordingStore(section("paths").get("store_file") or "./uploads/recordings.json")
    app = build_app(store=store)
    LOGGER.info(
        "Starting shift recorder server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )
    started = time.monotonic()
    web.run_app(
        app,
        host=bind_host,
        port=bind_port,
        access_log=LOGGER if args.access_log else None,
        print=None,
    )
    LOGGER.info("Server stopped after %.0fs", time.monotonic() - started)
    return 0


__all__ = ["build_app", "cli_main", "configure_logging", "error_middleware", "recording_payload"]


if __name__ == "__main__":
    raise SystemExit(cli_main())
