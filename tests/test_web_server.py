from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from pipeline_support import employee, open_attendance
from shiftrec.errors import MergeFailed
from shiftrec.ingress import DEVICE_HEADER, SESSION_COOKIE, Authenticator
from shiftrec.models import Failed, UserRecord, day_key, utcnow
from shiftrec.storage import (
    MemoryAttendanceDirectory,
    MemoryDeviceBindingStore,
    MemorySessionDirectory,
    MemoryUserDirectory,
)
from shiftrec.transcoder import Transcoder
from shiftrec.web_server import AUTH_KEY, ENGINE_KEY, STORE_KEY, build_app

ADMIN = UserRecord(id="u-admin", username="boss", role="admin")
EMPLOYEE = employee()
COLLEAGUE = employee("u-2002", username="bob", employee_id="E200")


def _build(audio_root: Path, fake_ffmpeg: Path | None, *, with_attendance: bool = True):
    users = MemoryUserDirectory([ADMIN, EMPLOYEE, COLLEAGUE])
    attendance = MemoryAttendanceDirectory()
    if with_attendance:
        attendance.note_check_in(open_attendance(EMPLOYEE.id))
        attendance.note_check_in(open_attendance(COLLEAGUE.id))
    sessions = MemorySessionDirectory(
        {"admin-cookie": ADMIN.id, "employee-cookie": EMPLOYEE.id}
    )
    return build_app(
        users=users,
        attendance=attendance,
        sessions=sessions,
        transcoder=Transcoder(str(fake_ffmpeg) if fake_ffmpeg else None),
        audio_root=audio_root,
        sweep_interval=0,
    )


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


def _bearer(app: web.Application, user: UserRecord, device_id: str | None = None) -> dict:
    token = app[AUTH_KEY].issue_upload_token(user.id, user.role, device_id)
    return {"Authorization": f"Bearer {token}"}


def _cookie(value: str) -> dict:
    return {"Cookie": f"{SESSION_COOKIE}={value}"}


def _segment_form(payload: bytes, duration: str | None = "60") -> aiohttp.FormData:
    form = aiohttp.FormData()
    form.add_field("audio", payload, filename="segment.ogg", content_type="audio/ogg")
    if duration is not None:
        form.add_field("duration", duration)
    return form


def test_upload_merges_and_serves_daily_file(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            headers = _bearer(app, EMPLOYEE)
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=headers
            )
            assert resp.status == 200
            body = await resp.json()
            assert body["message"] == "Audio segment merged"

            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"BBBB", "30.5"), headers=headers
            )
            recording = (await resp.json())["recording"]
            assert recording["segmentCount"] == 2
            assert recording["duration"] == 90.5
            assert recording["fileUrl"] == (
                f"/uploads/audio/jane.doe-e100/daily-{day_key(utcnow())}.m4a"
            )

            resp = await client.get(recording["fileUrl"], headers=headers)
            assert resp.status == 200
            assert await resp.read() == b"AAAABBBB"
            assert resp.headers["Content-Type"] == "audio/mp4"
            assert resp.headers["Accept-Ranges"] == "bytes"
            assert resp.headers["Cache-Control"] == "no-cache"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_upload_with_session_cookie(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            resp = await client.post(
                "/api/audio/upload",
                data=_segment_form(b"AAAA"),
                headers=_cookie("employee-cookie"),
            )
            assert resp.status == 200
            assert len(app[STORE_KEY].list_active()) == 1
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_upload_rejections(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            resp = await client.post("/api/audio/upload", data=_segment_form(b"AAAA"))
            assert resp.status == 401
            assert (await resp.json())["message"] == "Employee access required"

            resp = await client.post(
                "/api/audio/upload",
                data=_segment_form(b"AAAA"),
                headers={"Authorization": "Bearer not-a-token"},
            )
            assert resp.status == 401

            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=_bearer(app, ADMIN)
            )
            assert resp.status == 403

            form = aiohttp.FormData()
            form.add_field("duration", "60")
            form.add_field("note", "no audio here")
            resp = await client.post(
                "/api/audio/upload", data=form, headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 400
            assert (await resp.json())["message"] == "No audio file provided"

            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b""), headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 400

            assert not [p for p in audio_root.rglob(".incoming-*")]
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_upload_without_attendance(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg, with_attendance=False)
        client, server = await _start_client(app)
        try:
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 400
            assert (await resp.json())["message"] == "No attendance record found"
            assert app[STORE_KEY].list_all() == []
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_device_lock_binds_first_device(audio_root, fake_ffmpeg, monkeypatch):
    monkeypatch.setenv("DEVICE_LOCK", "1")

    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            resp = await client.post(
                "/api/audio/upload",
                data=_segment_form(b"AAAA"),
                headers=_bearer(app, EMPLOYEE, "laptop-1"),
            )
            assert resp.status == 200

            resp = await client.post(
                "/api/audio/upload",
                data=_segment_form(b"BBBB"),
                headers=_bearer(app, EMPLOYEE, "laptop-2"),
            )
            assert resp.status == 403
            assert (await resp.json())["message"] == "Account linked to a different device"

            headers = {**_cookie("employee-cookie"), DEVICE_HEADER: "laptop-2"}
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"CCCC"), headers=headers
            )
            assert resp.status == 403
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_transcode_failure_returns_fallback_url(audio_root, fake_ffmpeg, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")

    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            headers = _bearer(app, EMPLOYEE)
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"RAWSEGMENT"), headers=headers
            )
            assert resp.status == 200
            body = await resp.json()
            assert body["message"] == "Audio segment stored without merge"
            assert body["recording"]["fallbackUrls"] == [body["fileUrl"]]

            resp = await client.get(body["fileUrl"], headers=headers)
            assert resp.status == 200
            assert await resp.read() == b"RAWSEGMENT"
            assert resp.headers["Content-Type"] == "audio/ogg"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_byte_range_requests(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            headers = _bearer(app, EMPLOYEE)
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"0123456789"), headers=headers
            )
            url = (await resp.json())["recording"]["fileUrl"]

            resp = await client.get(url, headers={**headers, "Range": "bytes=2-5"})
            assert resp.status == 206
            assert await resp.read() == b"2345"
            assert resp.headers["Content-Range"] == "bytes 2-5/10"
            assert resp.headers["Content-Length"] == "4"

            resp = await client.get(url, headers={**headers, "Range": "bytes=-3"})
            assert resp.status == 206
            assert await resp.read() == b"789"

            resp = await client.get(url, headers={**headers, "Range": "bytes=20-"})
            assert resp.status == 416
            assert resp.headers["Content-Range"] == "bytes */10"

            resp = await client.get(url, headers={**headers, "Range": "bytes=0-1,5-9"})
            assert resp.status == 416

            resp = await client.head(url, headers=headers)
            assert resp.status == 200
            assert resp.headers["Accept-Ranges"] == "bytes"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_retrieval_access_rules(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=_bearer(app, EMPLOYEE)
            )
            url = (await resp.json())["recording"]["fileUrl"]

            resp = await client.get(url)
            assert resp.status == 401

            resp = await client.get(url, headers=_bearer(app, COLLEAGUE))
            assert resp.status == 403

            resp = await client.get(url, headers=_cookie("admin-cookie"))
            assert resp.status == 200

            resp = await client.get(
                "/uploads/audio/jane.doe-e100/missing.m4a", headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 404

            resp = await client.get(
                "/uploads/audio/jane.doe-e100/.incoming-1.webm", headers=_bearer(app, ADMIN)
            )
            assert resp.status == 404
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_admin_endpoints(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            employee_headers = _bearer(app, EMPLOYEE)
            admin_headers = _cookie("admin-cookie")
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=employee_headers
            )
            recording_id = (await resp.json())["recording"]["id"]

            resp = await client.get("/api/admin/audio/recordings", headers=employee_headers)
            assert resp.status == 403
            assert (await resp.json())["message"] == "Admin access required"

            resp = await client.get("/api/admin/audio/recordings", headers=admin_headers)
            listed = (await resp.json())["recordings"]
            assert [item["id"] for item in listed] == [recording_id]

            resp = await client.get("/api/admin/audio/active", headers=admin_headers)
            assert len((await resp.json())["recordings"]) == 1

            resp = await client.post(
                f"/api/admin/audio/stop/{recording_id}", headers=admin_headers
            )
            assert resp.status == 200
            assert (await resp.json())["recording"]["isActive"] is False

            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"BBBB"), headers=employee_headers
            )
            assert resp.status == 400

            resp = await client.get("/api/admin/audio/active", headers=admin_headers)
            assert (await resp.json())["recordings"] == []

            resp = await client.delete("/api/admin/audio/cleanup", headers=admin_headers)
            assert (await resp.json())["removed"] == []

            resp = await client.delete(f"/api/admin/audio/{recording_id}", headers=admin_headers)
            assert resp.status == 200
            assert (await resp.json())["id"] == recording_id
            assert not (audio_root / "jane.doe-e100").exists()

            resp = await client.delete(f"/api/admin/audio/{recording_id}", headers=admin_headers)
            assert resp.status == 404

            resp = await client.post("/api/admin/audio/stop/unknown", headers=admin_headers)
            assert resp.status == 404
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_attendance_events_drive_sessions(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg, with_attendance=False)
        client, server = await _start_client(app)
        service = UserRecord(id="svc-attendance", username="attendance", role="service")
        newcomer = UserRecord(id="u-3003", username="carol", employee_id="E300")
        try:
            event = {
                "type": "check_in",
                "userId": newcomer.id,
                "attendanceId": "att-3003",
                "user": {"username": "carol", "role": "employee", "employeeId": "E300"},
            }
            resp = await client.post(
                "/api/attendance/events", json=event, headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 403

            resp = await client.post(
                "/api/attendance/events", json=event, headers=_bearer(app, service)
            )
            assert resp.status == 200
            recording = (await resp.json())["recording"]
            assert recording["isActive"] is True
            assert recording["attendanceId"] == "att-3003"

            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"CCCC"), headers=_bearer(app, newcomer)
            )
            assert resp.status == 200
            assert (await resp.json())["recording"]["id"] == recording["id"]

            resp = await client.post(
                "/api/attendance/events",
                json={"type": "check_out", "userId": newcomer.id, "attendanceId": "att-3003"},
                headers=_bearer(app, service),
            )
            stopped = (await resp.json())["recording"]
            assert stopped["isActive"] is False
            assert stopped["stopReason"] == "check_out"

            resp = await client.post(
                "/api/attendance/events",
                json={"type": "lunch", "userId": newcomer.id},
                headers=_bearer(app, service),
            )
            assert resp.status == 400

            resp = await client.post(
                "/api/attendance/events",
                json={"type": "check_in", "userId": newcomer.id, "at": "2024-03-04T09:00:00"},
                headers=_bearer(app, service),
            )
            assert resp.status == 400
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_event_stream_delivers_lifecycle_events(audio_root, fake_ffmpeg):
    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        try:
            resp = await client.get("/api/admin/audio/events", headers=_bearer(app, EMPLOYEE))
            assert resp.status == 403

            stream = await client.get("/api/admin/audio/events", headers=_cookie("admin-cookie"))
            assert stream.status == 200
            assert stream.headers["Content-Type"].startswith("text/event-stream")

            upload = await client.post(
                "/api/audio/upload", data=_segment_form(b"AAAA"), headers=_bearer(app, EMPLOYEE)
            )
            assert upload.status == 200

            seen: list[str] = []

            async def read_events():
                while "event: recording_merged" not in seen:
                    line = await stream.content.readline()
                    seen.append(line.decode("utf-8").strip())

            await asyncio.wait_for(read_events(), timeout=5)
            assert "retry: 5000" in seen
            assert seen.index("event: audio_start") < seen.index("event: recording_merged")
            stream.close()
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_healthz_is_public(audio_root):
    async def runner():
        app = _build(audio_root, None)
        client, server = await _start_client(app)
        try:
            resp = await client.get("/healthz", headers={"Authorization": "Bearer garbage"})
            assert resp.status == 200
            assert await resp.text() == "ok"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_upload_reports_failed_and_unknown_merge_outcomes(audio_root, fake_ffmpeg, monkeypatch):
    outcomes = [Failed(MergeFailed("Failed to merge audio segment")), object()]

    async def fake_ingest(segment):
        return outcomes.pop(0)

    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        monkeypatch.setattr(app[ENGINE_KEY], "ingest", fake_ingest)
        client, server = await _start_client(app)
        try:
            headers = _bearer(app, EMPLOYEE)
            for _ in range(2):
                resp = await client.post(
                    "/api/audio/upload", data=_segment_form(b"AAAA"), headers=headers
                )
                assert resp.status == 500
                assert (await resp.json()) == {"message": "Failed to merge audio segment"}
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())
    assert outcomes == []


def test_upload_bytes_are_written_off_the_event_loop(audio_root, fake_ffmpeg, monkeypatch):
    writer_threads: list[int] = []
    to_thread = asyncio.to_thread

    async def tracking_to_thread(func, *args, **kwargs):
        def run():
            if getattr(func, "__name__", "") == "write":
                writer_threads.append(threading.get_ident())
            return func(*args, **kwargs)

        return await to_thread(run)

    async def runner():
        app = _build(audio_root, fake_ffmpeg)
        client, server = await _start_client(app)
        monkeypatch.setattr(asyncio, "to_thread", tracking_to_thread)
        try:
            resp = await client.post(
                "/api/audio/upload", data=_segment_form(b"A" * 4096), headers=_bearer(app, EMPLOYEE)
            )
            assert resp.status == 200
        finally:
            await client.close()
            await server.close()
        return threading.get_ident()

    loop_thread = asyncio.run(runner())
    assert writer_threads
    assert loop_thread not in writer_threads


def test_default_upload_secret_is_flagged(caplog):
    directories = {
        "sessions": MemorySessionDirectory(),
        "users": MemoryUserDirectory(),
        "devices": MemoryDeviceBindingStore(),
    }
    caplog.set_level(logging.WARNING, logger="shiftrec.ingress")

    Authenticator.from_config(**directories)
    assert "built-in default secret" in caplog.text

    caplog.clear()
    Authenticator.from_config(
        **directories, cfg={"jwt_secret": "deployment-secret-0123456789abcdef0123"}
    )
    assert "built-in default secret" not in caplog.text
