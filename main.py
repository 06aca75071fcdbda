#!/usr/bin/env python3
"""
Development launcher for the shift recorder server.

- Seeds an in-memory admin and employee with an open attendance for today
- Prints bearer tokens for both so uploads can be tried with curl or the recorder
- Serves on LISTEN_HOST/LISTEN_PORT (config defaults); Ctrl-C exits cleanly
"""

import logging
import sys

from aiohttp import web

from shiftrec.config import reload_cfg, section
from shiftrec.ingress import SESSION_COOKIE
from shiftrec.models import AttendanceRef, UserRecord, day_key, utcnow
from shiftrec.storage import (
    JsonRecordingStore,
    MemoryAttendanceDirectory,
    MemorySessionDirectory,
    MemoryUserDirectory,
)
from shiftrec.web_server import AUTH_KEY, build_app, configure_logging

DEV_ADMIN = UserRecord(id="dev-admin", username="admin", role="admin")
DEV_EMPLOYEE = UserRecord(id="dev-employee", username="jane.doe", employee_id="E100")


def _seed_directories():
    users = MemoryUserDirectory([DEV_ADMIN, DEV_EMPLOYEE])
    attendance = MemoryAttendanceDirectory()
    now = utcnow()
    attendance.note_check_in(
        AttendanceRef(
            id="dev-attendance",
            user_id=DEV_EMPLOYEE.id,
            date=day_key(now),
            check_in_time=now,
        )
    )
    sessions = MemorySessionDirectory({"dev-admin-session": DEV_ADMIN.id})
    return users, attendance, sessions


def main():
    reload_cfg()
    configure_logging("DEBUG")
    users, attendance, sessions = _seed_directories()
    store = JsonRecordingStore(section("paths").get("store_file") or "./uploads/recordings.json")
    app = build_app(store=store, users=users, attendance=attendance, sessions=sessions)

    auth = app[AUTH_KEY]
    server_cfg = section("web_server")
    host = str(server_cfg.get("listen_host", "0.0.0.0"))
    port = int(server_cfg.get("listen_port", 8080))
    print(f"[dev] employee token: {auth.issue_upload_token(DEV_EMPLOYEE.id, 'employee')}")
    print(f"[dev] admin token:    {auth.issue_upload_token(DEV_ADMIN.id, 'admin')}")
    print(f"[dev] admin cookie:   {SESSION_COOKIE}=dev-admin-session")
    print(f"[dev] Serving on http://{host}:{port} (Ctrl-C to exit)")

    web.run_app(app, host=host, port=port, access_log=logging.getLogger("shiftrec.web"), print=None)
    print("[dev] Exiting dev mode")
    return 0


if __name__ == "__main__":
    sys.exit(main())
