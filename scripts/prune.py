#!/usr/bin/env python3
import json
import time

from backend.app.config import settings
from backend.app.db import connect, init_db
from backend.app.logging_setup import setup_logging
from backend.app.telemetry import run_retention


def main():
    setup_logging(settings.log_level)

    conn = connect()
    init_db(conn)
    pruned = run_retention(
        conn,
        now_ms=int(time.time() * 1000),
        request_log_days=settings.request_log_retention_days,
        swipe_days=settings.swipe_retention_days,
    )
    conn.close()
    print(json.dumps({"ok": True, "pruned": pruned}))


if __name__ == "__main__":
    main()
