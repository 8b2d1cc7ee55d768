#!/usr/bin/env python3
import argparse
import json
from datetime import date

from backend.app.db import connect, init_db
from backend.recommender.snapshot import export_snapshot


def main():
    ap = argparse.ArgumentParser(description="Export swipes/impressions/catalog into a snapshot dir")
    ap.add_argument("--snapshot", default=date.today().isoformat(), help="Snapshot id (default: today)")
    ap.add_argument("--out", default="artifacts/ml/snapshots")
    args = ap.parse_args()

    conn = connect()
    init_db(conn)
    manifest = export_snapshot(conn, args.out, args.snapshot)
    conn.close()

    print(json.dumps({"ok": True, "manifest": manifest}, indent=2))


if __name__ == "__main__":
    main()
