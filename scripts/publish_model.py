#!/usr/bin/env python3
import argparse
import json

from backend.app.config import settings
from backend.app.db import connect, init_db
from backend.app.logging_setup import setup_logging
from backend.recommender.registry import PromotionError, publish_model


def main():
    ap = argparse.ArgumentParser(description="Load a trained model into the store")
    ap.add_argument("--model", required=True, help="Dir with model.json + neighbors.json (+ metrics.json)")
    ap.add_argument("--set-current", action="store_true", help="Also repoint current_model_version")
    args = ap.parse_args()

    setup_logging(settings.log_level)

    conn = connect()
    init_db(conn)
    try:
        result = publish_model(conn, args.model, set_current=args.set_current)
    except PromotionError as exc:
        raise SystemExit(str(exc))
    finally:
        conn.close()

    print(json.dumps({"ok": True, **result}, indent=2))


if __name__ == "__main__":
    main()
