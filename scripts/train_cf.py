#!/usr/bin/env python3
import argparse
import json
import logging

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.recommender.cf_trainer import TrainConfig, train_snapshot
from backend.recommender.errors import ValidationError


def main():
    ap = argparse.ArgumentParser(description="Train item-item CF neighbors from a snapshot")
    ap.add_argument("--snapshot", required=True, help="Snapshot dir (artifacts/ml/snapshots/<id>)")
    ap.add_argument("--out", required=True, help="Model output dir")
    ap.add_argument("--model-version", required=True)
    ap.add_argument("--k", type=int, default=30, help="Neighbors kept per movie")
    ap.add_argument("--min-co", type=int, default=2, help="Minimum co-like count for a pair")
    ap.add_argument("--shrink", type=float, default=10.0)
    ap.add_argument("--session-like-cap", type=int, default=30)
    args = ap.parse_args()

    setup_logging(settings.log_level)

    cfg = TrainConfig(
        k=args.k,
        min_co=args.min_co,
        shrink=args.shrink,
        session_like_cap=args.session_like_cap,
    )
    try:
        model = train_snapshot(args.snapshot, args.out, args.model_version, cfg)
    except ValidationError as exc:
        logging.getLogger("train_cf").error("%s", exc)
        raise SystemExit(1)

    print(json.dumps({"ok": True, "out_dir": args.out, "model": model}, indent=2))


if __name__ == "__main__":
    main()
