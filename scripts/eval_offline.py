#!/usr/bin/env python3
import argparse
import json
import logging

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.recommender.errors import ValidationError
from backend.recommender.evaluator import DEFAULT_K, evaluate_model


def main():
    ap = argparse.ArgumentParser(description="Offline NDCG/MAP/Recall for a trained neighbor model")
    ap.add_argument("--snapshot", required=True)
    ap.add_argument("--model", required=True, help="Dir with model.json + neighbors.json")
    ap.add_argument("--out", default=None, help="Defaults to the model dir")
    ap.add_argument("--k", type=int, default=DEFAULT_K)
    args = ap.parse_args()

    setup_logging(settings.log_level)

    try:
        metrics = evaluate_model(args.snapshot, args.model, args.out, k=args.k)
    except ValidationError as exc:
        logging.getLogger("eval_offline").error("%s", exc)
        raise SystemExit(1)

    print(json.dumps({"ok": True, "out_dir": args.out or args.model, "metrics": metrics}, indent=2))


if __name__ == "__main__":
    main()
