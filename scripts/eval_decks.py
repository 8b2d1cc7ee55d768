#!/usr/bin/env python3
import argparse
import json
import logging

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.recommender.errors import EmptyInputError, ValidationError
from backend.recommender.evaluator import DEFAULT_K, evaluate_decks


def main():
    ap = argparse.ArgumentParser(description="NDCG/MAP of served decks per model version, labeled by swipes")
    ap.add_argument("--snapshot", required=True)
    ap.add_argument("--out", default="artifacts/eval")
    ap.add_argument("--k", type=int, default=DEFAULT_K)
    args = ap.parse_args()

    setup_logging(settings.log_level)

    try:
        report = evaluate_decks(args.snapshot, args.out, k=args.k)
    except (ValidationError, EmptyInputError) as exc:
        logging.getLogger("eval_decks").error("%s", exc)
        raise SystemExit(1)

    print(json.dumps({"ok": True, "out_dir": args.out, "models": report["models"], "coverage": report["coverage"]}, indent=2))


if __name__ == "__main__":
    main()
