#!/usr/bin/env python3
import argparse

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.recommender.data_quality import check_snapshot_events
from backend.recommender.errors import ValidationError


def main():
    ap = argparse.ArgumentParser(description="Run the data-quality gate on a snapshot")
    ap.add_argument("--snapshot", required=True)
    args = ap.parse_args()

    setup_logging(settings.log_level)

    try:
        check_snapshot_events(args.snapshot)
    except ValidationError as exc:
        print(str(exc))
        raise SystemExit(1)
    print("Data-quality gate passed.")


if __name__ == "__main__":
    main()
