from __future__ import annotations

from pathlib import Path
from typing import Any, Dict
import json
import logging
import math
import sqlite3

from backend.app.db import transaction
from backend.recommender import store
from backend.recommender.cf_trainer import MODEL_FILE, NEIGHBORS_FILE
from backend.recommender.evaluator import METRICS_FILE
from backend.recommender.snapshot import read_json

logger = logging.getLogger(__name__)


class PromotionError(RuntimeError):
    pass


def publish_model(
    conn: sqlite3.Connection,
    model_dir: Path | str,
    set_current: bool = False,
    notes: str = "loaded_by_publish_model",
) -> Dict[str, Any]:
    """
    Load a trained model directory into the store.

    The version's neighbor rows are fully replaced (delete + insert in one
    transaction), never merged. Do not run two publishes of the same version
    at once. Promotion to current needs the evaluator's metrics.json next to
    the model.
    """
    model_dir = Path(model_dir)
    model = read_json(model_dir / MODEL_FILE)
    neighbors = read_json(model_dir / NEIGHBORS_FILE)

    metrics_path = model_dir / METRICS_FILE
    metrics = read_json(metrics_path) if metrics_path.exists() else None
    if set_current and metrics is None:
        raise PromotionError(
            f"refusing to promote {model['model_version']}: no {METRICS_FILE} in {model_dir}, run the evaluator first"
        )

    mv = str(model["model_version"])
    if metrics is not None and str(metrics.get("model_version", mv)) != mv:
        raise PromotionError(
            f"{METRICS_FILE} in {model_dir} is for {metrics['model_version']}, not {mv}"
        )

    rows = []
    skipped = 0
    for r in neighbors:
        score = float(r["score"])
        if not math.isfinite(score):
            skipped += 1
            continue
        rows.append((mv, str(r["movie_id"]), str(r["neighbor_movie_id"]), score))

    with transaction(conn):
        conn.execute(
            """
            INSERT OR REPLACE INTO model_versions(
              model_version, created_at_ms, snapshot_id, algo, params_json, metrics_json, notes
            ) VALUES (?,?,?,?,?,?,?)
            """,
            (
                mv,
                int(model["created_at_ms"]),
                str(model["snapshot_id"]),
                str(model["algo"]),
                json.dumps(model.get("params") or {}),
                json.dumps(metrics.get("eval", metrics)) if metrics else None,
                notes,
            ),
        )
        conn.execute("DELETE FROM cf_item_neighbors WHERE model_version = ?", (mv,))
        conn.executemany(
            """
            INSERT INTO cf_item_neighbors(model_version, movie_id, neighbor_movie_id, score)
            VALUES (?,?,?,?)
            """,
            rows,
        )

    if set_current:
        store.set_current_model_version(conn, mv)

    if skipped:
        logger.warning("skipped %d non-finite neighbor scores for %s", skipped, mv)
    logger.info("published %s (%d neighbor rows, current=%s)", mv, len(rows), set_current)
    return {"model_version": mv, "rows": len(rows), "set_current": set_current}
