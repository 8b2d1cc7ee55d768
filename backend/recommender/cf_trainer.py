from __future__ import annotations

from dataclasses import asdict, dataclass
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import logging
import math
import time

from backend.recommender.data_quality import check_snapshot_events
from backend.recommender.snapshot import build_like_sequences, load_manifest, load_swipes, write_json

logger = logging.getLogger(__name__)

ALGO = "item_item_cf_cosine_shrink"
MODEL_FILE = "model.json"
NEIGHBORS_FILE = "neighbors.json"


@dataclass
class TrainConfig:
    k: int = 30
    min_co: int = 2
    shrink: float = 10.0
    session_like_cap: int = 30


def sessions_per_movie(sequences: Mapping[str, Sequence[str]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for seq in sequences.values():
        for movie_id in seq:
            counts[movie_id] = counts.get(movie_id, 0) + 1
    return counts


def co_occurrence(sequences: Mapping[str, Sequence[str]], session_like_cap: int) -> Dict[str, Dict[str, int]]:
    """Symmetric pair counts over each session's first `session_like_cap` likes."""
    co: Dict[str, Dict[str, int]] = {}
    for seq in sequences.values():
        # cap keeps a single heavy session from costing O(n^2)
        for a, b in combinations(seq[:session_like_cap], 2):
            row_a = co.setdefault(a, {})
            row_a[b] = row_a.get(b, 0) + 1
            row_b = co.setdefault(b, {})
            row_b[a] = row_b.get(a, 0) + 1
    return co


def shrunk_cosine(co_count: int, n_a: int, n_b: int, shrink: float) -> float:
    cosine = co_count / math.sqrt(max(1, n_a) * max(1, n_b))
    return cosine * (co_count / (co_count + shrink))


def compute_neighbors(sequences: Mapping[str, Sequence[str]], cfg: TrainConfig) -> List[Dict[str, Any]]:
    """
    Item-item neighbors: cosine over session co-likes, shrunk toward zero for
    small co-counts, pairs under min_co dropped, top-k per item by score desc.
    """
    per_movie = sessions_per_movie(sequences)
    co = co_occurrence(sequences, cfg.session_like_cap)

    rows: List[Dict[str, Any]] = []
    for a, counts in sorted(co.items()):
        scored = []
        for b, c in counts.items():
            if c < cfg.min_co:
                continue
            scored.append((b, shrunk_cosine(c, per_movie.get(a, 1), per_movie.get(b, 1), cfg.shrink)))
        # score desc, then id so reruns produce identical files
        scored.sort(key=lambda x: (-x[1], x[0]))
        for b, s in scored[: cfg.k]:
            rows.append({"movie_id": a, "neighbor_movie_id": b, "score": s})
    return rows


def train_from_swipes(
    swipes: Sequence[Mapping[str, Any]],
    model_version: str,
    snapshot_id: str,
    cfg: TrainConfig,
    created_at_ms: int | None = None,
) -> tuple[Dict[str, Any], List[Dict[str, Any]]]:
    sequences = build_like_sequences(swipes)
    neighbors = compute_neighbors(sequences, cfg)

    model = {
        "model_version": model_version,
        "snapshot_id": snapshot_id,
        "algo": ALGO,
        "created_at_ms": created_at_ms if created_at_ms is not None else int(time.time() * 1000),
        "params": asdict(cfg),
        "stats": {
            "sessions_with_likes": len(sequences),
            "movies_with_neighbors": len({r["movie_id"] for r in neighbors}),
            "neighbor_rows": len(neighbors),
        },
    }
    return model, neighbors


def train_snapshot(
    snapshot_dir: Path | str,
    out_dir: Path | str,
    model_version: str,
    cfg: TrainConfig | None = None,
) -> Dict[str, Any]:
    """
    Validate the snapshot, train, write model.json + neighbors.json into out_dir.
    A ValidationError from the data-quality gate propagates before anything is written.
    """
    cfg = cfg or TrainConfig()
    check_snapshot_events(snapshot_dir)

    swipes = load_swipes(snapshot_dir)
    manifest = load_manifest(snapshot_dir)

    model, neighbors = train_from_swipes(swipes, model_version, str(manifest["snapshot_id"]), cfg)

    out_dir = Path(out_dir)
    write_json(out_dir / MODEL_FILE, model)
    write_json(out_dir / NEIGHBORS_FILE, neighbors)

    logger.info(
        "trained %s on snapshot %s: %d sessions, %d neighbor rows",
        model_version, model["snapshot_id"], model["stats"]["sessions_with_likes"], len(neighbors),
    )
    return model
