"""
Offline evaluation of an item-item neighbor model.

Protocol: per session with at least MIN_LIKES distinct likes, the first 60%
(chronologically) is history and the rest is holdout. Candidates are scored
by summing neighbor scores over the history items; NDCG@K, MAP@K and Recall@K
are computed against the holdout and averaged over sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple
import logging
import math
import time

from backend.recommender.cf_trainer import MODEL_FILE, NEIGHBORS_FILE
from backend.recommender.data_quality import check_snapshot_events
from backend.recommender.errors import EmptyInputError
from backend.recommender.snapshot import (
    IMPRESSIONS_FILE,
    build_like_sequences,
    load_impressions,
    load_swipes,
    read_json,
    write_json,
)

logger = logging.getLogger(__name__)

METRICS_FILE = "metrics.json"
REPORT_FILE = "report.md"
DECK_EVAL_FILE = "deck_eval.json"
DECK_REPORT_FILE = "deck_eval.md"
UNKNOWN_MODEL = "unknown"
PER_DECK_SAMPLE = 10

DEFAULT_K = 10
MIN_LIKES = 3
HISTORY_FRACTION = 0.6
MAX_RANKED = 200


@dataclass
class EvalReport:
    model_version: str
    snapshot_id: str
    k: int
    sessions_evaluated: int
    ndcg_at_k: float
    map_at_k: float
    recall_at_k: float


def dcg(rels: Sequence[float]) -> float:
    return sum(rel / math.log2(i + 2) for i, rel in enumerate(rels))


def ndcg_at_k(ranked: Sequence[str], truth: Set[str], k: int) -> float:
    rels = [1.0 if m in truth else 0.0 for m in ranked[:k]]
    ideal = dcg([1.0] * min(k, len(truth)))
    if ideal <= 0:
        return 0.0
    return dcg(rels) / ideal


def ap_at_k(ranked: Sequence[str], truth: Set[str], k: int) -> float:
    hits = 0
    total = 0.0
    for i, m in enumerate(ranked[:k]):
        if m in truth:
            hits += 1
            total += hits / (i + 1)
    denom = min(len(truth), k)
    return total / denom if denom else 0.0


def recall_at_k(ranked: Sequence[str], truth: Set[str], k: int) -> float:
    if not truth:
        return 0.0
    hits = sum(1 for m in ranked[:k] if m in truth)
    return hits / len(truth)


def split_history(likes: Sequence[str]) -> Tuple[List[str], List[str]]:
    cut = max(1, int(math.floor(len(likes) * HISTORY_FRACTION)))
    return list(likes[:cut]), list(likes[cut:])


def neighbor_map(neighbors: Iterable[Mapping[str, Any]]) -> Dict[str, List[Tuple[str, float]]]:
    out: Dict[str, List[Tuple[str, float]]] = {}
    for r in neighbors:
        out.setdefault(str(r["movie_id"]), []).append((str(r["neighbor_movie_id"]), float(r["score"])))
    return out


def score_candidates(
    history: Sequence[str],
    neighbors: Mapping[str, Sequence[Tuple[str, float]]],
    max_ranked: int = MAX_RANKED,
) -> List[str]:
    """Neighbors of history items, scores summed, history excluded, best first."""
    in_history = set(history)
    scores: Dict[str, float] = {}
    for h in history:
        for movie_id, s in neighbors.get(h, ()):
            if movie_id in in_history:
                continue
            scores[movie_id] = scores.get(movie_id, 0.0) + s
    ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
    return [m for m, _ in ranked[:max_ranked]]


def evaluate_sequences(
    sequences: Mapping[str, Sequence[str]],
    neighbors: Mapping[str, Sequence[Tuple[str, float]]],
    k: int = DEFAULT_K,
) -> Dict[str, float]:
    n = 0
    sum_ndcg = sum_map = sum_recall = 0.0

    for likes in sequences.values():
        if len(likes) < MIN_LIKES:
            continue
        history, holdout = split_history(likes)
        if not holdout:
            continue

        ranked = score_candidates(history, neighbors)
        truth = set(holdout)

        n += 1
        sum_ndcg += ndcg_at_k(ranked, truth, k)
        sum_map += ap_at_k(ranked, truth, k)
        sum_recall += recall_at_k(ranked, truth, k)

    return {
        "sessions_evaluated": n,
        "ndcg_at_k": sum_ndcg / n if n else 0.0,
        "map_at_k": sum_map / n if n else 0.0,
        "recall_at_k": sum_recall / n if n else 0.0,
    }


def _bar(x: float) -> str:
    n = max(0, min(20, round(x * 20)))
    return "█" * n + "░" * (20 - n)


def render_report(report: EvalReport) -> str:
    k = report.k
    return (
        "# Offline Evaluation Report\n\n"
        f"**Model:** {report.model_version}  \n"
        f"**Snapshot:** {report.snapshot_id}  \n"
        f"**Sessions evaluated:** {report.sessions_evaluated}  \n\n"
        f"## Metrics (k={k})\n\n"
        "| Metric | Value | Plot |\n"
        "|---|---:|---|\n"
        f"| NDCG@{k} | {report.ndcg_at_k:.4f} | {_bar(report.ndcg_at_k)} |\n"
        f"| MAP@{k} | {report.map_at_k:.4f} | {_bar(report.map_at_k)} |\n"
        f"| Recall@{k} | {report.recall_at_k:.4f} | {_bar(report.recall_at_k)} |\n\n"
        "## Notes\n"
        f"- Chronological split inside each session: first {int(HISTORY_FRACTION * 100)}% of likes is history.\n"
        f"- Sessions with fewer than {MIN_LIKES} likes are skipped.\n"
        "- Candidates are scored by summed neighbor similarity from history likes.\n"
        "- If metrics are unstable, collect more sessions with 5+ likes each.\n"
    )


def evaluate_model(
    snapshot_dir: Path | str,
    model_dir: Path | str,
    out_dir: Path | str | None = None,
    k: int = DEFAULT_K,
) -> Dict[str, Any]:
    """Gate the snapshot, score the model, write metrics.json + report.md."""
    check_snapshot_events(snapshot_dir)

    model_dir = Path(model_dir)
    out = Path(out_dir) if out_dir is not None else model_dir

    swipes = load_swipes(snapshot_dir)
    model = read_json(model_dir / MODEL_FILE)
    neighbors = neighbor_map(read_json(model_dir / NEIGHBORS_FILE))

    result = evaluate_sequences(build_like_sequences(swipes), neighbors, k)
    report = EvalReport(
        model_version=str(model["model_version"]),
        snapshot_id=str(model["snapshot_id"]),
        k=k,
        sessions_evaluated=int(result["sessions_evaluated"]),
        ndcg_at_k=result["ndcg_at_k"],
        map_at_k=result["map_at_k"],
        recall_at_k=result["recall_at_k"],
    )

    metrics = {
        "model_version": report.model_version,
        "snapshot_id": report.snapshot_id,
        "evaluated_at_ms": int(time.time() * 1000),
        "eval": {key: v for key, v in asdict(report).items() if key not in ("model_version", "snapshot_id")},
    }

    write_json(out / METRICS_FILE, metrics)
    (out / REPORT_FILE).write_text(render_report(report), encoding="utf-8")

    if report.sessions_evaluated == 0:
        logger.warning("no session had %d+ likes; metrics are all zero", MIN_LIKES)
    logger.info(
        "eval %s: sessions=%d ndcg@%d=%.4f map@%d=%.4f recall@%d=%.4f",
        report.model_version, report.sessions_evaluated,
        k, report.ndcg_at_k, k, report.map_at_k, k, report.recall_at_k,
    )
    return metrics


# Impression-labeled deck evaluation

def label_impressions(
    impressions: Iterable[Mapping[str, Any]],
    swipes: Iterable[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Each impression gets label 1 if its session liked the movie, else 0."""
    liked = {(str(s["session_id"]), str(s["movie_id"])) for s in swipes if s.get("action") == "like"}
    return [
        {**imp, "label": 1 if (str(imp["session_id"]), str(imp["movie_id"])) in liked else 0}
        for imp in impressions
    ]


def _mean(xs: Sequence[float]) -> float:
    return sum(xs) / len(xs) if xs else 0.0


def deck_eval(
    impressions: Sequence[Mapping[str, Any]],
    swipes: Sequence[Mapping[str, Any]],
    k: int = DEFAULT_K,
) -> Dict[str, Any]:
    """
    NDCG@K and MAP@K of the decks actually served, per model version.

    Impressions are grouped into decks by (model_version, deck_id) and ordered
    by rank; liked movies are the relevant ones. Per-deck scores are averaged
    per model version; models come back best NDCG first. Coverage counts
    distinct movies over all impressions.
    """
    decks: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
    for row in label_impressions(impressions, swipes):
        mv = str(row.get("model_version") or UNKNOWN_MODEL)
        decks.setdefault((mv, str(row["deck_id"])), []).append(row)

    per_deck: List[Dict[str, Any]] = []
    for (mv, deck_id), items in decks.items():
        items.sort(key=lambda r: int(float(r["rank"])))
        ranked = [str(r["movie_id"]) for r in items]
        truth = {str(r["movie_id"]) for r in items if r["label"]}
        per_deck.append({
            "deck_key": f"{mv}::{deck_id}",
            "model_version": mv,
            "impressions": len(items),
            "positives": len(truth),
            "ndcg_at_k": ndcg_at_k(ranked, truth, k),
            "map_at_k": ap_at_k(ranked, truth, k),
        })

    by_model: Dict[str, List[Dict[str, Any]]] = {}
    for d in per_deck:
        by_model.setdefault(d["model_version"], []).append(d)

    models = [
        {
            "model_version": mv,
            "decks": len(ds),
            "impressions": sum(d["impressions"] for d in ds),
            "ndcg_at_k": _mean([d["ndcg_at_k"] for d in ds]),
            "map_at_k": _mean([d["map_at_k"] for d in ds]),
        }
        for mv, ds in by_model.items()
    ]
    models.sort(key=lambda m: m["ndcg_at_k"], reverse=True)

    total = len(impressions)
    unique_movies = len({str(r["movie_id"]) for r in impressions})
    return {
        "k": k,
        "models": models,
        "coverage": {
            "unique_movies": unique_movies,
            "total_impressions": total,
            "unique_movie_rate": unique_movies / total if total else 0.0,
        },
        "per_deck_sample": per_deck[:PER_DECK_SAMPLE],
    }


def render_deck_report(report: Mapping[str, Any]) -> str:
    k = report["k"]
    cov = report["coverage"]
    lines = [
        "# Served-Deck Evaluation",
        "Sanity metrics for comparing model versions on real traffic, not absolute quality.",
        "",
        f"## Summary (k={k})",
        "",
        f"| model_version | decks | impressions | NDCG@{k} | MAP@{k} |",
        "|---|---:|---:|---:|---:|",
    ]
    for m in report["models"]:
        lines.append(
            f"| {m['model_version']} | {m['decks']} | {m['impressions']} "
            f"| {m['ndcg_at_k']:.4f} | {m['map_at_k']:.4f} |"
        )
    lines += [
        "",
        "## Coverage",
        "",
        f"- unique movies: {cov['unique_movies']}",
        f"- total impressions: {cov['total_impressions']}",
        f"- unique-movie rate: {cov['unique_movie_rate']:.4f}",
        "",
        f"## Per-deck sample (first {PER_DECK_SAMPLE})",
        "",
        f"| deck | model | impressions | positives | NDCG@{k} | MAP@{k} |",
        "|---|---|---:|---:|---:|---:|",
    ]
    for d in report["per_deck_sample"]:
        lines.append(
            f"| {d['deck_key']} | {d['model_version']} | {d['impressions']} | {d['positives']} "
            f"| {d['ndcg_at_k']:.4f} | {d['map_at_k']:.4f} |"
        )
    lines.append("")
    return "\n".join(lines)


def evaluate_decks(snapshot_dir: Path | str, out_dir: Path | str, k: int = DEFAULT_K) -> Dict[str, Any]:
    """Gate the snapshot, evaluate served decks, write deck_eval.json + deck_eval.md."""
    check_snapshot_events(snapshot_dir)

    impressions = load_impressions(snapshot_dir)
    if not impressions:
        raise EmptyInputError(f"no impressions in {IMPRESSIONS_FILE} under {snapshot_dir}")

    report = deck_eval(impressions, load_swipes(snapshot_dir), k)

    out = Path(out_dir)
    write_json(out / DECK_EVAL_FILE, report)
    (out / DECK_REPORT_FILE).write_text(render_deck_report(report), encoding="utf-8")

    for m in report["models"]:
        logger.info(
            "deck eval %s: decks=%d ndcg@%d=%.4f map@%d=%.4f",
            m["model_version"], m["decks"], k, m["ndcg_at_k"], k, m["map_at_k"],
        )
    return report
