"""Snapshot export/load plus the like-sequence builder shared by training and eval."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping
import json
import sqlite3

SWIPES_FILE = "swipe_events.json"
IMPRESSIONS_FILE = "recommendation_impressions.json"
MOVIES_FILE = "movies.json"
MOVIE_GENRES_FILE = "movie_genres.json"
GENRES_FILE = "tmdb_genres.json"
MANIFEST_FILE = "manifest.json"

# table -> file
_EXPORTS = [
    ("swipe_events", SWIPES_FILE, "ORDER BY ts_ms, event_id"),
    ("recommendation_impressions", IMPRESSIONS_FILE, "ORDER BY ts_ms, deck_id, rank"),
    ("movies", MOVIES_FILE, "ORDER BY movie_id"),
    ("movie_genres", MOVIE_GENRES_FILE, "ORDER BY movie_id, position"),
    ("tmdb_genres", GENRES_FILE, "ORDER BY genre_id"),
]


def read_json(path: Path | str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path | str, value: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(value, f, indent=2)


def export_snapshot(conn: sqlite3.Connection, out_root: Path | str, snapshot_id: str) -> Dict[str, Any]:
    """Dump the tables training/eval need into out_root/snapshot_id and return the manifest."""
    out_dir = Path(out_root) / snapshot_id
    out_dir.mkdir(parents=True, exist_ok=True)

    counts: Dict[str, int] = {}
    files: List[str] = []
    for table, filename, order_by in _EXPORTS:
        rows = [dict(r) for r in conn.execute(f"SELECT * FROM {table} {order_by}").fetchall()]
        write_json(out_dir / filename, rows)
        counts[table] = len(rows)
        files.append(filename)

    manifest = {
        "snapshot_id": snapshot_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "counts": counts,
        "files": files,
    }
    write_json(out_dir / MANIFEST_FILE, manifest)
    return manifest


def load_manifest(snapshot_dir: Path | str) -> Dict[str, Any]:
    return read_json(Path(snapshot_dir) / MANIFEST_FILE)


def load_swipes(snapshot_dir: Path | str) -> List[Dict[str, Any]]:
    return read_json(Path(snapshot_dir) / SWIPES_FILE)


def load_impressions(snapshot_dir: Path | str) -> List[Dict[str, Any]]:
    path = Path(snapshot_dir) / IMPRESSIONS_FILE
    return read_json(path) if path.exists() else []


def build_like_sequences(swipes: Iterable[Mapping[str, Any]]) -> Dict[str, List[str]]:
    """
    session_id -> movie ids the session liked, oldest first, each movie once
    (its first like wins). Skips are ignored.
    """
    likes: Dict[str, List[tuple[int, str]]] = {}
    for s in swipes:
        if s.get("action") != "like":
            continue
        sid = str(s["session_id"])
        likes.setdefault(sid, []).append((int(float(s.get("ts_ms") or 0)), str(s["movie_id"])))

    out: Dict[str, List[str]] = {}
    for sid, events in likes.items():
        # stable sort: same-ms likes keep file order
        events.sort(key=lambda e: e[0])
        seen = set()
        seq: List[str] = []
        for _, movie_id in events:
            if movie_id in seen:
                continue
            seen.add(movie_id)
            seq.append(movie_id)
        out[sid] = seq
    return out
