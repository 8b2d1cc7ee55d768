"""
Store adapter: every SQL query the deck builder needs, in one place.

Functions take an open sqlite3 connection (rows come back as sqlite3.Row)
and raise StoreError instead of leaking sqlite3 exceptions, so the retriever
can drop a single failing strategy and keep going.
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from backend.app.db import transaction
from backend.recommender.errors import StoreError

logger = logging.getLogger(__name__)

CURRENT_MODEL_KEY = "current_model_version"

POPULAR_RECENT_CAP = 140
GENRE_MATCH_CAP = 140
EXPLORE_CAP = 60
CF_LIMIT = 200
CF_MAX_LIKES = 20

# movies the session was already shown or already swiped
_SEEN_CTE = """
seen AS (
  SELECT movie_id FROM recommendation_impressions WHERE session_id = :session_id
  UNION
  SELECT movie_id FROM swipe_events WHERE session_id = :session_id
)
"""

# per-movie like/skip counts inside the recency window
_RECENT_CTE = """
recent AS (
  SELECT
    movie_id,
    SUM(CASE WHEN action = 'like' THEN 1 ELSE 0 END) AS likes_recent,
    SUM(CASE WHEN action = 'skip' THEN 1 ELSE 0 END) AS skips_recent
  FROM swipe_events
  WHERE ts_ms >= :cutoff
  GROUP BY movie_id
)
"""

_BASE_CTE = """
base AS (
  SELECT
    m.movie_id,
    m.title,
    m.year,
    m.poster_url,
    COALESCE(m.source, 'organic') AS source,
    COALESCE(r.likes_recent, 0) AS likes_recent,
    COALESCE(r.skips_recent, 0) AS skips_recent
  FROM movies m
  LEFT JOIN recent r ON r.movie_id = m.movie_id
  WHERE m.movie_id NOT IN (SELECT movie_id FROM seen)
)
"""


def _run(
    conn: sqlite3.Connection,
    name: str,
    sql: str,
    params: Mapping[str, Any] | Sequence[Any] = (),
) -> List[sqlite3.Row]:
    try:
        return conn.execute(sql, params).fetchall()
    except sqlite3.Error as exc:
        raise StoreError(name, exc) from exc


def _placeholders(prefix: str, values: Sequence[Any]) -> tuple[str, Dict[str, Any]]:
    names = [f"{prefix}{i}" for i in range(len(values))]
    return ",".join(f":{n}" for n in names), dict(zip(names, values))


# Retrieval strategies

def popular_recent(
    conn: sqlite3.Connection,
    session_id: str,
    cutoff_ts: int,
    top_n: int = POPULAR_RECENT_CAP,
) -> List[sqlite3.Row]:
    """Unseen movies by smoothed recent like-rate, then recent volume."""
    sql = f"""
        WITH {_SEEN_CTE}, {_RECENT_CTE}, {_BASE_CTE}
        SELECT * FROM base
        ORDER BY
          ((likes_recent + 1.0) / (likes_recent + skips_recent + 2.0)) DESC,
          (likes_recent + skips_recent) DESC,
          movie_id ASC
        LIMIT :top_n
    """
    return _run(
        conn,
        "popular_recent",
        sql,
        {"session_id": session_id, "cutoff": cutoff_ts, "top_n": top_n},
    )


def top_genres(conn: sqlite3.Connection, session_id: str, n: int) -> List[int]:
    """Session's best genres by net like/skip score, ties broken by raw likes."""
    rows = _run(
        conn,
        "top_genres",
        """
        SELECT
          mg.genre_id AS genre_id,
          SUM(CASE WHEN se.action = 'like' THEN 1 ELSE -1 END) AS score,
          SUM(CASE WHEN se.action = 'like' THEN 1 ELSE 0 END) AS likes
        FROM swipe_events se
        JOIN movie_genres mg ON mg.movie_id = se.movie_id
        WHERE se.session_id = ?
        GROUP BY mg.genre_id
        ORDER BY score DESC, likes DESC, mg.genre_id ASC
        LIMIT ?
        """,
        (session_id, n),
    )
    return [int(r["genre_id"]) for r in rows]


def genre_match(
    conn: sqlite3.Connection,
    session_id: str,
    top_genre_ids: Sequence[int],
    cutoff_ts: int,
    top_n: int = GENRE_MATCH_CAP,
) -> List[sqlite3.Row]:
    """Unseen movies sharing any of the given genres, most matching genres first."""
    if not top_genre_ids:
        return []
    marks, genre_params = _placeholders("g", list(top_genre_ids))
    sql = f"""
        WITH {_SEEN_CTE}, {_RECENT_CTE}, {_BASE_CTE}
        SELECT
          b.movie_id, b.title, b.year, b.poster_url, b.source,
          b.likes_recent, b.skips_recent,
          COUNT(*) AS matching_genres
        FROM base b
        JOIN movie_genres mg ON mg.movie_id = b.movie_id
        WHERE mg.genre_id IN ({marks})
        GROUP BY b.movie_id
        ORDER BY
          matching_genres DESC,
          (b.likes_recent + b.skips_recent) DESC,
          b.movie_id ASC
        LIMIT :top_n
    """
    params: Dict[str, Any] = {"session_id": session_id, "cutoff": cutoff_ts, "top_n": top_n}
    params.update(genre_params)
    return _run(conn, "genre_match", sql, params)


def explore(
    conn: sqlite3.Connection,
    session_id: str,
    cutoff_ts: int,
    rng: random.Random,
    sample_size: int = EXPLORE_CAP,
) -> List[sqlite3.Row]:
    """
    Uniform sample of the unseen pool. Sampling happens here rather than with
    ORDER BY RANDOM() so a seeded rng gives reproducible decks.

    Only ids are pulled for the whole pool; full rows (with recent counts)
    are fetched for the sampled ids alone.
    """
    id_rows = _run(
        conn,
        "explore_ids",
        f"""
        WITH {_SEEN_CTE}
        SELECT movie_id FROM movies
        WHERE movie_id NOT IN (SELECT movie_id FROM seen)
        ORDER BY movie_id ASC
        """,
        {"session_id": session_id},
    )
    pool = [str(r["movie_id"]) for r in id_rows]
    picked = pool if len(pool) <= sample_size else rng.sample(pool, sample_size)
    if not picked:
        return []

    marks, id_params = _placeholders("m", picked)
    sql = f"""
        WITH {_SEEN_CTE}, {_RECENT_CTE}, {_BASE_CTE}
        SELECT * FROM base WHERE movie_id IN ({marks})
    """
    params: Dict[str, Any] = {"session_id": session_id, "cutoff": cutoff_ts}
    params.update(id_params)
    by_id = {str(r["movie_id"]): r for r in _run(conn, "explore", sql, params)}
    return [by_id[m] for m in picked if m in by_id]


def recent_liked_movie_ids(
    conn: sqlite3.Connection,
    session_id: str,
    max_likes: int = CF_MAX_LIKES,
) -> List[str]:
    """Most recent likes first, de-duplicated, at most max_likes ids."""
    rows = _run(
        conn,
        "recent_likes",
        """
        SELECT movie_id
        FROM swipe_events
        WHERE session_id = ? AND action = 'like'
        ORDER BY ts_ms DESC
        LIMIT ?
        """,
        (session_id, max(1, int(max_likes))),
    )
    out: List[str] = []
    seen: Set[str] = set()
    for r in rows:
        movie_id = str(r["movie_id"] or "").strip()
        if not movie_id or movie_id in seen:
            continue
        seen.add(movie_id)
        out.append(movie_id)
    return out


def cf_neighbors(
    conn: sqlite3.Connection,
    session_id: str,
    model_version: str,
    liked_movie_ids: Sequence[str],
    cutoff_ts: int,
    limit: int = CF_LIMIT,
) -> List[sqlite3.Row]:
    """Neighbors of the liked movies under one model version, scores summed per neighbor."""
    if not liked_movie_ids:
        return []
    marks, liked_params = _placeholders("m", list(liked_movie_ids))
    sql = f"""
        WITH {_SEEN_CTE}, {_RECENT_CTE},
        neighbors AS (
          SELECT neighbor_movie_id AS movie_id, SUM(score) AS cf_score
          FROM cf_item_neighbors
          WHERE model_version = :model_version
            AND movie_id IN ({marks})
          GROUP BY neighbor_movie_id
        )
        SELECT
          m.movie_id,
          m.title,
          m.year,
          m.poster_url,
          COALESCE(r.likes_recent, 0) AS likes_recent,
          COALESCE(r.skips_recent, 0) AS skips_recent,
          'cf_neighbors' AS source,
          n.cf_score AS cf_score
        FROM neighbors n
        JOIN movies m ON m.movie_id = n.movie_id
        LEFT JOIN recent r ON r.movie_id = m.movie_id
        WHERE m.movie_id NOT IN (SELECT movie_id FROM seen)
        ORDER BY n.cf_score DESC, m.movie_id ASC
        LIMIT :limit
    """
    params: Dict[str, Any] = {
        "session_id": session_id,
        "cutoff": cutoff_ts,
        "model_version": model_version,
        "limit": max(1, int(limit)),
    }
    params.update(liked_params)
    return _run(conn, "cf_neighbors", sql, params)


def popular_all_time(conn: sqlite3.Connection, session_id: str, limit: int) -> List[sqlite3.Row]:
    """Baseline pool: all-time likes desc, skips asc, freshest catalog rows first."""
    return _run(
        conn,
        "popular_all_time",
        """
        WITH stats AS (
          SELECT
            movie_id,
            SUM(CASE WHEN action = 'like' THEN 1 ELSE 0 END) AS likes,
            SUM(CASE WHEN action = 'skip' THEN 1 ELSE 0 END) AS skips
          FROM swipe_events
          GROUP BY movie_id
        )
        SELECT
          m.movie_id,
          m.title,
          m.year,
          m.poster_url,
          COALESCE(m.source, 'organic') AS source,
          COALESCE(s.likes, 0) AS likes_recent,
          COALESCE(s.skips, 0) AS skips_recent
        FROM movies m
        LEFT JOIN stats s ON s.movie_id = m.movie_id
        WHERE m.movie_id NOT IN (SELECT movie_id FROM swipe_events WHERE session_id = ?)
        ORDER BY COALESCE(s.likes, 0) DESC, COALESCE(s.skips, 0) ASC, m.updated_at_ms DESC
        LIMIT ?
        """,
        (session_id, max(limit, 100)),
    )


def seen_movie_ids(conn: sqlite3.Connection, session_id: str) -> Set[str]:
    rows = _run(
        conn,
        "seen",
        f"WITH {_SEEN_CTE} SELECT movie_id FROM seen",
        {"session_id": session_id},
    )
    return {str(r["movie_id"]) for r in rows}


# Genres

def genre_prefs(conn: sqlite3.Connection, session_id: str) -> Dict[int, int]:
    """genre_id -> (#likes - #skips) over the session's whole swipe history."""
    rows = _run(
        conn,
        "genre_prefs",
        """
        SELECT
          mg.genre_id AS genre_id,
          SUM(CASE WHEN se.action = 'like' THEN 1 ELSE -1 END) AS score
        FROM swipe_events se
        JOIN movie_genres mg ON mg.movie_id = se.movie_id
        WHERE se.session_id = ?
        GROUP BY mg.genre_id
        """,
        (session_id,),
    )
    return {int(r["genre_id"]): int(r["score"]) for r in rows}


def genre_ids_for_movies(conn: sqlite3.Connection, movie_ids: Sequence[str]) -> Dict[str, List[int]]:
    if not movie_ids:
        return {}
    marks, params = _placeholders("m", list(movie_ids))
    rows = _run(
        conn,
        "genre_ids",
        f"""
        SELECT movie_id, genre_id
        FROM movie_genres
        WHERE movie_id IN ({marks})
        ORDER BY movie_id, position, genre_id
        """,
        params,
    )
    out: Dict[str, List[int]] = {}
    for r in rows:
        out.setdefault(str(r["movie_id"]), []).append(int(r["genre_id"]))
    return out


def genre_names_for_movies(conn: sqlite3.Connection, movie_ids: Sequence[str]) -> Dict[str, List[str]]:
    if not movie_ids:
        return {}
    marks, params = _placeholders("m", list(movie_ids))
    rows = _run(
        conn,
        "genre_names",
        f"""
        SELECT mg.movie_id AS movie_id, g.name AS name
        FROM movie_genres mg
        JOIN tmdb_genres g ON g.genre_id = mg.genre_id
        WHERE mg.movie_id IN ({marks})
        ORDER BY mg.movie_id, mg.position, mg.genre_id
        """,
        params,
    )
    out: Dict[str, List[str]] = {}
    for r in rows:
        out.setdefault(str(r["movie_id"]), []).append(str(r["name"]))
    return out


# Model pointer + registry

def get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    rows = _run(conn, "get_meta", "SELECT value FROM app_meta WHERE key = ?", (key,))
    return str(rows[0]["value"]) if rows else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    with transaction(conn):
        conn.execute("INSERT OR REPLACE INTO app_meta(key, value) VALUES (?, ?)", (key, value))


def get_current_model_version(conn: sqlite3.Connection, default: str) -> str:
    # read on every request; promotion writes this row from another process
    return get_meta(conn, CURRENT_MODEL_KEY) or default


def set_current_model_version(conn: sqlite3.Connection, model_version: str) -> None:
    set_meta(conn, CURRENT_MODEL_KEY, model_version)


def model_version_exists(conn: sqlite3.Connection, model_version: str) -> bool:
    rows = _run(
        conn,
        "model_version_exists",
        "SELECT COUNT(*) AS n FROM model_versions WHERE model_version = ?",
        (model_version,),
    )
    return bool(rows and int(rows[0]["n"]) > 0)


def model_version_metrics(conn: sqlite3.Connection, model_version: str) -> Optional[Dict[str, Any]]:
    """Stored offline-eval metrics for a version; None if unknown or never evaluated."""
    rows = _run(
        conn,
        "model_version_metrics",
        "SELECT metrics_json FROM model_versions WHERE model_version = ?",
        (model_version,),
    )
    if not rows or not rows[0]["metrics_json"]:
        return None
    return json.loads(rows[0]["metrics_json"])


def list_model_versions(conn: sqlite3.Connection, limit: int = 25) -> List[Dict[str, Any]]:
    rows = _run(
        conn,
        "list_model_versions",
        """
        SELECT model_version, snapshot_id, algo, created_at_ms, metrics_json
        FROM model_versions
        ORDER BY created_at_ms DESC
        LIMIT ?
        """,
        (limit,),
    )
    out = []
    for r in rows:
        item = dict(r)
        raw = item.pop("metrics_json", None)
        item["metrics"] = json.loads(raw) if raw else None
        out.append(item)
    return out


# Writes (insert-if-absent, safe under client retries)

def record_impressions(conn: sqlite3.Connection, rows: Iterable[Mapping[str, Any]]) -> int:
    """Returns how many rows were new."""
    params = [
        (
            r["impression_id"],
            r["deck_id"],
            r["session_id"],
            r["movie_id"],
            int(r["rank"]),
            r["reason_code"],
            r.get("model_version"),
            r.get("score"),
            int(r["ts_ms"]),
            r.get("request_id"),
        )
        for r in rows
    ]
    if not params:
        return 0
    before = conn.total_changes
    with transaction(conn):
        conn.executemany(
            """
            INSERT OR IGNORE INTO recommendation_impressions(
              impression_id, deck_id, session_id, movie_id, rank, reason_code,
              model_version, score, ts_ms, request_id
            ) VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            params,
        )
    return conn.total_changes - before


def record_swipe(conn: sqlite3.Connection, row: Mapping[str, Any]) -> bool:
    """True if the event was new, False if event_id was already stored."""
    with transaction(conn):
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO swipe_events(
              event_id, session_id, deck_id, movie_id, action, ts_ms, dwell_ms, request_id
            ) VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                row["event_id"],
                row["session_id"],
                row["deck_id"],
                row["movie_id"],
                row["action"],
                int(row["ts_ms"]),
                row.get("dwell_ms"),
                row.get("request_id"),
            ),
        )
    return cur.rowcount == 1


def deck_served_to_session(conn: sqlite3.Connection, deck_id: str, session_id: str) -> bool:
    rows = _run(
        conn,
        "deck_served",
        "SELECT 1 FROM recommendation_impressions WHERE deck_id = ? AND session_id = ? LIMIT 1",
        (deck_id, session_id),
    )
    return bool(rows)


def prune_swipe_events(conn: sqlite3.Connection, cutoff_ts_ms: int) -> int:
    with transaction(conn):
        cur = conn.execute("DELETE FROM swipe_events WHERE ts_ms < ?", (cutoff_ts_ms,))
    logger.info("pruned %d swipe events older than %d", cur.rowcount, cutoff_ts_ms)
    return cur.rowcount
