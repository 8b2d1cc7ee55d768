from __future__ import annotations

from typing import Any, Dict, List, Optional
import sqlite3
import uuid

from backend.app.db import transaction
from backend.recommender import store

DECK_ROUTE = "GET /v1/deck"
TOP_LIKED_LIMIT = 10


def route_key(method: str, path: str) -> str:
    # collapse id-bearing paths so request_logs stay groupable
    if path.startswith("/v1/admin"):
        return f"{method} /v1/admin/*"
    if path.startswith("/v1/events"):
        return f"{method} /v1/events/*"
    return f"{method} {path}"


def record_request_log(
    conn: sqlite3.Connection,
    req_id: str,
    route: str,
    method: str,
    path: str,
    status: int,
    dur_ms: int,
    ts_ms: int,
) -> None:
    with transaction(conn):
        conn.execute(
            """
            INSERT INTO request_logs(id, req_id, route, method, path, status, dur_ms, ts_ms)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (str(uuid.uuid4()), req_id, route, method, path, status, dur_ms, ts_ms),
        )


def prune_request_logs(conn: sqlite3.Connection, cutoff_ts_ms: int) -> int:
    with transaction(conn):
        cur = conn.execute("DELETE FROM request_logs WHERE ts_ms < ?", (cutoff_ts_ms,))
    return cur.rowcount


def _scalar(conn: sqlite3.Connection, sql: str, *params: Any) -> int:
    row = conn.execute(sql, params).fetchone()
    return int(row["n"] or 0) if row else 0


def median_ms(conn: sqlite3.Connection, since_ms: int, route: str) -> Optional[int]:
    rows = conn.execute(
        "SELECT dur_ms FROM request_logs WHERE ts_ms >= ? AND route = ? ORDER BY dur_ms",
        (since_ms, route),
    ).fetchall()
    n = len(rows)
    if n == 0:
        return None
    if n % 2 == 1:
        return int(rows[n // 2]["dur_ms"])
    return int(round((rows[n // 2 - 1]["dur_ms"] + rows[n // 2]["dur_ms"]) / 2))


def metrics_window(conn: sqlite3.Connection, now_ms: int, window_ms: int) -> Dict[str, Any]:
    since = now_ms - window_ms
    swipes = _scalar(conn, "SELECT COUNT(*) AS n FROM swipe_events WHERE ts_ms >= ?", since)
    likes = _scalar(conn, "SELECT COUNT(*) AS n FROM swipe_events WHERE ts_ms >= ? AND action = 'like'", since)
    skips = _scalar(conn, "SELECT COUNT(*) AS n FROM swipe_events WHERE ts_ms >= ? AND action = 'skip'", since)
    impressions = _scalar(conn, "SELECT COUNT(*) AS n FROM recommendation_impressions WHERE ts_ms >= ?", since)

    dwell = conn.execute(
        "SELECT AVG(dwell_ms) AS avg_ms FROM swipe_events WHERE ts_ms >= ? AND dwell_ms IS NOT NULL AND dwell_ms >= 0",
        (since,),
    ).fetchone()
    top_liked = conn.execute(
        """
        SELECT se.movie_id AS movie_id, m.title AS title, COUNT(*) AS likes
        FROM swipe_events se
        LEFT JOIN movies m ON m.movie_id = se.movie_id
        WHERE se.ts_ms >= ? AND se.action = 'like'
        GROUP BY se.movie_id
        ORDER BY likes DESC, se.movie_id ASC
        LIMIT ?
        """,
        (since, TOP_LIKED_LIMIT),
    ).fetchall()

    return {
        "window_ms": window_ms,
        "since_ms": since,
        "swipes": swipes,
        "likes": likes,
        "skips": skips,
        "impressions": impressions,
        "like_rate": likes / swipes if swipes else None,
        "skip_rate": skips / swipes if swipes else None,
        "p50_deck_ms": median_ms(conn, since, DECK_ROUTE),
        "mean_dwell_ms": round(dwell["avg_ms"]) if dwell and dwell["avg_ms"] is not None else None,
        "top_liked": [dict(r) for r in top_liked],
    }


def profile_summary(conn: sqlite3.Connection, session_id: str) -> Dict[str, Any]:
    counts = conn.execute(
        "SELECT action, COUNT(*) AS c FROM swipe_events WHERE session_id = ? GROUP BY action",
        (session_id,),
    ).fetchall()
    by_action = {r["action"]: int(r["c"]) for r in counts}
    likes = by_action.get("like", 0)
    skips = by_action.get("skip", 0)

    top = conn.execute(
        """
        SELECT
          g.genre_id AS genre_id,
          g.name AS name,
          SUM(CASE WHEN se.action = 'like' THEN 1 ELSE 0 END) AS likes,
          SUM(CASE WHEN se.action = 'skip' THEN 1 ELSE 0 END) AS skips,
          SUM(CASE WHEN se.action = 'like' THEN 1 ELSE -1 END) AS net
        FROM swipe_events se
        JOIN movie_genres mg ON mg.movie_id = se.movie_id
        JOIN tmdb_genres g ON g.genre_id = mg.genre_id
        WHERE se.session_id = ?
        GROUP BY g.genre_id
        ORDER BY net DESC, likes DESC
        LIMIT 10
        """,
        (session_id,),
    ).fetchall()

    recent = conn.execute(
        """
        SELECT se.event_id, se.action, se.ts_ms, m.movie_id, m.title, m.year, m.poster_url
        FROM swipe_events se
        JOIN movies m ON m.movie_id = se.movie_id
        WHERE se.session_id = ?
        ORDER BY se.ts_ms DESC
        LIMIT 20
        """,
        (session_id,),
    ).fetchall()

    genre_map = store.genre_names_for_movies(conn, [r["movie_id"] for r in recent])
    recent_out: List[Dict[str, Any]] = []
    for r in recent:
        item = dict(r)
        item["genres"] = genre_map.get(r["movie_id"], [])
        recent_out.append(item)

    return {
        "likes": likes,
        "skips": skips,
        "total": likes + skips,
        "top_genres": [dict(r) for r in top],
        "recent": recent_out,
    }


def run_retention(conn: sqlite3.Connection, now_ms: int, request_log_days: int, swipe_days: int) -> Dict[str, int]:
    """Age-based pruning; swipe_days <= 0 leaves swipe history alone."""
    day_ms = 24 * 60 * 60 * 1000
    out = {"request_logs": prune_request_logs(conn, now_ms - request_log_days * day_ms), "swipe_events": 0}
    if swipe_days > 0:
        out["swipe_events"] = store.prune_swipe_events(conn, now_ms - swipe_days * day_ms)
    return out
