import sqlite3
from typing import Dict, Iterable, List, Optional

import pytest

from backend.app.db import connect, init_db

GENRES: Dict[int, str] = {
    28: "Action",
    35: "Comedy",
    18: "Drama",
    27: "Horror",
    878: "Science Fiction",
}

NOW_MS = 1_760_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def conn(tmp_path) -> Iterable[sqlite3.Connection]:
    c = connect(str(tmp_path / "test.db"))
    init_db(c)
    c.executemany(
        "INSERT INTO tmdb_genres(genre_id, name) VALUES (?, ?)",
        list(GENRES.items()),
    )
    c.commit()
    yield c
    c.close()


def add_movie(
    conn: sqlite3.Connection,
    movie_id: str,
    genre_ids: Optional[List[int]] = None,
    source: str = "organic",
    title: Optional[str] = None,
) -> None:
    conn.execute(
        "INSERT INTO movies(movie_id, title, year, poster_url, source) VALUES (?,?,?,?,?)",
        (movie_id, title or f"Movie {movie_id}", 2020, None, source),
    )
    for pos, gid in enumerate(genre_ids or []):
        conn.execute(
            "INSERT INTO movie_genres(movie_id, genre_id, position) VALUES (?,?,?)",
            (movie_id, gid, pos),
        )
    conn.commit()


def add_swipe(
    conn: sqlite3.Connection,
    session_id: str,
    movie_id: str,
    action: str,
    ts_ms: int = NOW_MS - 1000,
    deck_id: str = "deck-0000",
) -> None:
    conn.execute(
        """
        INSERT INTO swipe_events(event_id, session_id, deck_id, movie_id, action, ts_ms)
        VALUES (?,?,?,?,?,?)
        """,
        (f"{session_id}:{movie_id}:{action}:{ts_ms}", session_id, deck_id, movie_id, action, ts_ms),
    )
    conn.commit()


def add_neighbor(conn: sqlite3.Connection, model_version: str, movie_id: str, neighbor_id: str, score: float) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO model_versions(model_version, created_at_ms, snapshot_id, algo)
        VALUES (?, 0, 'snap', 'item_item_cf_cosine_shrink')
        """,
        (model_version,),
    )
    conn.execute(
        "INSERT INTO cf_item_neighbors(model_version, movie_id, neighbor_movie_id, score) VALUES (?,?,?,?)",
        (model_version, movie_id, neighbor_id, score),
    )
    conn.commit()


def swipe_row(event_id: str, session_id: str, movie_id: str, action: str = "like", ts_ms: int = 0) -> Dict:
    return {
        "event_id": event_id,
        "session_id": session_id,
        "deck_id": f"deck-{session_id}",
        "movie_id": movie_id,
        "action": action,
        "ts_ms": ts_ms,
        "dwell_ms": None,
        "request_id": None,
    }
