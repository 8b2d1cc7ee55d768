#!/usr/bin/env python3
import argparse
import os
import sqlite3
from backend.app.db import connect, init_db
from backend.recommender.snapshot import (
    GENRES_FILE,
    IMPRESSIONS_FILE,
    MOVIE_GENRES_FILE,
    MOVIES_FILE,
    SWIPES_FILE,
    read_json,
)

def seed_genres(conn: sqlite3.Connection, path: str) -> None:
    rows = [(int(g["genre_id"]), str(g["name"]), int(g.get("updated_at_ms") or 0)) for g in read_json(path)]
    conn.executemany(
        "INSERT OR REPLACE INTO tmdb_genres(genre_id, name, updated_at_ms) VALUES(?,?,?)",
        rows,
    )

def seed_movies(conn: sqlite3.Connection, path: str) -> None:
    rows = []
    for m in read_json(path):
        rows.append((
            str(m["movie_id"]),
            m.get("tmdb_id"),
            str(m["title"]),
            m.get("year"),
            m.get("poster_url"),
            m.get("source") or "organic",
            int(m.get("created_at_ms") or 0),
            int(m.get("updated_at_ms") or 0),
        ))
    conn.executemany(
        """
        INSERT OR REPLACE INTO movies(movie_id, tmdb_id, title, year, poster_url, source, created_at_ms, updated_at_ms)
        VALUES(?,?,?,?,?,?,?,?)
        """,
        rows,
    )

def seed_movie_genres(conn: sqlite3.Connection, path: str) -> None:
    rows = []
    for i, mg in enumerate(read_json(path)):
        # older exports have no position column, file order is TMDb order
        rows.append((str(mg["movie_id"]), int(mg["genre_id"]), int(mg.get("position", i))))
    conn.executemany(
        "INSERT OR IGNORE INTO movie_genres(movie_id, genre_id, position) VALUES(?,?,?)",
        rows,
    )

def seed_swipes(conn: sqlite3.Connection, path: str) -> None:
    rows = []
    for s in read_json(path):
        rows.append((
            str(s["event_id"]), str(s["session_id"]), str(s["deck_id"]), str(s["movie_id"]),
            s["action"], int(s["ts_ms"]), s.get("dwell_ms"), s.get("request_id"),
        ))
    conn.executemany(
        """
        INSERT OR IGNORE INTO swipe_events(event_id, session_id, deck_id, movie_id, action, ts_ms, dwell_ms, request_id)
        VALUES(?,?,?,?,?,?,?,?)
        """,
        rows,
    )

def seed_impressions(conn: sqlite3.Connection, path: str) -> None:
    rows = []
    for r in read_json(path):
        rows.append((
            str(r["impression_id"]), str(r["deck_id"]), str(r["session_id"]), str(r["movie_id"]),
            int(r["rank"]), str(r["reason_code"]), r.get("model_version"), r.get("score"),
            int(r["ts_ms"]), r.get("request_id"),
        ))
    conn.executemany(
        """
        INSERT OR IGNORE INTO recommendation_impressions(
          impression_id, deck_id, session_id, movie_id, rank, reason_code, model_version, score, ts_ms, request_id
        ) VALUES(?,?,?,?,?,?,?,?,?,?)
        """,
        rows,
    )

def clear_tables(conn: sqlite3.Connection) -> None:
    # delete child tables first (due to foreign keys)
    conn.execute("DELETE FROM recommendation_impressions;")
    conn.execute("DELETE FROM swipe_events;")
    conn.execute("DELETE FROM movie_genres;")
    conn.execute("DELETE FROM movies;")
    conn.execute("DELETE FROM tmdb_genres;")

def main():
    ap = argparse.ArgumentParser(description="Load a snapshot's catalog and events into the local DB")
    ap.add_argument("--snapshot", required=True, help="Snapshot dir")
    ap.add_argument("--reset", action="store_true", help="Clear tables before seeding")
    args = ap.parse_args()

    paths = {name: os.path.join(args.snapshot, name) for name in (GENRES_FILE, MOVIES_FILE, MOVIE_GENRES_FILE)}
    for p in paths.values():
        if not os.path.exists(p):
            raise SystemExit(f"Missing snapshot file: {p}")

    conn = connect()
    init_db(conn)

    if args.reset:
        clear_tables(conn)

    seed_genres(conn, paths[GENRES_FILE])
    seed_movies(conn, paths[MOVIES_FILE])
    seed_movie_genres(conn, paths[MOVIE_GENRES_FILE])

    swipes = os.path.join(args.snapshot, SWIPES_FILE)
    if os.path.exists(swipes):
        seed_swipes(conn, swipes)
    impressions = os.path.join(args.snapshot, IMPRESSIONS_FILE)
    if os.path.exists(impressions):
        seed_impressions(conn, impressions)

    conn.commit()
    conn.close()
    print("Seeding complete.")

if __name__ == "__main__":
    main()
