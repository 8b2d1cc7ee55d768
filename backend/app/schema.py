SCHEMA_PHASE = "phase7_two_stage_cf"

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS app_meta (
  key   TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

-- catalog (filled by the TMDb ingestion job, read-only here)

CREATE TABLE IF NOT EXISTS movies (
  movie_id      TEXT PRIMARY KEY,
  tmdb_id       INTEGER,
  title         TEXT NOT NULL,
  year          INTEGER,
  poster_url    TEXT,
  source        TEXT,                          -- 'organic' | 'tmdb_trending_week' | ...
  created_at_ms INTEGER NOT NULL DEFAULT 0,
  updated_at_ms INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS tmdb_genres (
  genre_id      INTEGER PRIMARY KEY,
  name          TEXT NOT NULL,
  updated_at_ms INTEGER NOT NULL DEFAULT 0
);

-- one row per (movie, genre); position keeps TMDb's genre order so the
-- first genre is the movie's "top genre"
CREATE TABLE IF NOT EXISTS movie_genres (
  movie_id TEXT NOT NULL,
  genre_id INTEGER NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (movie_id, genre_id),
  FOREIGN KEY (movie_id) REFERENCES movies(movie_id)
);

CREATE INDEX IF NOT EXISTS idx_movie_genres_genre ON movie_genres(genre_id);

-- append-only swipe log

CREATE TABLE IF NOT EXISTS swipe_events (
  event_id   TEXT PRIMARY KEY,                 -- idempotency key
  session_id TEXT NOT NULL,
  deck_id    TEXT NOT NULL,
  movie_id   TEXT NOT NULL,
  action     TEXT NOT NULL CHECK (action IN ('like', 'skip')),
  ts_ms      INTEGER NOT NULL,
  dwell_ms   INTEGER,
  request_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_swipe_events_session_ts ON swipe_events(session_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_swipe_events_movie_ts ON swipe_events(movie_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_swipe_events_ts ON swipe_events(ts_ms);

-- exactly what was shown, one row per (deck, movie)

CREATE TABLE IF NOT EXISTS recommendation_impressions (
  impression_id TEXT PRIMARY KEY,
  deck_id       TEXT NOT NULL,
  session_id    TEXT NOT NULL,
  movie_id      TEXT NOT NULL,
  rank          INTEGER NOT NULL,              -- 1-based
  reason_code   TEXT NOT NULL,
  model_version TEXT,
  score         REAL,
  ts_ms         INTEGER NOT NULL,
  request_id    TEXT,
  UNIQUE (deck_id, rank)
);

CREATE INDEX IF NOT EXISTS idx_impressions_session ON recommendation_impressions(session_id, movie_id);
CREATE INDEX IF NOT EXISTS idx_impressions_deck ON recommendation_impressions(deck_id);
CREATE INDEX IF NOT EXISTS idx_impressions_ts ON recommendation_impressions(ts_ms);

-- offline CF models

CREATE TABLE IF NOT EXISTS model_versions (
  model_version TEXT PRIMARY KEY,
  created_at_ms INTEGER NOT NULL,
  snapshot_id   TEXT NOT NULL,
  algo          TEXT NOT NULL,
  params_json   TEXT NOT NULL DEFAULT '{}',
  metrics_json  TEXT,
  notes         TEXT
);

CREATE TABLE IF NOT EXISTS cf_item_neighbors (
  model_version     TEXT NOT NULL,
  movie_id          TEXT NOT NULL,
  neighbor_movie_id TEXT NOT NULL,
  score             REAL NOT NULL,
  PRIMARY KEY (model_version, movie_id, neighbor_movie_id),
  FOREIGN KEY (model_version) REFERENCES model_versions(model_version)
);

-- request telemetry (sampled, pruned by age)

CREATE TABLE IF NOT EXISTS request_logs (
  id     TEXT PRIMARY KEY,
  req_id TEXT NOT NULL,
  route  TEXT NOT NULL,
  method TEXT NOT NULL,
  path   TEXT NOT NULL,
  status INTEGER NOT NULL,
  dur_ms INTEGER NOT NULL,
  ts_ms  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_request_logs_route_ts ON request_logs(route, ts_ms);
"""
