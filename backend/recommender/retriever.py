from __future__ import annotations

from dataclasses import dataclass, replace
from functools import reduce
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import random
import sqlite3

from backend.recommender import store
from backend.recommender.errors import DeckBuildError, EmptyInputError, StoreError

logger = logging.getLogger(__name__)

SOURCE_CF = "cf_neighbors"
SOURCE_TRENDING = "tmdb_trending_week"
SOURCE_ORGANIC = "organic"

# higher wins when the same movie comes back from several strategies
SOURCE_PRIORITY: Dict[str, int] = {
    SOURCE_CF: 3,
    SOURCE_TRENDING: 2,
    SOURCE_ORGANIC: 1,
}


@dataclass(frozen=True)
class Candidate:
    movie_id: str
    title: str
    year: Optional[int]
    poster_url: Optional[str]
    likes_recent: int
    skips_recent: int
    source: str
    cf_score: Optional[float] = None


def candidate_from_row(row: sqlite3.Row) -> Candidate:
    keys = row.keys()
    cf = row["cf_score"] if "cf_score" in keys else None
    return Candidate(
        movie_id=str(row["movie_id"]),
        title=str(row["title"]),
        year=int(row["year"]) if row["year"] is not None else None,
        poster_url=row["poster_url"],
        likes_recent=int(row["likes_recent"] or 0),
        skips_recent=int(row["skips_recent"] or 0),
        source=str(row["source"] or SOURCE_ORGANIC),
        cf_score=float(cf) if cf is not None else None,
    )


def _stronger_source(a: str, b: str) -> str:
    # ties keep the first one seen
    return a if SOURCE_PRIORITY.get(a, 0) >= SOURCE_PRIORITY.get(b, 0) else b


def merge_pair(prev: Candidate, new: Candidate) -> Candidate:
    """Combine two sightings of the same movie without losing the richer signal."""
    if prev.cf_score is None and new.cf_score is None:
        cf = None
    else:
        cf = max(prev.cf_score or 0.0, new.cf_score or 0.0)
    return replace(
        prev,
        likes_recent=max(prev.likes_recent, new.likes_recent),
        skips_recent=max(prev.skips_recent, new.skips_recent),
        cf_score=cf,
        source=_stronger_source(prev.source, new.source),
    )


def merge_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    """
    Dedupe by movie_id. First-seen order is kept so that downstream stable
    sorting has a deterministic tie-break.
    """

    def step(acc: Dict[str, Candidate], c: Candidate) -> Dict[str, Candidate]:
        prev = acc.get(c.movie_id)
        return {**acc, c.movie_id: c if prev is None else merge_pair(prev, c)}

    merged: Dict[str, Candidate] = reduce(step, candidates, {})
    return list(merged.values())


def _try_strategy(name: str, fn: Callable[[], List[sqlite3.Row]]) -> Optional[List[Candidate]]:
    try:
        rows = fn()
    except StoreError as exc:
        logger.warning("retrieval strategy %s failed, continuing without it: %s", name, exc)
        return None
    return [candidate_from_row(r) for r in rows]


def retrieve_candidates(
    conn: sqlite3.Connection,
    session_id: str,
    now_ms: int,
    window_ms: int,
    limit: int,
    top_genre_count: int,
    model_version: str,
    rng: Optional[random.Random] = None,
) -> List[Candidate]:
    """
    Union of the CF-neighbor, popular-recent, genre-match and explore buckets,
    deduplicated, at most `limit` candidates, none already seen by the session.

    Raises EmptyInputError when nothing is left to show and DeckBuildError
    when every strategy failed.
    """
    rng = rng or random.Random()
    cutoff = now_ms - window_ms

    def cf_bucket() -> List[sqlite3.Row]:
        liked = store.recent_liked_movie_ids(conn, session_id)
        return store.cf_neighbors(conn, session_id, model_version, liked, cutoff)

    def genre_bucket() -> List[sqlite3.Row]:
        genres = store.top_genres(conn, session_id, top_genre_count)
        return store.genre_match(conn, session_id, genres, cutoff)

    strategies: List[Tuple[str, Callable[[], List[sqlite3.Row]]]] = [
        ("cf_neighbors", cf_bucket),
        ("popular_recent", lambda: store.popular_recent(conn, session_id, cutoff)),
        ("genre_match", genre_bucket),
        ("explore", lambda: store.explore(conn, session_id, cutoff, rng)),
    ]

    pooled: List[Candidate] = []
    failed: List[str] = []
    for name, fn in strategies:
        got = _try_strategy(name, fn)
        if got is None:
            failed.append(name)
            continue
        logger.debug("strategy %s returned %d candidates", name, len(got))
        pooled.extend(got)

    if len(failed) == len(strategies):
        raise DeckBuildError(f"all retrieval strategies failed: {', '.join(failed)}")

    merged = merge_candidates(pooled)
    if not merged:
        raise EmptyInputError(f"no unseen candidates for session {session_id}")

    return merged[: max(0, int(limit))]
