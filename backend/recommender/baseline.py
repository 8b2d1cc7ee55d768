from __future__ import annotations

from typing import List, Mapping, Sequence
import sqlite3

from backend.recommender import store
from backend.recommender.reranker import RankedMovie, pop_score, pref_score
from backend.recommender.retriever import Candidate, candidate_from_row

BASELINE_MODEL_VERSION = "baseline_v1"
BASELINE_REASON = "baseline_mix"


def rank_baseline(
    candidates: Sequence[Candidate],
    genre_names_by_movie: Mapping[str, List[str]],
    genre_ids_by_movie: Mapping[str, List[int]],
    genre_prefs: Mapping[int, float],
    limit: int,
) -> List[RankedMovie]:
    """
      baseline ranker (no CF, no diversity pass):
    - popularity = smoothed like-rate * log volume, all-time counts
    - preference = mean genre pref, divided by the largest |pref| (at least 1)
    - score = 0.75 * popularity + 0.25 * preference
    """
    denom = max([1.0, *(abs(v) for v in genre_prefs.values())])

    scored: List[RankedMovie] = []
    for c in candidates:
        pop = pop_score(c.likes_recent, c.skips_recent)
        pref = pref_score(genre_ids_by_movie.get(c.movie_id, []), genre_prefs) / denom

        # weights (tweakable)
        score = 0.75 * pop + 0.25 * pref

        scored.append(
            RankedMovie(
                movie_id=c.movie_id,
                title=c.title,
                year=c.year,
                poster_url=c.poster_url,
                genres=list(genre_names_by_movie.get(c.movie_id, [])),
                reason_code=BASELINE_REASON,
                score=score,
                signals={"pop": pop, "pref": pref},
            )
        )

    scored.sort(key=lambda x: x.score, reverse=True)
    return scored[: max(0, int(limit))]


def baseline_candidates(conn: sqlite3.Connection, session_id: str, limit: int) -> List[Candidate]:
    return [candidate_from_row(r) for r in store.popular_all_time(conn, session_id, limit)]
