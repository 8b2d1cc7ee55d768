from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence
import math

from backend.recommender.retriever import Candidate, SOURCE_TRENDING

EPS = 1e-9
NO_GENRE = "(none)"

REASON_TRENDING = "hybrid_trending_week"
REASON_CF = "hybrid_cf"
REASON_PERSONALIZED = "hybrid_personalized"
REASON_POPULAR = "hybrid_popular_recent"


@dataclass(frozen=True)
class RerankWeights:
    pop: float = 0.45
    pref: float = 0.25
    cf: float = 0.25
    trending_boost: float = 0.15
    cf_reason_threshold: float = 0.25
    pref_reason_threshold: float = 0.15
    max_per_top_genre: int = 4

    @classmethod
    def from_settings(cls, s) -> "RerankWeights":
        return cls(
            pop=s.rank_weight_pop,
            pref=s.rank_weight_pref,
            cf=s.rank_weight_cf,
            trending_boost=s.rank_trending_boost,
            cf_reason_threshold=s.rank_cf_reason_threshold,
            pref_reason_threshold=s.rank_pref_reason_threshold,
            max_per_top_genre=s.rank_max_per_top_genre,
        )


@dataclass
class RankedMovie:
    movie_id: str
    title: str
    year: Optional[int]
    poster_url: Optional[str]
    genres: List[str]
    reason_code: str
    score: float
    signals: Dict[str, float] = field(default_factory=dict)

    @property
    def top_genre(self) -> str:
        return self.genres[0] if self.genres else NO_GENRE


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def pop_score(likes: int, skips: int) -> float:
    """Smoothed like-rate scaled by log volume, so 1/1 never beats 90/100."""
    total = likes + skips
    like_rate = (likes + 1.0) / (total + 2.0)
    return like_rate * math.log1p(total)


def pref_score(genre_ids: Sequence[int], prefs: Mapping[int, float]) -> float:
    if not genre_ids:
        return 0.0
    return sum(prefs.get(g, 0.0) for g in genre_ids) / len(genre_ids)


def _reason(c: Candidate, cf_n: float, pref_n: float, w: RerankWeights) -> str:
    if c.source == SOURCE_TRENDING:
        return REASON_TRENDING
    if cf_n > w.cf_reason_threshold:
        return REASON_CF
    if pref_n > w.pref_reason_threshold:
        return REASON_PERSONALIZED
    return REASON_POPULAR


def apply_diversity(scored: Sequence[RankedMovie], limit: int, max_per_top_genre: int) -> List[RankedMovie]:
    """
    Cap each top genre at max_per_top_genre, then backfill from the sorted
    list ignoring caps so a deck is never short just because one genre dominates.
    """
    out: List[RankedMovie] = []
    counts: Dict[str, int] = {}
    for m in scored:
        if len(out) >= limit:
            break
        n = counts.get(m.top_genre, 0)
        if n >= max_per_top_genre:
            continue
        counts[m.top_genre] = n + 1
        out.append(m)

    if len(out) < limit:
        picked = {m.movie_id for m in out}
        for m in scored:
            if len(out) >= limit:
                break
            if m.movie_id in picked:
                continue
            out.append(m)
            picked.add(m.movie_id)

    return out


def rerank(
    candidates: Sequence[Candidate],
    genre_names_by_movie: Mapping[str, List[str]],
    genre_ids_by_movie: Mapping[str, List[int]],
    genre_prefs: Mapping[int, float],
    limit: int,
    weights: RerankWeights = RerankWeights(),
) -> List[RankedMovie]:
    """
    Second stage: blend popularity, genre preference and CF into one score,
    label each movie with a reason code, sort, then diversify.

    Each signal is normalized to the batch maximum (preference by max |pref|,
    keeping its sign), so the blend weights mean the same thing for any batch.
    """
    limit = max(0, int(limit))
    if not candidates or limit == 0:
        return []

    pop_raw = [pop_score(c.likes_recent, c.skips_recent) for c in candidates]
    pref_raw = [pref_score(genre_ids_by_movie.get(c.movie_id, []), genre_prefs) for c in candidates]
    cf_raw = [float(c.cf_score) if c.cf_score is not None else 0.0 for c in candidates]

    pop_max = max([EPS, *pop_raw])
    pref_max = max([EPS, *(abs(x) for x in pref_raw)])
    cf_max = max([EPS, *cf_raw])

    scored: List[RankedMovie] = []
    for c, p_raw, pr_raw, cf_r in zip(candidates, pop_raw, pref_raw, cf_raw):
        pop_n = p_raw / pop_max
        pref_n = pr_raw / pref_max
        cf_n = cf_r / cf_max
        boost = weights.trending_boost if c.source == SOURCE_TRENDING else 0.0

        score = (
            weights.pop * clamp01(pop_n)
            + weights.pref * clamp01((pref_n + 1.0) / 2.0)
            + weights.cf * clamp01(cf_n)
            + boost
        )

        scored.append(
            RankedMovie(
                movie_id=c.movie_id,
                title=c.title,
                year=c.year,
                poster_url=c.poster_url,
                genres=list(genre_names_by_movie.get(c.movie_id, [])),
                reason_code=_reason(c, cf_n, pref_n, weights),
                score=score,
                signals={"pop": pop_n, "pref": pref_n, "cf": cf_n, "boost": boost},
            )
        )

    # list.sort is stable: equal scores keep retrieval order
    scored.sort(key=lambda m: m.score, reverse=True)
    return apply_diversity(scored, limit, weights.max_per_top_genre)
