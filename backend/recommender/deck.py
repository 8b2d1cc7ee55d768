from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import random
import sqlite3
import time

from backend.app.config import Settings
from backend.recommender import store
from backend.recommender.baseline import BASELINE_MODEL_VERSION, baseline_candidates, rank_baseline
from backend.recommender.errors import EmptyInputError
from backend.recommender.impressions import new_id, record_deck
from backend.recommender.reranker import RankedMovie, RerankWeights, rerank
from backend.recommender.retriever import retrieve_candidates

logger = logging.getLogger(__name__)

NO_CANDIDATES = "no candidates"


@dataclass
class DeckResult:
    deck_id: Optional[str]
    deck: List[RankedMovie] = field(default_factory=list)
    model_version: str = ""
    reason: Optional[str] = None


def build_deck(
    conn: sqlite3.Connection,
    cfg: Settings,
    session_id: str,
    limit: int,
    request_id: Optional[str] = None,
    now_ms: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> DeckResult:
    """
    Build, rank and log one deck for a session.

    Returns deck_id=None with reason "no candidates" when the session has
    nothing left to see; that is a normal outcome, not an error.
    """
    now = now_ms if now_ms is not None else int(time.time() * 1000)

    if cfg.ranker_mode == "baseline":
        model_version = BASELINE_MODEL_VERSION
        candidates = baseline_candidates(conn, session_id, limit)
        if not candidates:
            return DeckResult(deck_id=None, model_version=model_version, reason=NO_CANDIDATES)
    else:
        model_version = store.get_current_model_version(conn, cfg.default_model_version)
        try:
            candidates = retrieve_candidates(
                conn,
                session_id=session_id,
                now_ms=now,
                window_ms=cfg.candidate_window_ms,
                limit=store.CF_LIMIT + max(220, limit * 10),
                top_genre_count=cfg.top_genre_count,
                model_version=model_version,
                rng=rng,
            )
        except EmptyInputError:
            return DeckResult(deck_id=None, model_version=model_version, reason=NO_CANDIDATES)

    movie_ids = [c.movie_id for c in candidates]
    names = store.genre_names_for_movies(conn, movie_ids)
    ids = store.genre_ids_for_movies(conn, movie_ids)
    prefs = store.genre_prefs(conn, session_id)

    if cfg.ranker_mode == "baseline":
        ranked = rank_baseline(candidates, names, ids, prefs, limit)
    else:
        ranked = rerank(candidates, names, ids, prefs, limit, RerankWeights.from_settings(cfg))

    deck_id = new_id()
    record_deck(conn, ranked, deck_id, session_id, model_version, now, request_id)

    logger.info(
        "deck %s session=%s model=%s candidates=%d shown=%d",
        deck_id, session_id, model_version, len(candidates), len(ranked),
    )
    return DeckResult(deck_id=deck_id, deck=ranked, model_version=model_version)
