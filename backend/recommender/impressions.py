from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import sqlite3
import uuid

from backend.recommender import store
from backend.recommender.reranker import RankedMovie

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def impression_rows(
    deck: Sequence[RankedMovie],
    deck_id: str,
    session_id: str,
    model_version: str,
    ts_ms: int,
    request_id: Optional[str] = None,
    id_factory: Callable[[], str] = new_id,
) -> List[Dict[str, Any]]:
    """One row per shown movie; rank is the 1-based deck position."""
    return [
        {
            "impression_id": id_factory(),
            "deck_id": deck_id,
            "session_id": session_id,
            "movie_id": m.movie_id,
            "rank": i + 1,
            "reason_code": m.reason_code,
            "model_version": model_version,
            "score": m.score,
            "ts_ms": ts_ms,
            "request_id": request_id,
        }
        for i, m in enumerate(deck)
    ]


def record_rows(conn: sqlite3.Connection, rows: Sequence[Dict[str, Any]]) -> int:
    """Insert-if-absent on impression_id, so replaying the same rows is a no-op."""
    inserted = store.record_impressions(conn, rows)
    if inserted < len(rows):
        logger.info("impressions: %d of %d rows already recorded", len(rows) - inserted, len(rows))
    return inserted


def record_deck(
    conn: sqlite3.Connection,
    deck: Sequence[RankedMovie],
    deck_id: str,
    session_id: str,
    model_version: str,
    ts_ms: int,
    request_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    rows = impression_rows(deck, deck_id, session_id, model_version, ts_ms, request_id)
    record_rows(conn, rows)
    return rows
