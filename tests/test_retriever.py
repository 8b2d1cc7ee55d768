import random

import pytest

from backend.recommender import store
from backend.recommender.errors import DeckBuildError, EmptyInputError, StoreError
from backend.recommender.retriever import (
    SOURCE_CF,
    SOURCE_ORGANIC,
    SOURCE_TRENDING,
    Candidate,
    merge_candidates,
    merge_pair,
    retrieve_candidates,
)

from conftest import DAY_MS, NOW_MS, add_movie, add_neighbor, add_swipe


def retrieve(conn, session_id="s1", limit=500, model_version="cf_v1", rng=None):
    return retrieve_candidates(
        conn,
        session_id=session_id,
        now_ms=NOW_MS,
        window_ms=14 * DAY_MS,
        limit=limit,
        top_genre_count=5,
        model_version=model_version,
        rng=rng or random.Random(1),
    )


def cand(movie_id, likes=0, skips=0, source=SOURCE_ORGANIC, cf=None):
    return Candidate(movie_id, movie_id, None, None, likes, skips, source, cf)


def test_merge_keeps_first_seen_order_and_richest_signals():
    merged = merge_candidates([
        cand("a", likes=1, skips=5),
        cand("b"),
        cand("a", likes=4, skips=2, source=SOURCE_CF, cf=0.3),
    ])
    assert [c.movie_id for c in merged] == ["a", "b"]
    a = merged[0]
    assert (a.likes_recent, a.skips_recent) == (4, 5)
    assert a.source == SOURCE_CF
    assert a.cf_score == 0.3


def test_merge_pair_source_priority():
    assert merge_pair(cand("x", source=SOURCE_TRENDING), cand("x")).source == SOURCE_TRENDING
    assert merge_pair(cand("x"), cand("x", source=SOURCE_TRENDING)).source == SOURCE_TRENDING
    assert merge_pair(cand("x", source=SOURCE_TRENDING), cand("x", source=SOURCE_CF)).source == SOURCE_CF
    assert merge_pair(cand("x"), cand("x")).cf_score is None


def test_seen_movies_are_excluded(conn):
    for i in range(6):
        add_movie(conn, f"m{i}", [28])
    add_swipe(conn, "s1", "m0", "like")
    store.record_impressions(conn, [{
        "impression_id": "imp-1", "deck_id": "deck-1", "session_id": "s1", "movie_id": "m1",
        "rank": 1, "reason_code": "hybrid_popular_recent", "ts_ms": NOW_MS,
    }])

    got = {c.movie_id for c in retrieve(conn)}

    assert got == {"m2", "m3", "m4", "m5"}
    # another session still sees everything
    assert {c.movie_id for c in retrieve(conn, session_id="s2")} == {f"m{i}" for i in range(6)}


def test_cf_neighbor_wins_over_trending_source(conn):
    add_movie(conn, "liked", [28])
    add_movie(conn, "next", [28], source=SOURCE_TRENDING)
    add_movie(conn, "other", [35])
    add_swipe(conn, "s1", "liked", "like")
    add_neighbor(conn, "cf_v1", "liked", "next", 0.9)

    got = {c.movie_id: c for c in retrieve(conn)}

    assert got["next"].source == SOURCE_CF
    assert got["next"].cf_score == pytest.approx(0.9)
    assert got["other"].cf_score is None


def test_neighbors_of_other_model_versions_are_ignored(conn):
    add_movie(conn, "liked")
    add_movie(conn, "next")
    add_swipe(conn, "s1", "liked", "like")
    add_neighbor(conn, "cf_old", "liked", "next", 0.9)

    got = {c.movie_id: c for c in retrieve(conn, model_version="cf_v1")}
    assert got["next"].cf_score is None


def test_recent_window_counts(conn):
    add_movie(conn, "m")
    add_movie(conn, "target")
    add_swipe(conn, "other", "target", "like", ts_ms=NOW_MS - DAY_MS)
    add_swipe(conn, "other2", "target", "skip", ts_ms=NOW_MS - 2 * DAY_MS)
    add_swipe(conn, "other3", "target", "like", ts_ms=NOW_MS - 30 * DAY_MS)

    got = {c.movie_id: c for c in retrieve(conn)}
    assert (got["target"].likes_recent, got["target"].skips_recent) == (1, 1)


def test_limit_truncates(conn):
    for i in range(20):
        add_movie(conn, f"m{i:02d}")
    assert len(retrieve(conn, limit=5)) == 5


def test_nothing_unseen_raises_empty_input(conn):
    add_movie(conn, "only")
    add_swipe(conn, "s1", "only", "skip")
    with pytest.raises(EmptyInputError):
        retrieve(conn)


def test_failing_strategy_is_dropped(conn, monkeypatch):
    for i in range(4):
        add_movie(conn, f"m{i}", [18])

    def boom(*args, **kwargs):
        raise StoreError("popular_recent", RuntimeError("disk"))

    monkeypatch.setattr(store, "popular_recent", boom)
    got = {c.movie_id for c in retrieve(conn)}
    assert got == {"m0", "m1", "m2", "m3"}


def test_all_strategies_failing_raises_deck_build_error(conn, monkeypatch):
    add_movie(conn, "m0")

    def boom(*args, **kwargs):
        raise StoreError("q", RuntimeError("disk"))

    for name in ("recent_liked_movie_ids", "popular_recent", "top_genres", "explore"):
        monkeypatch.setattr(store, name, boom)

    with pytest.raises(DeckBuildError):
        retrieve(conn)


def test_explore_sample_is_reproducible_with_seeded_rng(conn):
    for i in range(store.EXPLORE_CAP + 20):
        add_movie(conn, f"m{i:03d}")

    a = [r["movie_id"] for r in store.explore(conn, "s1", 0, random.Random(7))]
    b = [r["movie_id"] for r in store.explore(conn, "s1", 0, random.Random(7))]

    assert a == b
    assert len(a) == store.EXPLORE_CAP
    assert len(set(a)) == store.EXPLORE_CAP


def test_top_genres_orders_by_net_score(conn):
    add_movie(conn, "a1", [28])
    add_movie(conn, "a2", [28])
    add_movie(conn, "c1", [35])
    add_movie(conn, "h1", [27])
    add_swipe(conn, "s1", "a1", "like")
    add_swipe(conn, "s1", "a2", "like")
    add_swipe(conn, "s1", "c1", "like")
    add_swipe(conn, "s1", "h1", "skip")

    assert store.top_genres(conn, "s1", 5) == [28, 35, 27]
    assert store.top_genres(conn, "s1", 1) == [28]


def test_explore_small_pool_returns_full_rows_in_id_order(conn):
    for mid in ["c", "a", "b", "seen"]:
        add_movie(conn, mid)
    add_swipe(conn, "s1", "seen", "skip")
    add_swipe(conn, "other", "b", "like", ts_ms=NOW_MS - DAY_MS)

    rows = store.explore(conn, "s1", NOW_MS - 14 * DAY_MS, random.Random(1))

    assert [r["movie_id"] for r in rows] == ["a", "b", "c"]
    by_id = {r["movie_id"]: r for r in rows}
    assert by_id["b"]["likes_recent"] == 1
    assert by_id["a"]["title"] == "Movie a"


def test_explore_sample_keeps_sampled_order_and_skips_seen(conn):
    for i in range(store.EXPLORE_CAP + 20):
        add_movie(conn, f"m{i:03d}")
    add_swipe(conn, "s1", "m000", "like")

    pool = [f"m{i:03d}" for i in range(1, store.EXPLORE_CAP + 20)]
    expected = random.Random(11).sample(pool, store.EXPLORE_CAP)
    rows = store.explore(conn, "s1", 0, random.Random(11))

    assert [r["movie_id"] for r in rows] == expected
