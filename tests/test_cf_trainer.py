import pytest

from backend.recommender.cf_trainer import (
    ALGO,
    MODEL_FILE,
    NEIGHBORS_FILE,
    TrainConfig,
    compute_neighbors,
    co_occurrence,
    shrunk_cosine,
    train_from_swipes,
    train_snapshot,
)
from backend.recommender.errors import ValidationError
from backend.recommender.snapshot import MANIFEST_FILE, SWIPES_FILE, read_json, write_json

from conftest import swipe_row


def likes(session_id, *movie_ids, start=0):
    return [swipe_row(f"{session_id}-{i}", session_id, m, "like", start + i) for i, m in enumerate(movie_ids)]


def write_snapshot(root, swipes, snapshot_id="snap-1"):
    snap = root / snapshot_id
    write_json(snap / SWIPES_FILE, swipes)
    write_json(snap / MANIFEST_FILE, {"snapshot_id": snapshot_id, "files": [SWIPES_FILE]})
    return snap


def test_two_sessions_liking_the_same_pair_makes_neighbors():
    seqs = {"s1": ["X", "Y"], "s2": ["X", "Y"]}
    rows = compute_neighbors(seqs, TrainConfig())

    pairs = {(r["movie_id"], r["neighbor_movie_id"]): r["score"] for r in rows}
    assert set(pairs) == {("X", "Y"), ("Y", "X")}
    assert pairs[("X", "Y")] > 0
    # cosine 1.0, shrunk by 2 / (2 + 10)
    assert pairs[("X", "Y")] == pytest.approx(2 / 12)


def test_pairs_below_min_co_are_dropped():
    seqs = {"s1": ["X", "Y"], "s2": ["X", "Z"], "s3": ["X", "Z"]}
    rows = compute_neighbors(seqs, TrainConfig(min_co=2))
    assert {(r["movie_id"], r["neighbor_movie_id"]) for r in rows} == {("X", "Z"), ("Z", "X")}


def test_top_k_per_movie_sorted_by_score():
    seqs = {f"s{i}": ["A", "B"] for i in range(5)}
    seqs.update({f"t{i}": ["A", "C"] for i in range(3)})
    rows = compute_neighbors(seqs, TrainConfig(k=1))

    a_rows = [r for r in rows if r["movie_id"] == "A"]
    assert len(a_rows) == 1
    assert a_rows[0]["neighbor_movie_id"] == "B"


def test_session_like_cap_limits_pairs():
    co = co_occurrence({"s1": ["A", "B", "C", "D"]}, session_like_cap=2)
    assert co == {"A": {"B": 1}, "B": {"A": 1}}


def test_shrink_pulls_small_counts_toward_zero():
    assert shrunk_cosine(2, 2, 2, 10.0) < shrunk_cosine(20, 20, 20, 10.0)
    assert shrunk_cosine(5, 5, 5, 0.0) == pytest.approx(1.0)


def test_training_uses_likes_only_and_is_deterministic():
    swipes = likes("s1", "X", "Y") + likes("s2", "Y", "X") + [swipe_row("skip-1", "s3", "X", "skip")]
    m1, n1 = train_from_swipes(swipes, "cf_v1", "snap-1", TrainConfig(), created_at_ms=1)
    m2, n2 = train_from_swipes(list(reversed(swipes)), "cf_v1", "snap-1", TrainConfig(), created_at_ms=1)

    assert n1 == n2
    assert m1 == m2
    assert m1["algo"] == ALGO
    assert m1["stats"]["sessions_with_likes"] == 2
    assert m1["params"]["k"] == 30


def test_train_snapshot_writes_model_files(tmp_path):
    snap = write_snapshot(tmp_path, likes("s1", "X", "Y") + likes("s2", "X", "Y"))
    out = tmp_path / "models" / "cf_v1"

    model = train_snapshot(snap, out, "cf_v1")

    assert model["snapshot_id"] == "snap-1"
    assert read_json(out / MODEL_FILE)["model_version"] == "cf_v1"
    assert len(read_json(out / NEIGHBORS_FILE)) == 2


def test_bad_snapshot_fails_before_anything_is_written(tmp_path):
    swipes = likes("s1", "X", "Y")
    del swipes[0]["action"]
    snap = write_snapshot(tmp_path, swipes)
    out = tmp_path / "models" / "cf_v1"

    with pytest.raises(ValidationError) as err:
        train_snapshot(snap, out, "cf_v1")

    assert any("action" in p for p in err.value.problems)
    assert not (out / MODEL_FILE).exists()
    assert not (out / NEIGHBORS_FILE).exists()
