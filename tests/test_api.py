import asyncio

import pytest
from fastapi.testclient import TestClient

from backend.app import telemetry
from backend.app.config import settings
from backend.app.db import connect
from backend.app.main import app

from conftest import GENRES, add_movie

ADMIN = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/app.db")
    monkeypatch.setattr(settings, "admin_token", "s3cret")
    with TestClient(app) as c:
        yield c


@pytest.fixture
def catalog(client):
    conn = connect()
    conn.executemany("INSERT INTO tmdb_genres(genre_id, name) VALUES (?, ?)", list(GENRES.items()))
    conn.commit()
    for i in range(10):
        add_movie(conn, f"m{i}", [28 if i % 2 else 35])
    conn.close()


def test_health_reports_schema_phase(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["phase"] == "phase7_two_stage_cf"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"x-request-id": "abc-123"})
    assert r.headers["x-request-id"] == "abc-123"


def test_deck_then_swipe(client, catalog):
    r = client.get("/v1/deck", params={"session_id": "s1", "limit": 4})
    assert r.status_code == 200
    body = r.json()
    assert len(body["deck"]) == 4
    assert body["model_version"] == settings.default_model_version
    first = body["deck"][0]
    assert set(first) == {"id", "title", "year", "poster_url", "genres", "reason_code", "score"}

    swipe = {"session_id": "s1", "deck_id": body["deck_id"], "movie_id": first["id"], "action": "like", "ts_ms": 1000}
    r1 = client.post("/v1/events/swipe", json=swipe)
    r2 = client.post("/v1/events/swipe", json=swipe)

    assert r1.status_code == 200
    assert r1.json()["duplicate"] is False
    assert r2.json()["duplicate"] is True
    assert r1.json()["event_id"] == r2.json()["event_id"]

    profile = client.get("/v1/profile", params={"session_id": "s1"}).json()
    assert profile["likes"] == 1


def test_deck_limit_is_validated(client):
    assert client.get("/v1/deck", params={"session_id": "s1", "limit": 0}).status_code == 422
    assert client.get("/v1/deck", params={"session_id": "s1", "limit": 51}).status_code == 422


def test_empty_catalog_returns_no_deck(client):
    body = client.get("/v1/deck", params={"session_id": "s1"}).json()
    assert body["deck"] == []
    assert body["deck_id"] is None
    assert body["reason"] == "no candidates"


def test_swipe_on_unknown_deck_is_404(client, catalog):
    swipe = {"session_id": "s1", "deck_id": "deck-not-served", "movie_id": "m1", "action": "skip"}
    assert client.post("/v1/events/swipe", json=swipe).status_code == 404


def test_swipe_action_is_validated(client):
    swipe = {"session_id": "s1", "deck_id": "deck-not-served", "movie_id": "m1", "action": "love"}
    assert client.post("/v1/events/swipe", json=swipe).status_code == 422


def test_admin_routes_need_token(client):
    assert client.get("/v1/admin/model").status_code == 401
    assert client.get("/v1/admin/model", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/v1/metrics").status_code == 401
    assert client.get("/v1/metrics", headers={"x-admin-token": "s3cret"}).status_code == 200


def test_model_pointer(client, catalog):
    r = client.get("/v1/admin/model", headers=ADMIN)
    assert r.json()["current_model_version"] == settings.default_model_version

    assert client.post("/v1/admin/model", json={"model_version": "cf_v9"}, headers=ADMIN).status_code == 400

    conn = connect()
    conn.execute(
        "INSERT INTO model_versions(model_version, created_at_ms, snapshot_id, algo, metrics_json) "
        "VALUES ('cf_v9', 1, 'snap', 'cf', '{\"k\": 10, \"ndcg_at_k\": 0.2}')"
    )
    conn.commit()
    conn.close()

    r = client.post("/v1/admin/model", json={"model_version": "cf_v9"}, headers=ADMIN)
    assert r.status_code == 200
    assert client.get("/v1/admin/model", headers=ADMIN).json()["known_models"][0]["model_version"] == "cf_v9"

    deck = client.get("/v1/deck", params={"session_id": "s2"}).json()
    assert deck["model_version"] == "cf_v9"


def test_unevaluated_model_cannot_be_made_current(client):
    conn = connect()
    conn.execute(
        "INSERT INTO model_versions(model_version, created_at_ms, snapshot_id, algo) VALUES ('never_evaluated', 1, 'snap', 'cf')"
    )
    conn.commit()
    conn.close()

    r = client.post("/v1/admin/model", json={"model_version": "never_evaluated"}, headers=ADMIN)

    assert r.status_code == 400
    assert r.json()["detail"] == "model_version has no offline eval"
    current = client.get("/v1/admin/model", headers=ADMIN).json()["current_model_version"]
    assert current == settings.default_model_version


def test_request_log_is_written_off_the_event_loop(client, monkeypatch):
    calls = []

    def spy(conn, req_id, *args):
        try:
            asyncio.get_running_loop()
            calls.append("event-loop")
        except RuntimeError:
            calls.append("worker-thread")

    monkeypatch.setattr(telemetry, "record_request_log", spy)
    client.get("/v1/profile", params={"session_id": "s1"})

    assert calls == ["worker-thread"]


def test_metrics_window(client, catalog):
    client.get("/v1/deck", params={"session_id": "s1", "limit": 3})
    data = client.get("/v1/metrics", params={"window": "6h"}, headers=ADMIN).json()
    assert data["window_ms"] == 6 * 60 * 60 * 1000
    assert data["impressions"] == 3
