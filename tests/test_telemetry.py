from backend.app import telemetry

from conftest import DAY_MS, NOW_MS, add_movie, add_swipe


def test_route_key_groups_admin_and_event_paths():
    assert telemetry.route_key("GET", "/v1/deck") == "GET /v1/deck"
    assert telemetry.route_key("POST", "/v1/admin/model") == "POST /v1/admin/*"
    assert telemetry.route_key("POST", "/v1/events/swipe") == "POST /v1/events/*"


def test_metrics_window_counts_and_median(conn):
    add_movie(conn, "m1")
    add_swipe(conn, "s1", "m1", "like", ts_ms=NOW_MS - 10)
    add_swipe(conn, "s2", "m1", "skip", ts_ms=NOW_MS - 20)
    add_swipe(conn, "s3", "m1", "like", ts_ms=NOW_MS - 3 * DAY_MS)
    for i, dur in enumerate([10, 30, 20, 40]):
        telemetry.record_request_log(conn, f"r{i}", telemetry.DECK_ROUTE, "GET", "/v1/deck", 200, dur, NOW_MS - 5)

    data = telemetry.metrics_window(conn, NOW_MS, DAY_MS)

    assert (data["swipes"], data["likes"], data["skips"]) == (2, 1, 1)
    assert data["like_rate"] == 0.5
    assert data["p50_deck_ms"] == 25


def test_empty_window_has_no_rates(conn):
    data = telemetry.metrics_window(conn, NOW_MS, DAY_MS)
    assert data["like_rate"] is None
    assert data["p50_deck_ms"] is None


def test_profile_summary(conn):
    add_movie(conn, "a", [28])
    add_movie(conn, "b", [28, 35])
    add_swipe(conn, "s1", "a", "like", ts_ms=1)
    add_swipe(conn, "s1", "b", "skip", ts_ms=2)

    p = telemetry.profile_summary(conn, "s1")

    assert (p["likes"], p["skips"], p["total"]) == (1, 1, 2)
    assert p["recent"][0]["movie_id"] == "b"
    assert p["recent"][0]["genres"] == ["Action", "Comedy"]
    assert p["top_genres"][0]["name"] == "Action"


def test_retention_keeps_swipes_when_disabled(conn):
    add_movie(conn, "m1")
    add_swipe(conn, "s1", "m1", "like", ts_ms=NOW_MS - 100 * DAY_MS)
    telemetry.record_request_log(conn, "old", "GET /v1/deck", "GET", "/v1/deck", 200, 5, NOW_MS - 30 * DAY_MS)
    telemetry.record_request_log(conn, "new", "GET /v1/deck", "GET", "/v1/deck", 200, 5, NOW_MS)

    out = telemetry.run_retention(conn, NOW_MS, request_log_days=14, swipe_days=0)
    assert out == {"request_logs": 1, "swipe_events": 0}

    out = telemetry.run_retention(conn, NOW_MS, request_log_days=14, swipe_days=30)
    assert out == {"request_logs": 0, "swipe_events": 1}


def test_metrics_window_dwell_and_top_liked(conn):
    add_movie(conn, "a", title="Alpha")
    add_movie(conn, "b", title="Beta")
    add_swipe(conn, "s1", "a", "like", ts_ms=NOW_MS - 10)
    add_swipe(conn, "s2", "a", "like", ts_ms=NOW_MS - 20)
    add_swipe(conn, "s1", "b", "like", ts_ms=NOW_MS - 30)
    add_swipe(conn, "s3", "b", "skip", ts_ms=NOW_MS - 40)
    conn.execute("UPDATE swipe_events SET dwell_ms = 1000 WHERE session_id = 's1'")
    conn.execute("UPDATE swipe_events SET dwell_ms = 4000 WHERE session_id = 's2'")
    conn.commit()

    data = telemetry.metrics_window(conn, NOW_MS, DAY_MS)

    assert data["mean_dwell_ms"] == 2000
    assert data["top_liked"] == [
        {"movie_id": "a", "title": "Alpha", "likes": 2},
        {"movie_id": "b", "title": "Beta", "likes": 1},
    ]


def test_metrics_window_without_dwell(conn):
    data = telemetry.metrics_window(conn, NOW_MS, DAY_MS)
    assert data["mean_dwell_ms"] is None
    assert data["top_liked"] == []
