"""HTTP surface: auth, stats, leaderboards, presence snapshot and health checks."""


def test_session_requires_bearer_token(client):
    resp = client.post("/v1/stats/session", json={"sessionDuration": 30})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "credential_missing"
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_garbage_token_is_rejected(client):
    resp = client.get("/v1/stats/me", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "credential_invalid"


def test_invalid_session_payload_is_400(client, auth_headers):
    resp = client.post("/v1/stats/session", json={"sessionDuration": -5}, headers=auth_headers("alice"))
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["fields"]


def test_sessions_accumulate_into_stats(client, auth_headers):
    headers = auth_headers("alice")
    for seconds in (30, 45):
        resp = client.post(
            "/v1/stats/session",
            json={"sessionDuration": seconds, "language": "python", "project": "radar"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json() == {"data": {"recorded": True}}

    resp = client.post("/v1/stats/commits", json={"count": 4}, headers=headers)
    assert resp.json() == {"data": {"recorded": True, "weeklyCommits": 4}}

    me = client.get("/v1/stats/me", headers=headers).json()["data"]
    assert me["todaySession"] == 75
    assert me["streak"]["currentStreak"] == 1
    assert me["streak"]["streakStatus"] == "active"
    assert me["weeklyStats"]["totalSeconds"] == 75
    assert me["weeklyStats"]["totalCommits"] == 4
    assert me["weeklyStats"]["rank"] == 1
    assert me["recentAchievements"] == []

    streak = client.get("/v1/stats/streak", headers=headers).json()["data"]
    assert streak["isActiveToday"] is True
    weekly = client.get("/v1/stats/weekly", headers=headers).json()["data"]
    assert weekly["totalSeconds"] == 75


def test_fresh_user_has_broken_empty_streak(client, auth_headers):
    streak = client.get("/v1/stats/streak", headers=auth_headers("dave")).json()["data"]
    assert streak["currentStreak"] == 0
    assert streak["streakStatus"] == "broken"
    assert streak.get("lastActiveDate") is None


def test_achievements_are_paginated(client, auth_headers, ledger):
    from devradar.features.stats.achievements import STREAK_MILESTONES

    for milestone in STREAK_MILESTONES:
        ledger.grant("alice", milestone)

    first = client.get("/v1/stats/achievements?limit=2", headers=auth_headers("alice")).json()
    assert len(first["data"]) == 2
    assert first["pagination"] == {"limit": 2, "offset": 0, "hasMore": True}

    rest = client.get("/v1/stats/achievements?limit=2&offset=2", headers=auth_headers("alice")).json()
    assert len(rest["data"]) == 1
    assert rest["pagination"]["hasMore"] is False


def test_weekly_leaderboard(client, auth_headers):
    client.post("/v1/stats/session", json={"sessionDuration": 100}, headers=auth_headers("alice"))
    client.post("/v1/stats/session", json={"sessionDuration": 300}, headers=auth_headers("bob"))

    resp = client.get("/v1/leaderboards/weekly/time?limit=1", headers=auth_headers("alice"))
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "public, max-age=60"
    data = resp.json()["data"]
    assert [e["userId"] for e in data["leaderboard"]] == ["bob"]
    assert data["leaderboard"][0]["isFriend"] is True
    assert data["myRank"] == 2
    assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "hasMore": True}


def test_unknown_leaderboard_metric_is_400(client, auth_headers):
    resp = client.get("/v1/leaderboards/weekly/lines", headers=auth_headers("alice"))
    assert resp.status_code == 400


def test_friends_leaderboard(client, auth_headers):
    client.post("/v1/stats/session", json={"sessionDuration": 100}, headers=auth_headers("alice"))
    client.post("/v1/stats/session", json={"sessionDuration": 300}, headers=auth_headers("carol"))
    client.post("/v1/stats/session", json={"sessionDuration": 900}, headers=auth_headers("dave"))

    resp = client.get("/v1/leaderboards/friends", headers=auth_headers("alice"))
    assert resp.headers["Cache-Control"] == "public, max-age=60"
    data = resp.json()["data"]
    assert [e["userId"] for e in data["leaderboard"]] == ["carol", "alice"]
    assert data["myRank"] == 2
    assert "pagination" not in data


def test_network_activity(client, auth_headers):
    client.post("/v1/stats/session", json={"sessionDuration": 60, "language": "Go"}, headers=auth_headers("bob"))

    resp = client.get("/v1/leaderboards/network-activity", headers=auth_headers("alice"))
    assert resp.headers["Cache-Control"] == "public, max-age=10"
    data = resp.json()["data"]
    assert data["totalActiveUsers"] == 1
    assert data["message"] == "1 developer coding"
    assert data["topLanguages"] == [{"language": "go", "count": 1}]


def test_friends_presence_snapshot(client, auth_headers):
    resp = client.get("/v1/presence/friends", headers=auth_headers("alice"))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [(p["userId"], p["status"]) for p in data] == [("bob", "offline"), ("carol", "offline")]


def test_health_checks_and_metrics(client):
    assert client.get("/healthz").json() == {"status": "ok"}

    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["backend"] == "memory"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_readyz_reports_unreachable_data_layer(client, social_graph, monkeypatch):
    monkeypatch.setattr(social_graph, "ping", lambda: False)
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["checks"] == {"store": True, "database": False}


def test_request_id_is_echoed_on_errors(client):
    resp = client.get("/v1/stats/me", headers={"X-Request-Id": "rid-42"})
    assert resp.headers["x-request-id"] == "rid-42"
    assert resp.json()["error"]["request_id"] == "rid-42"
