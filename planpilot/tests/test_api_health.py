def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_health_summary(client):
    body = client.get("/api/health").json()
    assert body["ok"] is True
    assert body["env"] == "test"
    assert body["rate_limit_backend"] == "InMemoryRequestLogStore"
    assert body["sweeper_running"] is True
    assert body["payments_mock"] is True
    assert body["generation_configured"] is True
    assert body["uptime_s"] >= 0
    assert body["computed_at"].endswith("Z")


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert r.headers["x-request-id"] == "req-123"

    generated = client.get("/healthz").headers["x-request-id"]
    assert generated and generated != "req-123"


def test_error_payload_carries_request_id(client):
    r = client.get("/api/entitlements", headers={"x-request-id": "req-401"})
    assert r.status_code == 401
    error = r.json()["error"]
    assert error["request_id"] == "req-401"
    assert error["message"] == "Authentication required"
    assert r.json()["detail"] == "Authentication required"


def test_unknown_route_is_normalized(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"


def test_unsafe_request_id_is_replaced(client):
    r = client.get("/healthz", headers={"x-request-id": "bad id with spaces"})
    rid = r.headers["x-request-id"]
    assert rid != "bad id with spaces"
    assert len(rid) == 36

    long_id = "a" * 129
    assert client.get("/healthz", headers={"x-request-id": long_id}).headers["x-request-id"] != long_id
