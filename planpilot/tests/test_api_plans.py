def test_list_plans(client):
    r = client.get("/api/plans")
    assert r.status_code == 200
    body = r.json()
    free, pro = body["plans"]

    assert free["id"] == "free"
    assert free["free"] is True
    assert free["display_price"] == "Free"
    assert free["features"] == []

    assert pro["id"] == "pro"
    assert pro["monthly_price"] == 19.99
    assert pro["yearly_price"] == 199.99
    assert pro["display_price"] == "$19.99"
    assert pro["display_yearly_price"] == "$199.99"
    assert pro["yearly_savings"] == 39.89
    assert pro["popular"] is True
    assert "document_export" in pro["features"]

    assert body["gated_features"] == sorted(pro["features"])


def test_plans_are_public(client):
    # No X-User-Id header needed.
    assert client.get("/api/plans/pro").status_code == 200


def test_get_plan_case_insensitive(client):
    assert client.get("/api/plans/PRO").json()["id"] == "pro"


def test_unknown_plan_is_404(client):
    r = client.get("/api/plans/enterprise")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"
