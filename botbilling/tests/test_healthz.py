import botbilling.api.health as health_api


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_billing_tables(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_missing_tables(client, monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "webhook_deliveries"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "webhook_deliveries" in resp.json()["detail"]


def test_readyz_db_unreachable(client, monkeypatch):
    def broken_engine():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", broken_engine)
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"
