import pytest


@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE"])
def test_ping_echoes_method(client, method):
    r = client.request(method, "/api/ping")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "note": "ping from Facelex backend", "method": method}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_standalone_ping_app():
    from fastapi.testclient import TestClient

    from ping_backend.main import app

    r = TestClient(app).post("/api/ping")
    assert r.json()["method"] == "POST"
