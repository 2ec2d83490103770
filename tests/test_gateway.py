from pymongo.errors import PyMongoError

from database import DocumentStore


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["database"] == "connected"
    assert body["readyState"] == 1
    assert body["timestamp"]


def test_store_unavailable(client, store, monkeypatch):
    monkeypatch.setattr(store, "ready_state", lambda: 0)
    for path in ["/products", "/products/status/available", "/settings"]:
        response = client.get(path)
        assert response.status_code == 503
        assert response.json()["error"] == "Database unavailable"
    health = client.get("/").json()
    assert health["database"] == "disconnected"
    assert health["readyState"] == 0


def test_unknown_route(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


def test_database_error(client, store, monkeypatch):
    def fail(*args, **kwargs):
        raise PyMongoError("connection reset")
    monkeypatch.setattr(store, "get_documents", fail)
    response = client.get("/products")
    assert response.status_code == 500
    assert response.json() == {"error": "database error", "details": "connection reset"}


def test_unhandled_error(client, store, monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("boom")
    monkeypatch.setattr(store, "get_documents", fail)
    response = client.get("/products")
    assert response.status_code == 500
    assert response.json() == {"error": "boom"}


def test_malformed_json_body(client):
    response = client.patch(
        "/settings/about", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid request"


def test_unhandled_error_keeps_cors_headers(client, store, monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("boom")
    monkeypatch.setattr(store, "get_documents", fail)
    response = client.get("/products", headers={"Origin": "http://shop.example"})
    assert response.status_code == 500
    assert response.headers["access-control-allow-origin"] == "*"


class _Topology:
    def __init__(self, writable):
        self.writable = writable

    def has_writable_server(self):
        return self.writable


class _Client:
    def __init__(self, writable):
        self.topology_description = _Topology(writable)


class _UnreachableDb:
    def command(self, *args, **kwargs):
        raise AssertionError("readiness must not hit the server")


def test_ready_state_reads_driver_topology():
    assert DocumentStore(_UnreachableDb(), _Client(writable=False)).ready_state() == 0
    assert DocumentStore(_UnreachableDb(), _Client(writable=True)).ready_state() == 1
