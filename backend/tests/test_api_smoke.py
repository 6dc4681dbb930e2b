from __future__ import annotations

import pytest
from fastapi.testclient import TestClient


def test_health(client: TestClient):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json().get("status") == "ok"


def test_entity_crud(client: TestClient):
    create = client.post(
        "/api/entities/task",
        json={"id": "T1", "title": "Order primers", "attributes": {"priority": 3}},
    )
    assert create.status_code == 201
    body = create.json()
    assert body["id"] == "T1"
    assert body["entityType"] == "task"
    assert body["attributes"]["status"] == "todo"
    assert body["attributes"]["priority"] == 3

    listing = client.get("/api/entities/task")
    assert listing.status_code == 200
    assert [e["id"] for e in listing.json()] == ["T1"]

    update = client.patch("/api/entities/task/T1", json={"attributes": {"status": "done"}})
    assert update.status_code == 200
    assert update.json()["attributes"]["status"] == "done"

    remove = client.delete("/api/entities/task/T1")
    assert remove.status_code == 200
    assert client.get("/api/entities/task/T1").status_code == 404


def test_unknown_entity_type_is_validation_error(client: TestClient):
    res = client.post("/api/entities/spaceship", json={"title": "x"})
    assert res.status_code == 400
    body = res.json()
    assert body["error"].startswith("Unknown entity type")
    assert "note" in body["details"]["allowed"]


def test_unknown_attribute_rejected(client: TestClient):
    res = client.post("/api/entities/note", json={"title": "x", "attributes": {"bogus": 1}})
    assert res.status_code == 400
    assert "bogus" in res.json()["error"]


def test_duplicate_entity_id_rejected(client: TestClient):
    assert client.post("/api/entities/note", json={"id": "n1", "title": "A"}).status_code == 201
    res = client.post("/api/entities/note", json={"id": "n1", "title": "B"})
    assert res.status_code == 400


def test_request_body_errors_use_error_envelope(client: TestClient):
    res = client.post("/api/links", json={"sourceType": "note"})
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Validation error"
    assert isinstance(body["details"], list)


def test_maintenance_cleanup_removes_orphans(client: TestClient):
    from labgraph import db as db_module

    client.post("/api/entities/note", json={"id": "a", "title": "A"})
    client.post("/api/entities/note", json={"id": "b", "title": "B"})
    assert client.post(
        "/api/links",
        json={"sourceType": "note", "sourceId": "a", "targetType": "note", "targetId": "b"},
    ).status_code == 201

    # bypass the cascading delete path
    with db_module.get_conn() as conn:
        conn.execute("DELETE FROM notes WHERE id = 'b'")

    res = client.post("/api/maintenance/cleanup")
    assert res.status_code == 200
    assert res.json()["links"] == 1
    assert client.get("/api/links").json() == []


def test_logging_is_configured_by_app_startup(monkeypatch: pytest.MonkeyPatch):
    import logging

    from labgraph.main import app

    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    with TestClient(app):
        pass
    assert calls and calls[0]["level"] == "DEBUG"
