from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("CRITICAL_DEPENDENCY_TYPES", raising=False)

    from labgraph import db as db_module

    monkeypatch.setattr(db_module, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(db_module, "DB_PATH", str(tmp_path / "app.db"))
    db_module.ensure_db()

    from labgraph.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def make_entity(client: TestClient):
    def _make(entity_type: str, entity_id: str, title: str, **attributes):
        res = client.post(
            f"/api/entities/{entity_type}",
            json={"id": entity_id, "title": title, "attributes": attributes},
        )
        assert res.status_code == 201, res.text
        return res.json()

    return _make
