from __future__ import annotations

from pathlib import Path

import pytest

from labgraph import db as db_module
from labgraph.errors import NotFoundError, UpstreamLookupError, ValidationError
from labgraph.repository import (
    EntityRef,
    EntityType,
    delete_entity,
    insert_entity,
    lookup_many,
    lookup_title,
    make_ref,
)
from labgraph.services import link_graph


@pytest.fixture()
def conn(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(db_module, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(db_module, "DB_PATH", str(tmp_path / "app.db"))
    with db_module.get_conn() as connection:
        yield connection


def test_make_ref_validates():
    ref = make_ref("note", " n1 ")
    assert ref == EntityRef(EntityType.NOTE, "n1")
    assert ref.key == "note:n1"
    with pytest.raises(ValidationError):
        make_ref("note", "")


def test_lookup_title_uses_kind_title_column(conn):
    insert_entity(conn, EntityType.PROTOCOL, "Miniprep", {"category": "cloning"}, entity_id="p1")
    assert lookup_title(conn, make_ref("protocol", "p1")) == {
        "entity_type": "protocol",
        "entity_id": "p1",
        "title": "Miniprep",
    }
    with pytest.raises(UpstreamLookupError):
        lookup_title(conn, make_ref("protocol", "missing"))


def test_lookup_many_recovers_per_ref(conn):
    insert_entity(conn, EntityType.NOTE, "Kept", entity_id="n1")
    found = make_ref("note", "n1")
    gone = make_ref("note", "n2")
    results = lookup_many(conn, [found, gone, found])
    assert results[found].succeeded is True
    assert results[gone].succeeded is False
    assert "no longer exists" in results[gone].error


def test_backlinks_survive_dangling_source(conn):
    insert_entity(conn, EntityType.NOTE, "Source", entity_id="n1")
    insert_entity(conn, EntityType.NOTE, "Target", entity_id="n2")
    link_graph.create_link(conn, "note", "n1", "note", "n2")
    conn.execute("DELETE FROM notes WHERE id = 'n1'")

    backlinks = link_graph.get_backlinks(conn, "note", "n2")
    assert len(backlinks) == 1
    assert "source" not in backlinks[0]


def test_synonyms_round_trip_as_list(conn):
    entry = insert_entity(
        conn,
        EntityType.DATABASE_ENTRY,
        "Sodium chloride",
        {"synonyms": ["NaCl", "table salt"], "type": "reagent"},
    )
    assert entry["attributes"]["synonyms"] == ["NaCl", "table salt"]
    assert len(entry["id"]) == 32


def test_delete_missing_entity(conn):
    with pytest.raises(NotFoundError):
        delete_entity(conn, EntityType.TASK, "nope")
