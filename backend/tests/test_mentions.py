from __future__ import annotations

from fastapi.testclient import TestClient

from labgraph.services.mentions import (
    MentionCandidate,
    extract_bracket_refs,
    find_mentions,
    render_with_mentions,
    resolve_bracket_refs,
)


NACL = MentionCandidate("databaseEntry", "d1", "NaCl", ("sodium chloride",))
SODIUM = MentionCandidate("databaseEntry", "d2", "Na")


def test_whole_word_matching():
    text = "Treat with NaCl solution"
    assert [(m.start, m.end, m.text) for m in find_mentions(text, [NACL])] == [(11, 15, "NaCl")]
    assert find_mentions(text, [SODIUM]) == []


def test_case_insensitive_and_synonyms():
    text = "Add nacl, then more Sodium Chloride."
    matches = find_mentions(text, [NACL])
    assert [m.text for m in matches] == ["nacl", "Sodium Chloride"]
    assert all(m.entity is NACL for m in matches)


def test_punctuation_and_regex_characters():
    buffer = MentionCandidate("recipe", "r1", "PBS (1x)")
    text = "Wash in PBS (1x), twice."
    matches = find_mentions(text, [buffer])
    assert [m.text for m in matches] == ["PBS (1x)"]


def test_empty_text_has_no_mentions():
    assert find_mentions("", [NACL]) == []


def test_overlapping_entities_are_all_reported():
    tris = MentionCandidate("recipe", "r1", "Tris")
    tris_hcl = MentionCandidate("recipe", "r2", "Tris HCl")
    matches = find_mentions("Use Tris HCl pH 8", [tris, tris_hcl])
    assert sorted((m.entity.entity_id, m.start, m.end) for m in matches) == [
        ("r1", 4, 8),
        ("r2", 4, 12),
    ]


def test_render_prefers_longest_at_same_start():
    tris = MentionCandidate("recipe", "r1", "Tris")
    tris_hcl = MentionCandidate("recipe", "r2", "Tris HCl")
    text = "Use Tris HCl pH 8"
    segments = render_with_mentions(text, find_mentions(text, [tris, tris_hcl]))
    assert [(s.kind, s.text) for s in segments] == [
        ("text", "Use "),
        ("mention", "Tris HCl"),
        ("text", " pH 8"),
    ]
    assert segments[1].entity["entity_id"] == "r2"
    assert "".join(s.text for s in segments) == text


def test_render_attaches_click_action():
    text = "NaCl"
    clicked = []
    segments = render_with_mentions(
        text, find_mentions(text, [NACL]), on_click=lambda c: clicked.append(c.entity_id) or c.entity_id
    )
    assert segments[0].action == "d1"
    assert clicked == ["d1"]
    assert "action" not in segments[0].to_dict()


def test_extract_bracket_refs():
    text = "See [[Gel run]] and [[ Gel run ]] then [[Blot]] and [[]]"
    assert extract_bracket_refs(text) == ["Gel run", "Blot"]


def test_resolve_bracket_refs():
    notes = [{"id": "n1", "title": "Gel run"}, {"id": "n2", "title": "Other"}]
    segments = resolve_bracket_refs("Before [[Gel run]] and [[Missing]].", notes)
    assert [(s.kind, s.text) for s in segments] == [
        ("text", "Before "),
        ("link", "Gel run"),
        ("text", " and "),
        ("unresolved", "Missing"),
        ("text", "."),
    ]
    assert segments[1].entity == {"entity_type": "note", "entity_id": "n1", "title": "Gel run"}


def test_find_endpoint(client: TestClient):
    res = client.post(
        "/api/mentions/find",
        json={
            "text": "Treat with NaCl solution",
            "candidates": [
                {"entityType": "databaseEntry", "entityId": "d1", "name": "NaCl"},
                {"entityType": "databaseEntry", "entityId": "d2", "name": "Na"},
            ],
        },
    )
    assert res.status_code == 200
    assert res.json() == [
        {
            "start": 11,
            "end": 15,
            "text": "NaCl",
            "entity": {"entityType": "databaseEntry", "entityId": "d1", "title": "NaCl"},
        }
    ]


def test_scan_endpoint_uses_store(client: TestClient, make_entity):
    make_entity("databaseEntry", "d1", "Sodium chloride", synonyms=["NaCl"])
    make_entity("protocol", "p1", "Miniprep")

    res = client.post(
        "/api/mentions/scan",
        json={"text": "Miniprep, then NaCl wash", "entityTypes": ["databaseEntry", "protocol"]},
    )
    assert res.status_code == 200
    body = res.json()
    assert [(m["start"], m["entity"]["entityId"]) for m in body["matches"]] == [(0, "p1"), (15, "d1")]
    assert [s["kind"] for s in body["segments"]] == ["mention", "text", "mention", "text"]


def test_note_references_become_links(client: TestClient, make_entity):
    target = make_entity("note", "n1", "Gel run")
    make_entity("note", "n2", "Summary", content="Compare with [[Gel run]] and [[Nope]]")

    backlinks = client.get(f"/api/links/backlinks/note/{target['id']}").json()
    assert len(backlinks) == 1
    assert backlinks[0]["origin"] == "mention"
    assert backlinks[0]["metadata"] == {"linkText": "Gel run"}

    manual = client.post(
        "/api/links",
        json={"sourceType": "note", "sourceId": "n2", "targetType": "note", "targetId": "n1"},
    )
    assert manual.status_code == 201

    client.patch("/api/entities/note/n2", json={"attributes": {"content": "Nothing linked"}})
    remaining = client.get("/api/links/outgoing/note/n2").json()
    assert [link["origin"] for link in remaining] == ["manual"]


def test_resolve_references_endpoint(client: TestClient, make_entity):
    make_entity("note", "n1", "Gel run")
    res = client.post(
        "/api/mentions/resolve-references", json={"text": "[[Gel run]] vs [[Missing]]"}
    )
    assert res.status_code == 200
    assert res.json() == [
        {"kind": "link", "text": "Gel run", "entity": {"entityType": "note", "entityId": "n1", "title": "Gel run"}},
        {"kind": "text", "text": " vs "},
        {"kind": "unresolved", "text": "Missing"},
    ]
