"""Directed, typed links between entities of any kind.

Backlinks are answered by querying the target side; no mirrored reverse edge
is ever written. Enrichment of the counterpart entity is best effort: a
lookup that fails leaves the edge in the result without its projection.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from ..errors import NotFoundError, ValidationError
from ..repository import (
    ENTITY_KINDS,
    EntityRef,
    EntityType,
    entity_exists,
    lookup_many,
    make_ref,
    parse_entity_type,
)

logger = logging.getLogger(__name__)

LINK_FILTERS = ("source_type", "source_id", "target_type", "target_id")


def _now_ts() -> int:
    return int(time.time())


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _row_to_link(row) -> Dict[str, Any]:
    data = dict(row)
    data["metadata"] = _json_loads(data.get("metadata"), None)
    return data


def _endpoint(link: Dict[str, Any], side: str) -> Optional[EntityRef]:
    try:
        return make_ref(link[f"{side}_type"], link[f"{side}_id"])
    except ValidationError:
        # rows written before a kind was retired
        return None


def _required(value: Optional[str], field: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValidationError(f"{field} is required")
    return clean


def get_link(conn, link_id: str) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
    if not row:
        raise NotFoundError("Link not found", details={"id": link_id})
    return _row_to_link(row)


def create_link(
    conn,
    source_type: str,
    source_id: str,
    target_type: str,
    target_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    origin: str = "manual",
) -> Dict[str, Any]:
    source = EntityRef(
        parse_entity_type(_required(source_type, "sourceType")),
        _required(source_id, "sourceId"),
    )
    target = EntityRef(
        parse_entity_type(_required(target_type, "targetType")),
        _required(target_id, "targetId"),
    )
    if source == target:
        raise ValidationError("source and target must differ", details={"entity": source.key})
    if not entity_exists(conn, source):
        raise ValidationError("Source entity does not exist", details={"entity": source.key})
    if not entity_exists(conn, target):
        raise ValidationError("Target entity does not exist", details={"entity": target.key})

    link_id = uuid4().hex
    conn.execute(
        """
        INSERT INTO links (
            id, source_type, source_id, target_type, target_id, metadata, origin, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            link_id,
            source.entity_type.value,
            source.entity_id,
            target.entity_type.value,
            target.entity_id,
            json.dumps(metadata, ensure_ascii=False) if metadata is not None else None,
            origin,
            _now_ts(),
        ),
    )
    logger.info("Created link %s: %s -> %s", link_id, source.key, target.key)
    return get_link(conn, link_id)


def delete_link(conn, link_id: str) -> None:
    cur = conn.execute("DELETE FROM links WHERE id = ?", (link_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Link not found", details={"id": link_id})
    logger.info("Deleted link %s", link_id)


def list_links(conn, limit: Optional[int] = None, **filters: Optional[str]) -> List[Dict[str, Any]]:
    query = "SELECT * FROM links WHERE 1=1"
    values: List[Any] = []
    for key in LINK_FILTERS:
        value = filters.get(key)
        if value:
            query += f" AND {key} = ?"
            values.append(value)
    query += " ORDER BY created_at DESC, rowid DESC"
    if limit:
        query += " LIMIT ?"
        values.append(limit)
    return [_row_to_link(r) for r in conn.execute(query, values).fetchall()]


def _enrich(conn, links: List[Dict[str, Any]], side: str) -> List[Dict[str, Any]]:
    refs = [ref for ref in (_endpoint(link, side) for link in links) if ref is not None]
    lookups = lookup_many(conn, refs)
    for link in links:
        ref = _endpoint(link, side)
        result = lookups.get(ref) if ref else None
        if result is not None and result.succeeded:
            link[side] = result.value
    return links


def get_backlinks(conn, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
    ref = make_ref(entity_type, entity_id)
    links = list_links(conn, target_type=ref.entity_type.value, target_id=ref.entity_id)
    return _enrich(conn, links, "source")


def get_outgoing(conn, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
    ref = make_ref(entity_type, entity_id)
    links = list_links(conn, source_type=ref.entity_type.value, source_id=ref.entity_id)
    return _enrich(conn, links, "target")


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.casefold()}%"


def search(
    conn,
    query: str,
    limit: Optional[int] = None,
    entity_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Case-insensitive title search across entity kinds, merged in kind order."""
    clean = (query or "").strip()
    if not clean:
        raise ValidationError("query is required")
    cap = limit if limit is not None else int(os.getenv("LINK_SEARCH_LIMIT", "20"))
    if cap <= 0:
        raise ValidationError("limit must be positive")
    types = [parse_entity_type(entity_type)] if entity_type else list(EntityType)
    pattern = _like_pattern(clean)

    results: List[Dict[str, Any]] = []
    for kind_type in types:
        kind = ENTITY_KINDS[kind_type]
        rows = conn.execute(
            f"""
            SELECT id, {kind.title_column} AS title FROM {kind.table}
            WHERE casefold({kind.title_column}) LIKE ? ESCAPE '\\'
            ORDER BY rowid ASC
            LIMIT ?
            """,
            (pattern, cap - len(results)),
        ).fetchall()
        results.extend(
            {"entity_type": kind_type.value, "entity_id": r["id"], "title": r["title"]}
            for r in rows
        )
        if len(results) >= cap:
            break
    return results[:cap]


def _incident_links(conn, ref: EntityRef) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM links
        WHERE (source_type = ? AND source_id = ?)
           OR (target_type = ? AND target_id = ?)
        ORDER BY created_at ASC, rowid ASC
        """,
        (ref.entity_type.value, ref.entity_id, ref.entity_type.value, ref.entity_id),
    ).fetchall()
    return [_row_to_link(r) for r in rows]


def _seed_refs(conn, types: Iterable[EntityType]) -> List[EntityRef]:
    seeds: List[EntityRef] = []
    for kind_type in types:
        kind = ENTITY_KINDS[kind_type]
        rows = conn.execute(f"SELECT id FROM {kind.table} ORDER BY rowid ASC").fetchall()
        seeds.extend(EntityRef(kind_type, r["id"]) for r in rows)
    return seeds


def get_graph(
    conn,
    entity_type: Optional[str] = None,
    max_depth: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    depth = max_depth if max_depth is not None else int(os.getenv("GRAPH_MAX_DEPTH", "3"))
    if depth < 0:
        raise ValidationError("maxDepth must be >= 0")
    node_limit = limit if limit is not None else int(os.getenv("GRAPH_NODE_LIMIT", "500"))
    if node_limit <= 0:
        raise ValidationError("limit must be positive")
    types = [parse_entity_type(entity_type)] if entity_type else list(EntityType)

    # dict as an insertion-ordered set
    visited: Dict[EntityRef, None] = dict.fromkeys(_seed_refs(conn, types)[:node_limit])
    incident: Dict[EntityRef, List[Dict[str, Any]]] = {}
    frontier = list(visited)
    hops = 0
    while frontier and hops < depth and len(visited) < node_limit:
        next_frontier: List[EntityRef] = []
        for ref in frontier:
            incident[ref] = _incident_links(conn, ref)
            for link in incident[ref]:
                for side in ("source", "target"):
                    neighbour = _endpoint(link, side)
                    if neighbour is None or neighbour in visited:
                        continue
                    if len(visited) >= node_limit:
                        break
                    visited[neighbour] = None
                    next_frontier.append(neighbour)
        frontier = next_frontier
        hops += 1

    edges: Dict[str, Dict[str, Any]] = {}
    for ref in visited:
        links = incident[ref] if ref in incident else _incident_links(conn, ref)
        for link in links:
            if link["id"] in edges:
                continue
            source = _endpoint(link, "source")
            target = _endpoint(link, "target")
            if source in visited and target in visited:
                edges[link["id"]] = link

    lookups = lookup_many(conn, visited)
    nodes = []
    for ref in visited:
        node = {"id": ref.key, **ref.to_dict()}
        result = lookups[ref]
        if result.succeeded:
            node["title"] = result.value["title"]
        nodes.append(node)
    return {"nodes": nodes, "edges": list(edges.values())}
