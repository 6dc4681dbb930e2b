from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from .db import ENTITY_TABLE_COLUMNS
from .errors import NotFoundError, UpstreamLookupError, ValidationError

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    NOTE = "note"
    PROJECT = "project"
    EXPERIMENT = "experiment"
    PDF = "pdf"
    HIGHLIGHT = "highlight"
    DATABASE_ENTRY = "databaseEntry"
    TASK = "task"
    PROTOCOL = "protocol"
    RECIPE = "recipe"
    LITERATURE_NOTE = "literatureNote"


@dataclass(frozen=True)
class EntityKind:
    table: str
    title_column: str

    @property
    def columns(self) -> List[str]:
        return list(ENTITY_TABLE_COLUMNS[self.table].keys())

    @property
    def attribute_columns(self) -> List[str]:
        return [c for c in self.columns if c != self.title_column]


ENTITY_KINDS: Dict[EntityType, EntityKind] = {
    EntityType.NOTE: EntityKind("notes", "title"),
    EntityType.PROJECT: EntityKind("projects", "name"),
    EntityType.EXPERIMENT: EntityKind("experiments", "name"),
    EntityType.PDF: EntityKind("pdfs", "title"),
    EntityType.HIGHLIGHT: EntityKind("highlights", "text"),
    EntityType.DATABASE_ENTRY: EntityKind("database_entries", "name"),
    EntityType.TASK: EntityKind("tasks", "title"),
    EntityType.PROTOCOL: EntityKind("protocols", "name"),
    EntityType.RECIPE: EntityKind("recipes", "name"),
    EntityType.LITERATURE_NOTE: EntityKind("literature_notes", "title"),
}

JSON_COLUMNS = {"synonyms"}


@dataclass(frozen=True)
class EntityRef:
    entity_type: EntityType
    entity_id: str

    @property
    def key(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"

    def to_dict(self) -> Dict[str, str]:
        return {"entity_type": self.entity_type.value, "entity_id": self.entity_id}


@dataclass
class LookupResult:
    ref: EntityRef
    value: Optional[Dict[str, Any]] = None
    succeeded: bool = False
    error: Optional[str] = None


def _now_ts() -> int:
    return int(time.time())


def parse_entity_type(value: Any) -> EntityType:
    if isinstance(value, EntityType):
        return value
    try:
        return EntityType(str(value or "").strip())
    except ValueError:
        raise ValidationError(
            f"Unknown entity type: {value}",
            details={"allowed": [t.value for t in EntityType]},
        ) from None


def make_ref(entity_type: Any, entity_id: Any) -> EntityRef:
    clean_id = str(entity_id or "").strip()
    if not clean_id:
        raise ValidationError("entity id is required")
    return EntityRef(parse_entity_type(entity_type), clean_id)


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(list(value), ensure_ascii=False)
    return value


def _decode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        if not value:
            return []
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return []
    return value


def _row_to_entity(entity_type: EntityType, row: sqlite3.Row) -> Dict[str, Any]:
    kind = ENTITY_KINDS[entity_type]
    data = dict(row)
    return {
        "id": data["id"],
        "entity_type": entity_type.value,
        "title": data.get(kind.title_column),
        "attributes": {c: _decode(c, data.get(c)) for c in kind.attribute_columns},
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
    }


def _check_attributes(kind: EntityKind, attributes: Dict[str, Any]) -> None:
    unknown = sorted(set(attributes) - set(kind.attribute_columns))
    if unknown:
        raise ValidationError(
            f"Unknown fields for {kind.table}: {', '.join(unknown)}",
            details={"allowed": kind.attribute_columns},
        )


def find_entity(conn, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
    kind = ENTITY_KINDS[entity_type]
    row = conn.execute(f"SELECT * FROM {kind.table} WHERE id = ?", (entity_id,)).fetchone()
    return _row_to_entity(entity_type, row) if row else None


def entity_exists(conn, ref: EntityRef) -> bool:
    kind = ENTITY_KINDS[ref.entity_type]
    row = conn.execute(f"SELECT 1 FROM {kind.table} WHERE id = ?", (ref.entity_id,)).fetchone()
    return row is not None


def list_entities(
    conn, entity_type: EntityType, limit: Optional[int] = None
) -> List[Dict[str, Any]]:
    kind = ENTITY_KINDS[entity_type]
    query = f"SELECT * FROM {kind.table} ORDER BY rowid ASC"
    values: List[Any] = []
    if limit:
        query += " LIMIT ?"
        values.append(limit)
    rows = conn.execute(query, values).fetchall()
    return [_row_to_entity(entity_type, r) for r in rows]


def insert_entity(
    conn,
    entity_type: EntityType,
    title: str,
    attributes: Optional[Dict[str, Any]] = None,
    entity_id: Optional[str] = None,
) -> Dict[str, Any]:
    kind = ENTITY_KINDS[entity_type]
    attributes = dict(attributes or {})
    _check_attributes(kind, attributes)
    if not (title or "").strip():
        raise ValidationError(f"{kind.title_column} is required")
    new_id = (entity_id or "").strip() or uuid4().hex
    now_ts = _now_ts()
    fields = ["id", kind.title_column, "created_at", "updated_at"]
    values: List[Any] = [new_id, title.strip(), now_ts, now_ts]
    for key, value in attributes.items():
        if value is None:
            continue
        fields.append(key)
        values.append(_encode(key, value))
    placeholders = ",".join(["?"] * len(fields))
    try:
        conn.execute(
            f"INSERT INTO {kind.table} ({','.join(fields)}) VALUES ({placeholders})",
            values,
        )
    except sqlite3.IntegrityError:
        raise ValidationError(f"{entity_type.value} {new_id} already exists") from None
    return find_entity(conn, entity_type, new_id)


def update_entity(
    conn,
    entity_type: EntityType,
    entity_id: str,
    title: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    kind = ENTITY_KINDS[entity_type]
    attributes = dict(attributes or {})
    _check_attributes(kind, attributes)
    if find_entity(conn, entity_type, entity_id) is None:
        raise NotFoundError(f"{entity_type.value} {entity_id} not found")
    updates: Dict[str, Any] = {k: _encode(k, v) for k, v in attributes.items()}
    if title is not None:
        if not title.strip():
            raise ValidationError(f"{kind.title_column} cannot be empty")
        updates[kind.title_column] = title.strip()
    if not updates:
        raise ValidationError("No fields to update")
    updates["updated_at"] = _now_ts()
    fields = [f"{key} = ?" for key in updates]
    values = list(updates.values()) + [entity_id]
    conn.execute(f"UPDATE {kind.table} SET {', '.join(fields)} WHERE id = ?", values)
    return find_entity(conn, entity_type, entity_id)


def delete_entity(conn, entity_type: EntityType, entity_id: str) -> Dict[str, int]:
    """Delete an entity and every edge that points at or away from it."""
    kind = ENTITY_KINDS[entity_type]
    cur = conn.execute(f"DELETE FROM {kind.table} WHERE id = ?", (entity_id,))
    if cur.rowcount == 0:
        raise NotFoundError(f"{entity_type.value} {entity_id} not found")
    links = conn.execute(
        """
        DELETE FROM links
        WHERE (source_type = ? AND source_id = ?)
           OR (target_type = ? AND target_id = ?)
        """,
        (entity_type.value, entity_id, entity_type.value, entity_id),
    ).rowcount
    dependencies = 0
    memberships = 0
    if entity_type == EntityType.TASK:
        dependencies = conn.execute(
            "DELETE FROM task_dependencies WHERE from_task_id = ? OR to_task_id = ?",
            (entity_id, entity_id),
        ).rowcount
        memberships = conn.execute(
            "DELETE FROM workflow_tasks WHERE task_id = ?", (entity_id,)
        ).rowcount
    logger.info(
        "Deleted %s %s (links=%d, dependencies=%d, memberships=%d)",
        entity_type.value,
        entity_id,
        links,
        dependencies,
        memberships,
    )
    return {"links": links, "dependencies": dependencies, "memberships": memberships}


def lookup_title(conn, ref: EntityRef) -> Dict[str, Any]:
    """Minimal display projection of an entity; raises UpstreamLookupError."""
    kind = ENTITY_KINDS[ref.entity_type]
    try:
        row = conn.execute(
            f"SELECT id, {kind.title_column} AS title FROM {kind.table} WHERE id = ?",
            (ref.entity_id,),
        ).fetchone()
    except sqlite3.Error as exc:
        raise UpstreamLookupError(f"lookup failed for {ref.key}: {exc}") from exc
    if row is None:
        raise UpstreamLookupError(f"{ref.key} no longer exists")
    return {
        "entity_type": ref.entity_type.value,
        "entity_id": row["id"],
        "title": row["title"],
    }


def lookup_many(conn, refs: Iterable[EntityRef]) -> Dict[EntityRef, LookupResult]:
    results: Dict[EntityRef, LookupResult] = {}
    for ref in refs:
        if ref in results:
            continue
        try:
            results[ref] = LookupResult(ref=ref, value=lookup_title(conn, ref), succeeded=True)
        except UpstreamLookupError as exc:
            logger.warning("Enrichment skipped: %s", exc.message)
            results[ref] = LookupResult(ref=ref, error=exc.message)
    return results


def cleanup_orphans(conn) -> Dict[str, int]:
    removed_links = 0
    for entity_type, kind in ENTITY_KINDS.items():
        removed_links += conn.execute(
            f"DELETE FROM links WHERE source_type = ? AND source_id NOT IN (SELECT id FROM {kind.table})",
            (entity_type.value,),
        ).rowcount
        removed_links += conn.execute(
            f"DELETE FROM links WHERE target_type = ? AND target_id NOT IN (SELECT id FROM {kind.table})",
            (entity_type.value,),
        ).rowcount
    known_types = [t.value for t in EntityType]
    placeholders = ",".join(["?"] * len(known_types))
    removed_links += conn.execute(
        f"DELETE FROM links WHERE source_type NOT IN ({placeholders}) "
        f"OR target_type NOT IN ({placeholders})",
        known_types + known_types,
    ).rowcount
    removed_dependencies = conn.execute(
        """
        DELETE FROM task_dependencies
        WHERE from_task_id NOT IN (SELECT id FROM tasks)
           OR to_task_id NOT IN (SELECT id FROM tasks)
        """
    ).rowcount
    removed_memberships = conn.execute(
        """
        DELETE FROM workflow_tasks
        WHERE task_id NOT IN (SELECT id FROM tasks)
           OR workflow_id NOT IN (SELECT id FROM workflows)
        """
    ).rowcount
    result = {
        "links": removed_links,
        "dependencies": removed_dependencies,
        "memberships": removed_memberships,
    }
    logger.info("Orphan cleanup removed %s", result)
    return result
