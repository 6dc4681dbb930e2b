from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from uuid import uuid4

from ..errors import CycleError, NotFoundError, ValidationError
from .critical_path import (
    DEPENDENCY_TYPES,
    CriticalPathResult,
    compute_critical_path,
    participating_types,
)

logger = logging.getLogger(__name__)

WORKFLOW_TYPES = ("sequential", "parallel", "conditional", "mixed")


def _now_ts() -> int:
    return int(time.time())


def _placeholders(values: List[Any]) -> str:
    return ",".join(["?"] * len(values))


def _unique_ids(task_ids: Iterable[str]) -> List[str]:
    cleaned = (str(t).strip() for t in task_ids if t is not None)
    return list(dict.fromkeys(t for t in cleaned if t))


def _fetch_tasks(conn, task_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    if not task_ids:
        return {}
    rows = conn.execute(
        f"SELECT id, title, status, priority FROM tasks WHERE id IN ({_placeholders(task_ids)})",
        task_ids,
    ).fetchall()
    return {r["id"]: dict(r) for r in rows}


def _require_tasks(conn, task_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    found = _fetch_tasks(conn, task_ids)
    missing = [t for t in task_ids if t not in found]
    if missing:
        raise ValidationError("Unknown task ids", details={"missing": missing})
    return found


def _find_path(conn, start: str, goal: str, types: FrozenSet[str]) -> Optional[List[str]]:
    """Depth-first search along participating edges; returns start..goal or None."""
    type_list = sorted(types)
    parents: Dict[str, Optional[str]] = {start: None}
    stack = [start]
    while stack:
        node = stack.pop()
        if node == goal:
            path = []
            cursor: Optional[str] = node
            while cursor is not None:
                path.append(cursor)
                cursor = parents[cursor]
            return list(reversed(path))
        rows = conn.execute(
            f"""
            SELECT to_task_id FROM task_dependencies
            WHERE from_task_id = ? AND dependency_type IN ({_placeholders(type_list)})
            """,
            [node, *type_list],
        ).fetchall()
        for row in rows:
            nxt = row["to_task_id"]
            if nxt in parents:
                continue
            parents[nxt] = node
            stack.append(nxt)
    return None


def get_dependency(conn, dependency_id: str) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM task_dependencies WHERE id = ?", (dependency_id,)).fetchone()
    if not row:
        raise NotFoundError("Dependency not found", details={"id": dependency_id})
    return _with_projections(conn, [dict(row)])[0]


def create_dependency(
    conn,
    from_task_id: str,
    to_task_id: str,
    dependency_type: str = "blocks",
) -> Dict[str, Any]:
    from_task_id = (from_task_id or "").strip()
    to_task_id = (to_task_id or "").strip()
    if not from_task_id or not to_task_id:
        raise ValidationError("fromTaskId and toTaskId are required")
    if dependency_type not in DEPENDENCY_TYPES:
        raise ValidationError(
            f"Unknown dependency type: {dependency_type}",
            details={"allowed": list(DEPENDENCY_TYPES)},
        )
    if from_task_id == to_task_id:
        raise ValidationError("A task cannot depend on itself", details={"taskId": from_task_id})
    _require_tasks(conn, [from_task_id, to_task_id])

    types = participating_types()
    if dependency_type in types:
        path = _find_path(conn, to_task_id, from_task_id, types)
        if path is not None:
            raise CycleError(
                "Creating this dependency would create a circular dependency",
                details={"cycle": path + [to_task_id]},
            )

    dependency_id = uuid4().hex
    conn.execute(
        """
        INSERT INTO task_dependencies (id, from_task_id, to_task_id, dependency_type, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (dependency_id, from_task_id, to_task_id, dependency_type, _now_ts()),
    )
    logger.info(
        "Created dependency %s: %s %s %s", dependency_id, from_task_id, dependency_type, to_task_id
    )
    return get_dependency(conn, dependency_id)


def delete_dependency(conn, dependency_id: str) -> None:
    cur = conn.execute("DELETE FROM task_dependencies WHERE id = ?", (dependency_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Dependency not found", details={"id": dependency_id})
    logger.info("Deleted dependency %s", dependency_id)


def _with_projections(conn, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = _unique_ids([r["from_task_id"] for r in rows] + [r["to_task_id"] for r in rows])
    tasks = _fetch_tasks(conn, ids)
    for row in rows:
        if row["from_task_id"] in tasks:
            row["from_task"] = tasks[row["from_task_id"]]
        if row["to_task_id"] in tasks:
            row["to_task"] = tasks[row["to_task_id"]]
    return rows


def get_by_task(conn, task_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM task_dependencies
        WHERE from_task_id = ? OR to_task_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (task_id, task_id),
    ).fetchall()
    return _with_projections(conn, [dict(r) for r in rows])


def _outgoing_dependencies(conn, task_ids: List[str]) -> List[Dict[str, Any]]:
    if not task_ids:
        return []
    rows = conn.execute(
        f"""
        SELECT from_task_id, to_task_id, dependency_type FROM task_dependencies
        WHERE from_task_id IN ({_placeholders(task_ids)})
        ORDER BY created_at ASC, rowid ASC
        """,
        task_ids,
    ).fetchall()
    return [dict(r) for r in rows]


def critical_path_for_tasks(conn, task_ids: Iterable[str]) -> CriticalPathResult:
    ids = _unique_ids(task_ids)
    tasks = _fetch_tasks(conn, ids)
    dropped = [t for t in ids if t not in tasks]
    if dropped:
        logger.warning("Critical path: ignoring unknown task ids %s", dropped)
    known = [t for t in ids if t in tasks]
    return compute_critical_path(
        [tasks[t] for t in known],
        _outgoing_dependencies(conn, known),
        participating_types(),
    )


def _workflow_tasks(conn, workflow_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT t.id, t.title, t.status, t.priority, wt.workflow_order
        FROM workflow_tasks wt
        JOIN tasks t ON t.id = wt.task_id
        WHERE wt.workflow_id = ?
        ORDER BY wt.workflow_order ASC
        """,
        (workflow_id,),
    ).fetchall()
    tasks = [dict(r) for r in rows]
    deps: Dict[str, List[str]] = {}
    for dep in _outgoing_dependencies(conn, [t["id"] for t in tasks]):
        targets = deps.setdefault(dep["from_task_id"], [])
        if dep["to_task_id"] not in targets:
            targets.append(dep["to_task_id"])
    for task in tasks:
        task["dependencies"] = deps.get(task["id"], [])
    return tasks


def _row_to_workflow(conn, row) -> Dict[str, Any]:
    data = dict(row)
    metadata = data.get("metadata")
    data["metadata"] = json.loads(metadata) if metadata else None
    data["tasks"] = _workflow_tasks(conn, data["id"])
    return data


def _check_workflow_type(workflow_type: str) -> None:
    if workflow_type not in WORKFLOW_TYPES:
        raise ValidationError(
            f"Unknown workflow type: {workflow_type}",
            details={"allowed": list(WORKFLOW_TYPES)},
        )


def _membership_ids(conn, task_ids: Iterable[str]) -> List[str]:
    ids = _unique_ids(task_ids)
    if not ids:
        raise ValidationError("taskIds must not be empty")
    _require_tasks(conn, ids)
    return ids


def _replace_membership(conn, workflow_id: str, task_ids: List[str]) -> None:
    conn.execute("DELETE FROM workflow_tasks WHERE workflow_id = ?", (workflow_id,))
    conn.executemany(
        "INSERT INTO workflow_tasks (workflow_id, task_id, workflow_order) VALUES (?, ?, ?)",
        [(workflow_id, task_id, index + 1) for index, task_id in enumerate(task_ids)],
    )


def get_workflow(conn, workflow_id: str) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
    if not row:
        raise NotFoundError("Workflow not found", details={"id": workflow_id})
    return _row_to_workflow(conn, row)


def list_workflows(conn) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM workflows ORDER BY created_at DESC, rowid DESC").fetchall()
    return [_row_to_workflow(conn, r) for r in rows]


def create_workflow(
    conn,
    name: str,
    workflow_type: str,
    task_ids: Iterable[str],
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not (name or "").strip():
        raise ValidationError("name is required")
    _check_workflow_type(workflow_type)
    ids = _membership_ids(conn, task_ids)
    workflow_id = uuid4().hex
    now_ts = _now_ts()
    conn.execute(
        """
        INSERT INTO workflows (id, name, description, type, metadata, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            workflow_id,
            name.strip(),
            description,
            workflow_type,
            json.dumps(metadata, ensure_ascii=False) if metadata is not None else None,
            now_ts,
            now_ts,
        ),
    )
    _replace_membership(conn, workflow_id, ids)
    logger.info("Created %s workflow %s with %d tasks", workflow_type, workflow_id, len(ids))
    return get_workflow(conn, workflow_id)


def update_workflow(conn, workflow_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    get_workflow(conn, workflow_id)
    if not patch:
        raise ValidationError("No fields to update")
    updates: Dict[str, Any] = {}
    if "name" in patch:
        if not (patch["name"] or "").strip():
            raise ValidationError("name cannot be empty")
        updates["name"] = patch["name"].strip()
    if "description" in patch:
        updates["description"] = patch["description"]
    if "type" in patch:
        _check_workflow_type(patch["type"])
        updates["type"] = patch["type"]
    if "metadata" in patch:
        metadata = patch["metadata"]
        updates["metadata"] = json.dumps(metadata, ensure_ascii=False) if metadata is not None else None
    if patch.get("task_ids") is not None:
        _replace_membership(conn, workflow_id, _membership_ids(conn, patch["task_ids"]))
    updates["updated_at"] = _now_ts()
    fields = [f"{key} = ?" for key in updates]
    conn.execute(
        f"UPDATE workflows SET {', '.join(fields)} WHERE id = ?",
        list(updates.values()) + [workflow_id],
    )
    return get_workflow(conn, workflow_id)


def delete_workflow(conn, workflow_id: str) -> None:
    cur = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Workflow not found", details={"id": workflow_id})
    conn.execute("DELETE FROM workflow_tasks WHERE workflow_id = ?", (workflow_id,))
    logger.info("Deleted workflow %s", workflow_id)


def workflow_critical_path(conn, workflow_id: str) -> CriticalPathResult:
    workflow = get_workflow(conn, workflow_id)
    return critical_path_for_tasks(conn, [t["id"] for t in workflow["tasks"]])
