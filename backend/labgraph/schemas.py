from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DependencyType = Literal["blocks", "requires", "suggests", "relates"]
WorkflowType = Literal["sequential", "parallel", "conditional", "mixed"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityProjection(ApiModel):
    entity_type: str
    entity_id: str
    title: str | None = None


class Entity(ApiModel):
    id: str
    entity_type: str
    title: str | None = None
    attributes: Dict[str, Any] = {}
    created_at: int | None = None
    updated_at: int | None = None


class EntityCreate(ApiModel):
    title: str
    id: str | None = None
    attributes: Dict[str, Any] = {}


class EntityUpdate(ApiModel):
    title: str | None = None
    attributes: Dict[str, Any] = {}


class Link(ApiModel):
    id: str
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    metadata: Dict[str, Any] | None = None
    origin: str = "manual"
    created_at: int | None = None
    source: EntityProjection | None = None
    target: EntityProjection | None = None


class LinkCreate(ApiModel):
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    metadata: Dict[str, Any] | None = None


class GraphNode(ApiModel):
    id: str
    entity_type: str
    entity_id: str
    title: str | None = None


class LinkGraph(ApiModel):
    nodes: List[GraphNode]
    edges: List[Link]


class TaskProjection(ApiModel):
    id: str
    title: str | None = None
    status: str | None = None
    priority: int | None = None


class TaskDependency(ApiModel):
    id: str
    from_task_id: str
    to_task_id: str
    dependency_type: DependencyType
    created_at: int | None = None
    from_task: TaskProjection | None = None
    to_task: TaskProjection | None = None


class TaskDependencyCreate(ApiModel):
    from_task_id: str
    to_task_id: str
    dependency_type: DependencyType = "blocks"


class CriticalPathTask(ApiModel):
    id: str
    title: str | None = None
    status: str | None = None
    dependencies: List[str] = []
    critical: bool = False


class CriticalPathResult(ApiModel):
    critical_path: List[str]
    duration: int
    tasks: List[CriticalPathTask]


class WorkflowTask(ApiModel):
    id: str
    title: str | None = None
    status: str | None = None
    priority: int | None = None
    workflow_order: int
    dependencies: List[str] = []


class Workflow(ApiModel):
    id: str
    name: str
    description: str | None = None
    type: WorkflowType
    metadata: Dict[str, Any] | None = None
    created_at: int | None = None
    updated_at: int | None = None
    tasks: List[WorkflowTask] = []


class WorkflowCreate(ApiModel):
    name: str
    description: str | None = None
    type: WorkflowType
    task_ids: List[str]
    metadata: Dict[str, Any] | None = None


class WorkflowUpdate(ApiModel):
    name: str | None = None
    description: str | None = None
    type: WorkflowType | None = None
    task_ids: List[str] | None = None
    metadata: Dict[str, Any] | None = None


class MentionCandidate(ApiModel):
    entity_type: str
    entity_id: str
    name: str
    synonyms: List[str] = []


class MentionFindRequest(ApiModel):
    text: str
    candidates: List[MentionCandidate]


class MentionMatch(ApiModel):
    start: int
    end: int
    text: str
    entity: EntityProjection


class Segment(ApiModel):
    kind: Literal["text", "mention", "link", "unresolved"]
    text: str
    entity: EntityProjection | None = None


class MentionScanRequest(ApiModel):
    text: str
    entity_types: List[str] | None = None


class MentionScanResponse(ApiModel):
    matches: List[MentionMatch]
    segments: List[Segment]


class ReferenceResolveRequest(ApiModel):
    text: str


class CleanupResult(ApiModel):
    links: int
    dependencies: int
    memberships: int
