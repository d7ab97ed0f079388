from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class NodeType(str, Enum):
    PROMPT = "prompt"
    VARIABLE = "variable"
    CONDITIONAL = "conditional"
    TRANSFORM = "transform"
    OUTPUT = "output"


class FlowExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_FLOW_STATUSES


class NodeExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_NODE_STATUSES


_TERMINAL_FLOW_STATUSES = frozenset(
    {
        FlowExecutionStatus.COMPLETED,
        FlowExecutionStatus.FAILED,
        FlowExecutionStatus.CANCELLED,
    }
)
_TERMINAL_NODE_STATUSES = frozenset(
    {
        NodeExecutionStatus.SUCCEEDED,
        NodeExecutionStatus.FAILED,
        NodeExecutionStatus.SKIPPED,
        NodeExecutionStatus.CANCELLED,
    }
)

# Handles a conditional node can select
BRANCH_HANDLES = frozenset({"true", "false"})
DEFAULT_SOURCE_HANDLE = "output"
DEFAULT_TARGET_HANDLE = "input"


@dataclass
class Node:
    id: str
    key: str
    type: NodeType
    config: Dict[str, Any] = field(default_factory=dict)
    display_name: Optional[str] = None
    position: Dict[str, float] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    is_enabled: bool = True

    def __post_init__(self) -> None:
        self.type = NodeType(self.type)


@dataclass
class Edge:
    id: str
    source_node_id: str
    target_node_id: str
    source_handle: str = DEFAULT_SOURCE_HANDLE
    target_handle: str = DEFAULT_TARGET_HANDLE
    condition: Any = None
    is_default: bool = False
    label: Optional[str] = None
    priority: int = 0
    is_enabled: bool = True

    @property
    def is_branch(self) -> bool:
        return self.source_handle in BRANCH_HANDLES


@dataclass
class Flow:
    id: str
    version: int = 1
    name: str = ""
    status: FlowStatus = FlowStatus.ACTIVE
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.status = FlowStatus(self.status)

    @property
    def enabled_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.is_enabled]

    @property
    def enabled_edges(self) -> List[Edge]:
        enabled_ids = {node.id for node in self.enabled_nodes}
        return [
            edge
            for edge in self.edges
            if edge.is_enabled
            and edge.source_node_id in enabled_ids
            and edge.target_node_id in enabled_ids
        ]

    def node_by_id(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def content_hash(self) -> str:
        """Stable hash of the executable content (layout excluded)."""
        payload = {
            "nodes": sorted(
                (
                    {
                        "id": n.id,
                        "key": n.key,
                        "type": n.type.value,
                        "config": n.config,
                        "timeout_seconds": n.timeout_seconds,
                        "max_retries": n.max_retries,
                        "is_enabled": n.is_enabled,
                    }
                    for n in self.nodes
                ),
                key=lambda item: item["id"],
            ),
            "edges": sorted(
                (
                    {
                        "id": e.id,
                        "source": e.source_node_id,
                        "target": e.target_node_id,
                        "source_handle": e.source_handle,
                        "target_handle": e.target_handle,
                        "condition": e.condition,
                        "is_default": e.is_default,
                        "priority": e.priority,
                        "is_enabled": e.is_enabled,
                    }
                    for e in self.edges
                ),
                key=lambda item: item["id"],
            ),
        }
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.blake2b(encoded, digest_size=16).hexdigest()


@dataclass
class FlowVariant:
    id: str
    base_flow_id: str
    variant_flow_id: str
    traffic_percentage: float
    name: str = ""
    priority: int = 0
    is_active: bool = True


@dataclass
class EdgeTraversal:
    edge_id: str
    source_node_id: str
    target_node_id: str
    condition_result: Optional[bool] = None
    traversed_at: datetime = field(default_factory=utcnow)


@dataclass
class NodeExecution:
    id: str
    flow_execution_id: str
    node_id: str
    node_key: str
    node_type: NodeType
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    execution_order: int = 0
    input: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    execution_time_ms: Optional[float] = None
    cost: float = 0.0
    tokens_consumed: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    skip_reason: Optional[str] = None
    selected_handle: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


@dataclass
class FlowExecution:
    id: str
    flow_id: str
    flow_version: int
    input_variables: Dict[str, Any] = field(default_factory=dict)
    output_result: Dict[str, Any] = field(default_factory=dict)
    status: FlowExecutionStatus = FlowExecutionStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    total_cost: float = 0.0
    total_tokens: int = 0
    error_message: Optional[str] = None
    base_flow_id: Optional[str] = None
    variant_id: Optional[str] = None
    executed_by: Optional[str] = None
    environment: Optional[str] = None
    dry_run: bool = False
    execution_plan: List[str] = field(default_factory=list)
    edge_traversals: List[EdgeTraversal] = field(default_factory=list)
    node_executions: List[NodeExecution] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def node_execution(self, node_key: str) -> Optional[NodeExecution]:
        for record in self.node_executions:
            if record.node_key == node_key:
                return record
        return None
