from __future__ import annotations

import keyword
import re
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from liminalflow.service.errors import ExpressionError
from liminalflow.service.planner import find_cycle, reachable_node_ids, start_nodes
from liminalflow.service.sandbox import check_condition_syntax, parse_expression
from liminalflow.service.transforms import is_supported
from liminalflow.storage.models import (
    BRANCH_HANDLES,
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    Flow,
    NodeType,
)

# Node keys must be usable as expression names, e.g. `classify.output`
NODE_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SOURCE_HANDLES: Dict[NodeType, frozenset] = {
    NodeType.CONDITIONAL: frozenset({DEFAULT_SOURCE_HANDLE}) | BRANCH_HANDLES,
}
TARGET_HANDLES = frozenset({DEFAULT_TARGET_HANDLE})


@dataclass
class ValidationIssue:
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, **refs: Any) -> None:
        self.errors.append(ValidationIssue(code, message, **refs))

    def warn(self, code: str, message: str, **refs: Any) -> None:
        self.warnings.append(ValidationIssue(code, message, **refs))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errors": [asdict(issue) for issue in self.errors],
            "warnings": [asdict(issue) for issue in self.warnings],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ValidationResult":
        return cls(
            errors=[ValidationIssue(**item) for item in payload.get("errors", [])],
            warnings=[ValidationIssue(**item) for item in payload.get("warnings", [])],
        )

    def summary(self) -> str:
        return "; ".join(issue.message for issue in self.errors) or "valid"


def _check_nodes(
    flow: Flow, result: ValidationResult, max_retries_cap: Optional[int] = None
) -> None:
    seen_ids: set = set()
    seen_keys: Dict[str, str] = {}
    output_names: Dict[str, str] = {}
    for node in flow.nodes:
        if node.id in seen_ids:
            result.error("duplicate_node_id", f"node id {node.id} is used twice", node_id=node.id)
        seen_ids.add(node.id)
        if node.key in seen_keys:
            result.error(
                "duplicate_node_key", f"node key {node.key} is not unique", node_id=node.id
            )
        seen_keys[node.key] = node.id
        if not NODE_KEY_PATTERN.match(node.key or "") or keyword.iskeyword(node.key):
            result.error(
                "invalid_node_key",
                f"node key {node.key!r} must be an identifier that is not a Python keyword",
                node_id=node.id,
            )
        if (
            max_retries_cap is not None
            and node.max_retries is not None
            and node.max_retries > max_retries_cap
        ):
            result.error(
                "invalid_max_retries",
                f"node {node.key} max_retries {node.max_retries} exceeds the limit of {max_retries_cap}",
                node_id=node.id,
            )
        if not node.is_enabled:
            result.warn("node_disabled", f"node {node.key} is disabled", node_id=node.id)
            continue
        _check_node_config(node, result, output_names)


def _check_node_config(node, result: ValidationResult, output_names: Dict[str, str]) -> None:
    config = node.config
    try:
        if node.type is NodeType.PROMPT:
            if not config.get("model"):
                result.error("invalid_node_config", f"prompt node {node.key} has no model", node_id=node.id)
            if config.get("template") is None and not config.get("template_ref"):
                result.error(
                    "invalid_node_config",
                    f"prompt node {node.key} has no template",
                    node_id=node.id,
                )
        elif node.type is NodeType.VARIABLE:
            if "expression" in config:
                parse_expression(config["expression"])
        elif node.type is NodeType.CONDITIONAL:
            condition = config.get("condition", config.get("expression"))
            if condition is not None:
                check_condition_syntax(condition)
        elif node.type is NodeType.TRANSFORM:
            operation = config.get("operation")
            if not operation:
                result.error(
                    "invalid_node_config",
                    f"transform node {node.key} has no operation",
                    node_id=node.id,
                )
            elif not is_supported(operation):
                result.warn(
                    "unsupported_transform",
                    f"transform {operation} on node {node.key} is not built in",
                    node_id=node.id,
                )
        elif node.type is NodeType.OUTPUT:
            name = config.get("name") or "result"
            if name in output_names:
                result.warn(
                    "duplicate_output_name",
                    f"output name {name} is written by more than one node",
                    node_id=node.id,
                )
            output_names[name] = node.id
    except ExpressionError as exc:
        result.error("invalid_expression", f"node {node.key}: {exc.message}", node_id=node.id)


def _check_edges(flow: Flow, result: ValidationResult) -> None:
    nodes = {node.id: node for node in flow.nodes}
    seen_ids: set = set()
    defaults: Dict[Tuple[str, str], str] = {}
    for edge in flow.edges:
        if edge.id in seen_ids:
            result.error("duplicate_edge_id", f"edge id {edge.id} is used twice", edge_id=edge.id)
        seen_ids.add(edge.id)
        source = nodes.get(edge.source_node_id)
        target = nodes.get(edge.target_node_id)
        if source is None or target is None:
            missing = edge.source_node_id if source is None else edge.target_node_id
            result.error(
                "unknown_node", f"edge {edge.id} references unknown node {missing}", edge_id=edge.id
            )
            continue
        allowed = SOURCE_HANDLES.get(source.type, frozenset({DEFAULT_SOURCE_HANDLE}))
        if edge.source_handle not in allowed:
            result.error(
                "unknown_handle",
                f"edge {edge.id} uses unknown source handle {edge.source_handle} on {source.key}",
                edge_id=edge.id,
            )
        if edge.target_handle not in TARGET_HANDLES:
            result.error(
                "unknown_handle",
                f"edge {edge.id} uses unknown target handle {edge.target_handle} on {target.key}",
                edge_id=edge.id,
            )
        if source.type is NodeType.OUTPUT:
            result.warn(
                "output_has_outgoing_edge",
                f"output node {source.key} has outgoing edge {edge.id}",
                edge_id=edge.id,
            )
        if not edge.is_enabled:
            continue
        if edge.is_default:
            slot = (edge.source_node_id, edge.source_handle)
            if slot in defaults:
                result.error(
                    "multiple_default_edges",
                    f"node {source.key} has more than one default edge on handle {edge.source_handle}",
                    edge_id=edge.id,
                )
            defaults[slot] = edge.id
        if edge.condition is not None:
            try:
                check_condition_syntax(edge.condition)
            except ExpressionError as exc:
                result.error(
                    "invalid_condition", f"edge {edge.id}: {exc.message}", edge_id=edge.id
                )


def _check_structure(flow: Flow, result: ValidationResult) -> None:
    enabled = flow.enabled_nodes
    roots = start_nodes(flow)
    if not roots:
        result.error("no_start_node", "flow has no start node")
        return
    reachable = reachable_node_ids(flow, roots)
    cycle = find_cycle(flow, reachable)
    if cycle:
        keys = [flow.node_by_id(node_id).key for node_id in cycle]
        result.error("cycle_detected", f"cycle detected: {' -> '.join(keys)}", node_id=cycle[0])

    outgoing: Dict[str, list] = {}
    for edge in flow.enabled_edges:
        outgoing.setdefault(edge.source_node_id, []).append(edge)

    outputs = [node for node in enabled if node.type is NodeType.OUTPUT]
    if not outputs:
        result.error("no_output_node", "flow has no output node")
    for node in enabled:
        if node.id not in reachable:
            if node.type is NodeType.OUTPUT:
                result.error(
                    "unreachable_output",
                    f"output node {node.key} is not reachable from a start node",
                    node_id=node.id,
                )
            else:
                result.warn(
                    "unreachable_node",
                    f"node {node.key} is not reachable and will not run",
                    node_id=node.id,
                )
        if node.type is NodeType.CONDITIONAL:
            branches = [
                edge
                for edge in outgoing.get(node.id, [])
                if edge.condition is not None or edge.is_default or edge.is_branch
            ]
            if not branches:
                result.error(
                    "conditional_without_branches",
                    f"conditional node {node.key} needs a conditional or default outgoing edge",
                    node_id=node.id,
                )


def validate_flow(flow: Flow, *, max_retries_cap: Optional[int] = None) -> ValidationResult:
    """Check a flow graph for structural problems.

    Errors make the flow unexecutable; warnings flag configurations that
    run but are probably unintended. When ``max_retries_cap`` is given,
    per-node retry budgets above it are errors.
    """
    result = ValidationResult()
    if not flow.nodes:
        result.error("empty_flow", "flow has no nodes")
        return result
    _check_nodes(flow, result, max_retries_cap)
    _check_edges(flow, result)
    _check_structure(flow, result)
    return result


class ValidationCache:
    """Bounded LRU of validation results keyed by flow id, version and content hash."""

    def __init__(self, max_entries: int = 256) -> None:
        self.max_entries = max_entries
        self._entries: "OrderedDict[Tuple[str, int, str], ValidationResult]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(flow: Flow) -> Tuple[str, int, str]:
        return (flow.id, flow.version, flow.content_hash())

    def get(self, key: Tuple[str, int, str]) -> Optional[ValidationResult]:
        with self._lock:
            result = self._entries.get(key)
            if result is not None:
                self._entries.move_to_end(key)
            return result

    def put(self, key: Tuple[str, int, str], result: ValidationResult) -> None:
        with self._lock:
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)
