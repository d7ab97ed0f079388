from __future__ import annotations

from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from liminalflow.service.errors import FlowValidationError
from liminalflow.storage.models import (
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    Edge,
    Flow,
    FlowStatus,
    FlowVariant,
    Node,
    NodeType,
)

_CONDITION = {"type": ["boolean", "string", "object", "null"]}

FLOW_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "version": {"type": "integer", "minimum": 1},
        "name": {"type": "string"},
        "status": {"enum": [status.value for status in FlowStatus]},
        "meta": {"type": "object"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "key": {"type": "string", "minLength": 1},
                    "type": {"enum": [node_type.value for node_type in NodeType]},
                    "config": {"type": "object"},
                    "display_name": {"type": ["string", "null"]},
                    "position": {"type": "object"},
                    "timeout_seconds": {"type": ["number", "null"], "exclusiveMinimum": 0},
                    "max_retries": {"type": ["integer", "null"], "minimum": 0},
                    "is_enabled": {"type": "boolean"},
                },
                "required": ["id", "key", "type"],
                "allOf": [
                    {
                        "if": {"properties": {"type": {"const": "prompt"}}},
                        "then": {"required": ["config"]},
                    },
                    {
                        "if": {"properties": {"type": {"const": "transform"}}},
                        "then": {"required": ["config"]},
                    },
                ],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "source": {"type": "string", "minLength": 1},
                    "target": {"type": "string", "minLength": 1},
                    "source_handle": {"type": "string"},
                    "target_handle": {"type": "string"},
                    "condition": _CONDITION,
                    "is_default": {"type": "boolean"},
                    "label": {"type": ["string", "null"]},
                    "priority": {"type": "integer"},
                    "is_enabled": {"type": "boolean"},
                },
                "required": ["id", "source", "target"],
            },
        },
    },
    "required": ["id", "nodes"],
}

VARIANT_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "base_flow_id": {"type": "string", "minLength": 1},
        "variant_flow_id": {"type": "string", "minLength": 1},
        "traffic_percentage": {"type": "number", "minimum": 0, "maximum": 100},
        "name": {"type": "string"},
        "priority": {"type": "integer"},
        "is_active": {"type": "boolean"},
    },
    "required": ["id", "base_flow_id", "variant_flow_id", "traffic_percentage"],
}

_FLOW_VALIDATOR = Draft202012Validator(FLOW_DOCUMENT_SCHEMA)
_VARIANT_VALIDATOR = Draft202012Validator(VARIANT_DOCUMENT_SCHEMA)


def _schema_errors(validator: Draft202012Validator, document: Any) -> List[str]:
    errors = sorted(validator.iter_errors(document), key=lambda e: list(e.path))
    messages = []
    for error in errors:
        path = "/".join(str(part) for part in error.path) or "<root>"
        messages.append(f"{path}: {error.message}")
    return messages


def parse_flow_document(document: Dict[str, Any]) -> Flow:
    """Build a :class:`Flow` from a JSON document, rejecting malformed input.

    Only the document shape is checked here; graph rules are the job of
    :func:`liminalflow.service.validation.validate_flow`.
    """
    messages = _schema_errors(_FLOW_VALIDATOR, document)
    if messages:
        raise FlowValidationError(
            "flow document is invalid", detail={"errors": messages}
        )
    nodes = [
        Node(
            id=item["id"],
            key=item["key"],
            type=NodeType(item["type"]),
            config=dict(item.get("config") or {}),
            display_name=item.get("display_name"),
            position=dict(item.get("position") or {}),
            timeout_seconds=item.get("timeout_seconds"),
            max_retries=item.get("max_retries"),
            is_enabled=item.get("is_enabled", True),
        )
        for item in document["nodes"]
    ]
    edges = [
        Edge(
            id=item["id"],
            source_node_id=item["source"],
            target_node_id=item["target"],
            source_handle=item.get("source_handle") or DEFAULT_SOURCE_HANDLE,
            target_handle=item.get("target_handle") or DEFAULT_TARGET_HANDLE,
            condition=item.get("condition"),
            is_default=item.get("is_default", False),
            label=item.get("label"),
            priority=item.get("priority", 0),
            is_enabled=item.get("is_enabled", True),
        )
        for item in document.get("edges", [])
    ]
    return Flow(
        id=document["id"],
        version=document.get("version", 1),
        name=document.get("name", ""),
        status=FlowStatus(document.get("status", FlowStatus.ACTIVE.value)),
        nodes=nodes,
        edges=edges,
        meta=dict(document.get("meta") or {}),
    )


def flow_to_document(flow: Flow) -> Dict[str, Any]:
    return {
        "id": flow.id,
        "version": flow.version,
        "name": flow.name,
        "status": flow.status.value,
        "meta": dict(flow.meta),
        "nodes": [
            {
                "id": node.id,
                "key": node.key,
                "type": node.type.value,
                "config": dict(node.config),
                "display_name": node.display_name,
                "position": dict(node.position),
                "timeout_seconds": node.timeout_seconds,
                "max_retries": node.max_retries,
                "is_enabled": node.is_enabled,
            }
            for node in flow.nodes
        ],
        "edges": [
            {
                "id": edge.id,
                "source": edge.source_node_id,
                "target": edge.target_node_id,
                "source_handle": edge.source_handle,
                "target_handle": edge.target_handle,
                "condition": edge.condition,
                "is_default": edge.is_default,
                "label": edge.label,
                "priority": edge.priority,
                "is_enabled": edge.is_enabled,
            }
            for edge in flow.edges
        ],
    }


def parse_variant_document(document: Dict[str, Any]) -> FlowVariant:
    messages = _schema_errors(_VARIANT_VALIDATOR, document)
    if messages:
        raise FlowValidationError("variant document is invalid", detail={"errors": messages})
    return FlowVariant(
        id=document["id"],
        base_flow_id=document["base_flow_id"],
        variant_flow_id=document["variant_flow_id"],
        traffic_percentage=float(document["traffic_percentage"]),
        name=document.get("name", ""),
        priority=document.get("priority", 0),
        is_active=document.get("is_active", True),
    )
