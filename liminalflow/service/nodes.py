"""Node executors, one per node type.

Executors read an immutable variable snapshot and return a
:class:`NodeResult`. They never write to the variable store or to the
execution records; the engine commits their output.

Addressing: every node publishes its result as ``<key>.output``, which is
how downstream nodes and expressions refer to it. A Variable node writes
one user-facing variable, ``config["name"]`` (default: the node key), and
that same value is also addressable under ``<key>.output``. Prompt and
Transform nodes add an alias only when ``output_name`` is configured.
"""
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from liminalflow.service.errors import (
    FlowEngineError,
    MissingVariableError,
    NotFoundError,
    UnsupportedTransformError,
    provider_error_for,
)
from liminalflow.service.gateway import ModelGateway
from liminalflow.service.model_backend import ProviderRequest
from liminalflow.service.resolver import referenced_variables, resolve_template
from liminalflow.service.sandbox import evaluate_condition, safe_eval_expr
from liminalflow.service.transforms import apply_transform
from liminalflow.service.variables import lookup
from liminalflow.storage.models import Node, NodeType

DEFAULT_OUTPUT_NAME = "result"
_MISSING = object()


def output_key(node_key: str) -> str:
    return f"{node_key}.output"


@dataclass
class NodeContext:
    execution_id: str
    gateway: ModelGateway
    node_timeout_seconds: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    # keys of upstream nodes whose edge into this node fired
    predecessor_keys: Tuple[str, ...] = ()
    template_lookup: Optional[Callable[[str], Optional[str]]] = None


@dataclass
class NodeResult:
    output: Dict[str, Any]
    input: Dict[str, Any] = field(default_factory=dict)
    contribution: Dict[str, Any] = field(default_factory=dict)
    selected_handle: Optional[str] = None
    cost: float = 0.0
    tokens: int = 0
    provider: Optional[str] = None
    model: Optional[str] = None


NodeExecutor = Callable[[Node, Mapping[str, Any], NodeContext], Awaitable[NodeResult]]


def _require(variables: Mapping[str, Any], name: str) -> Any:
    value = lookup(variables, name, _MISSING)
    if value is _MISSING:
        raise MissingVariableError([name])
    return value


def _render_strict(template: str, variables: Mapping[str, Any]) -> str:
    resolved = resolve_template(template, variables, strict=True)
    if resolved.missing_variables:
        raise MissingVariableError(resolved.missing_variables)
    return resolved.text


def _upstream_value(node: Node, variables: Mapping[str, Any], ctx: NodeContext) -> Any:
    if len(ctx.predecessor_keys) != 1:
        raise FlowEngineError(
            f"node {node.key} must name its input variable when it has "
            f"{len(ctx.predecessor_keys)} upstream nodes",
            error_code="ambiguous_input",
        )
    return _require(variables, output_key(ctx.predecessor_keys[0]))


async def execute_prompt(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    config = node.config
    template = config.get("template")
    if template is None and config.get("template_ref"):
        ref = config["template_ref"]
        template = ctx.template_lookup(ref) if ctx.template_lookup else None
        if template is None:
            raise NotFoundError(f"prompt template {ref} not found", detail={"template_ref": ref})
    prompt = _render_strict(template or "", variables)
    system_message = config.get("system_message")
    if system_message:
        system_message = _render_strict(system_message, variables)
    model = config.get("model") or ""

    response = await ctx.gateway.complete(
        ProviderRequest(
            prompt=prompt,
            model=model,
            parameters=dict(config.get("parameters") or {}),
            system_message=system_message,
            timeout_seconds=ctx.node_timeout_seconds,
            cancel_event=ctx.cancel_event,
        )
    )
    if not response.success:
        raise provider_error_for(
            response.error_kind,
            response.error_message or "provider call failed",
            detail={"provider": response.provider, "model": model},
        )

    output = {output_key(node.key): response.content}
    if config.get("output_name"):
        output[config["output_name"]] = response.content
    return NodeResult(
        output=output,
        input={
            "prompt": prompt,
            "model": model,
            "system_message": system_message,
            "variables": referenced_variables(template or ""),
        },
        cost=response.cost,
        tokens=response.total_tokens,
        provider=response.provider,
        model=response.model or model,
    )


async def execute_variable(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    config = node.config
    name = config.get("name") or node.key
    if "expression" in config:
        value = safe_eval_expr(config["expression"], variables)
    elif "template" in config:
        value = _render_strict(config["template"], variables)
    elif "value" in config:
        value = config["value"]
    elif "default" in config:
        # keep a caller supplied value, otherwise fall back to the default
        value = lookup(variables, name, config["default"])
    else:
        value = _require(variables, name)
    return NodeResult(
        output={name: value, output_key(node.key): value},
        input={key: config[key] for key in ("expression", "template") if key in config},
    )


async def execute_conditional(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    config = node.config
    condition = config.get("condition", config.get("expression"))
    if condition is None:
        # routing is left entirely to the outgoing edge conditions
        return NodeResult(output={output_key(node.key): None})
    result = evaluate_condition(condition, variables)
    return NodeResult(
        output={output_key(node.key): result},
        input={"condition": condition},
        selected_handle="true" if result else "false",
    )


async def execute_transform(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    config = node.config
    operation = config.get("operation")
    if not operation:
        raise UnsupportedTransformError(
            f"transform node {node.key} has no operation", detail={"node": node.key}
        )
    if config.get("input"):
        value = _require(variables, config["input"])
    elif "value" in config:
        value = config["value"]
    else:
        value = _upstream_value(node, variables, ctx)
    args = config.get("arguments") or {}
    result = apply_transform(operation, value, args, variables)
    output = {output_key(node.key): result}
    if config.get("output_name"):
        output[config["output_name"]] = result
    return NodeResult(output=output, input={"operation": operation, "value": value})


async def execute_output(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    config = node.config
    name = config.get("name") or DEFAULT_OUTPUT_NAME
    if "template" in config:
        value = _render_strict(config["template"], variables)
    elif config.get("variable"):
        value = _require(variables, config["variable"])
    else:
        value = _upstream_value(node, variables, ctx)
    return NodeResult(
        output={output_key(node.key): value},
        contribution={name: value},
        input={"variable": config.get("variable"), "name": name},
    )


NODE_EXECUTORS: Dict[NodeType, NodeExecutor] = {
    NodeType.PROMPT: execute_prompt,
    NodeType.VARIABLE: execute_variable,
    NodeType.CONDITIONAL: execute_conditional,
    NodeType.TRANSFORM: execute_transform,
    NodeType.OUTPUT: execute_output,
}

_unhandled = set(NodeType) - set(NODE_EXECUTORS)
if _unhandled:
    raise RuntimeError(f"node types without executor: {sorted(t.value for t in _unhandled)}")


async def execute_node(
    node: Node, variables: Mapping[str, Any], ctx: NodeContext
) -> NodeResult:
    """Dispatch ``node`` to the executor registered for its type."""
    return await NODE_EXECUTORS[node.type](node, variables, ctx)
