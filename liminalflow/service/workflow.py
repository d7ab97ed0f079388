from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from liminalflow.config import Settings, get_settings
from liminalflow.logging import get_logger, log_execution_trace, sanitize_error_message
from liminalflow.service.errors import (
    ExecutionCancelledError,
    ExpressionError,
    FlowEngineError,
    ProviderTimeoutError,
    ThresholdExceededError,
)
from liminalflow.service.gateway import ModelGateway
from liminalflow.service.nodes import NodeContext, NodeResult, execute_node
from liminalflow.service.planner import ExecutionPlan, build_plan
from liminalflow.service.sandbox import evaluate_condition
from liminalflow.service.variables import VariableStore
from liminalflow.storage.models import (
    EdgeTraversal,
    Flow,
    FlowExecution,
    FlowExecutionStatus,
    Node,
    NodeExecution,
    NodeExecutionStatus,
    NodeType,
    new_id,
    utcnow,
)
from liminalflow.storage.redis_cache import RedisCache
from liminalflow.storage.repository import AuditContext, ExecutionRepository

MAX_TRACE_ENTRIES = 500

SKIP_BRANCH_NOT_SELECTED = "branch_not_selected"
SKIP_UPSTREAM_FAILED = "upstream_failed"
SKIP_CANCELLED = "cancelled"
SKIP_EXECUTION_STOPPED = "execution_stopped"


class ExecutionOptions(BaseModel):
    """Per-call execution settings; unset fields fall back to Settings."""

    timeout_ms: Optional[int] = Field(None, gt=0)
    node_timeout_ms: Optional[int] = Field(None, gt=0)
    max_concurrent_nodes: Optional[int] = Field(None, ge=1)
    retry_attempts: Optional[int] = Field(None, ge=0)
    retry_backoff_ms: Optional[int] = Field(None, ge=0)
    fail_fast: bool = False
    continue_on_error: bool = False
    user_id: Optional[str] = None
    dry_run: bool = False
    enable_variant_selection: bool = True
    force_variant_id: Optional[str] = None
    max_cost_threshold: Optional[float] = Field(None, ge=0)
    max_token_threshold: Optional[int] = Field(None, ge=0)
    environment: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


@dataclass
class _NodeOutcome:
    node_id: str
    result: Optional[NodeResult] = None
    error: Optional[FlowEngineError] = None
    retry_count: int = 0
    elapsed_ms: float = 0.0


@dataclass
class _RunState:
    execution: FlowExecution
    plan: ExecutionPlan
    store: VariableStore
    options: ExecutionOptions
    audit: AuditContext
    cancel_event: asyncio.Event
    timeout_ms: float
    node_timeout_ms: float
    retry_attempts: int
    backoff_ms: int
    started: float = field(default_factory=time.monotonic)
    edge_state: Dict[str, bool] = field(default_factory=dict)
    edge_reason: Dict[str, str] = field(default_factory=dict)
    decided: Set[str] = field(default_factory=set)
    records: Dict[str, NodeExecution] = field(default_factory=dict)
    failures: List[str] = field(default_factory=list)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    order_seq: int = 0
    stop_reason: Optional[str] = None
    stop_message: Optional[str] = None

    def remaining_ms(self) -> float:
        return self.timeout_ms - (time.monotonic() - self.started) * 1000

    def stop(self, reason: str, message: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
            self.stop_message = message


class FlowExecutionEngine:
    """Executes a validated flow graph.

    Ready nodes run in waves: every node whose inbound edges are all
    resolved is launched, bounded by ``max_concurrent_nodes``, and the wave
    is joined before the next ready set is computed. Outputs are committed
    by this class only, one node at a time, in plan order.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        gateway: ModelGateway,
        *,
        settings: Optional[Settings] = None,
        template_lookup: Optional[Callable[[str], Optional[str]]] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.template_lookup = template_lookup
        self.cache = cache
        self.logger = get_logger(__name__)

    def _append_trace(
        self,
        trace: List[Dict[str, Any]],
        entry: Dict[str, Any],
        max_entries: int = MAX_TRACE_ENTRIES,
    ) -> None:
        trace.append(entry)
        if len(trace) > max_entries:
            del trace[0 : len(trace) - max_entries]

    def _check_retry_budgets(self, flow: Flow, options: ExecutionOptions) -> None:
        """Raise when a retry budget is above ``max_retries_hard_cap``."""
        cap = self.settings.max_retries_hard_cap
        requested = (
            options.retry_attempts
            if options.retry_attempts is not None
            else self.settings.default_retry_attempts
        )
        if requested > cap:
            raise FlowEngineError(
                f"retry_attempts {requested} exceeds the limit of {cap}",
                error_code="invalid_request",
                detail={"retry_attempts": requested, "max_retries_hard_cap": cap},
            )
        over_cap = [
            node.key
            for node in flow.enabled_nodes
            if node.max_retries is not None and node.max_retries > cap
        ]
        if over_cap:
            raise FlowEngineError(
                f"max_retries exceeds the limit of {cap} on nodes: {', '.join(over_cap)}",
                error_code="invalid_request",
                detail={"nodes": over_cap, "max_retries_hard_cap": cap},
            )

    async def run(
        self,
        flow: Flow,
        input_variables: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        *,
        execution: Optional[FlowExecution] = None,
        cancel_event: Optional[asyncio.Event] = None,
        audit: Optional[AuditContext] = None,
    ) -> FlowExecution:
        options = options or ExecutionOptions()
        plan = build_plan(flow)
        self._check_retry_budgets(flow, options)
        execution = execution or FlowExecution(
            id=new_id(), flow_id=flow.id, flow_version=flow.version
        )
        execution.input_variables = copy.deepcopy(dict(input_variables or {}))
        execution.executed_by = execution.executed_by or options.user_id
        execution.environment = (
            execution.environment or options.environment or self.settings.environment.value
        )
        execution.execution_plan = plan.keys
        execution.dry_run = options.dry_run
        if options.dry_run:
            self.logger.info(
                "flow_dry_run", flow_id=flow.id, plan=execution.execution_plan
            )
            return execution

        state = _RunState(
            execution=execution,
            plan=plan,
            store=VariableStore(execution.input_variables),
            options=options,
            audit=audit
            or AuditContext(actor=execution.executed_by, environment=execution.environment),
            cancel_event=cancel_event or asyncio.Event(),
            timeout_ms=options.timeout_ms or self.settings.default_flow_timeout_ms,
            node_timeout_ms=options.node_timeout_ms or self.settings.default_node_timeout_ms,
            retry_attempts=(
                options.retry_attempts
                if options.retry_attempts is not None
                else self.settings.default_retry_attempts
            ),
            backoff_ms=(
                options.retry_backoff_ms
                if options.retry_backoff_ms is not None
                else self.settings.retry_backoff_ms
            ),
        )

        self.repository.create_execution(execution, audit=state.audit)
        execution.status = FlowExecutionStatus.RUNNING
        execution.started_at = utcnow()
        self.repository.update_execution(execution, audit=state.audit)
        self.logger.info(
            "flow_execution_started",
            execution_id=execution.id,
            flow_id=flow.id,
            flow_version=flow.version,
            nodes=len(plan.order),
            variant_id=execution.variant_id,
        )

        max_concurrent = (
            options.max_concurrent_nodes or self.settings.default_max_concurrent_nodes
        )
        semaphore = asyncio.Semaphore(max_concurrent)
        try:
            await self._drive(state, semaphore)
        except asyncio.CancelledError:
            state.stop(SKIP_CANCELLED, "execution cancelled")
            self._finalize(state)
            raise
        except Exception as exc:
            self.logger.error(
                "flow_execution_error",
                execution_id=execution.id,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            state.stop("error", f"internal error: {type(exc).__name__}")
        self._finalize(state)
        await self._publish_progress(state)
        return execution

    # -- scheduling --------------------------------------------------------

    def _should_stop(self, state: _RunState) -> bool:
        if state.cancel_event.is_set():
            state.stop(SKIP_CANCELLED, "execution cancelled")
        elif state.remaining_ms() <= 0:
            state.stop("timeout", f"execution timed out after {state.timeout_ms:g}ms")
        return state.stop_reason is not None

    def _inbound_resolved(self, state: _RunState, node_id: str) -> bool:
        return all(edge.id in state.edge_state for edge in state.plan.inbound[node_id])

    def _has_active_inbound(self, state: _RunState, node_id: str) -> bool:
        inbound = state.plan.inbound[node_id]
        return not inbound or any(state.edge_state.get(edge.id) for edge in inbound)

    async def _drive(self, state: _RunState, semaphore: asyncio.Semaphore) -> None:
        plan = state.plan
        while not self._should_stop(state):
            runnable: List[str] = []
            for node_id in plan.order:
                if node_id in state.decided or not self._inbound_resolved(state, node_id):
                    continue
                if self._has_active_inbound(state, node_id):
                    runnable.append(node_id)
                else:
                    # plan order is topological, so this skip is visible to later nodes
                    self._skip_node(state, plan.nodes[node_id])
            runnable = [node_id for node_id in runnable if node_id not in state.decided]
            if not runnable:
                break
            await self._run_wave(state, runnable, semaphore)
            await self._publish_progress(state)

    async def _run_wave(
        self, state: _RunState, runnable: List[str], semaphore: asyncio.Semaphore
    ) -> None:
        snapshot = state.store.snapshot()
        tasks: Dict[str, asyncio.Future] = {}
        for node_id in runnable:
            node = state.plan.nodes[node_id]
            state.decided.add(node_id)
            record = self._new_record(state, node, NodeExecutionStatus.PENDING)
            self.repository.create_node_execution(record, audit=state.audit)
            tasks[node_id] = asyncio.ensure_future(
                self._run_node(state, node, record, snapshot, semaphore)
            )

        try:
            await self._await_wave(state, tasks)
        finally:
            unfinished = [node_id for node_id, task in tasks.items() if not task.done()]
            for node_id in unfinished:
                tasks[node_id].cancel()
            if unfinished:
                await asyncio.gather(*(tasks[n] for n in unfinished), return_exceptions=True)

        for node_id in runnable:
            task = tasks[node_id]
            node = state.plan.nodes[node_id]
            if task.cancelled():
                self._cancel_record(state, node, state.stop_message or "execution cancelled")
                continue
            self._commit(state, node, task.result())

    async def _await_wave(self, state: _RunState, tasks: Dict[str, asyncio.Future]) -> None:
        """Wait for the wave, returning early on cancellation, timeout or fail-fast."""
        cancel_waiter = asyncio.ensure_future(state.cancel_event.wait())
        outstanding = set(tasks.values())
        try:
            while outstanding:
                remaining = state.remaining_ms()
                if remaining <= 0:
                    state.stop("timeout", f"execution timed out after {state.timeout_ms:g}ms")
                    return
                done, _ = await asyncio.wait(
                    outstanding | {cancel_waiter},
                    timeout=remaining / 1000.0,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if cancel_waiter in done:
                    state.stop(SKIP_CANCELLED, "execution cancelled")
                    return
                outstanding -= done
                if state.options.fail_fast:
                    for task in done:
                        outcome = task.result()
                        if outcome.error is not None and not isinstance(
                            outcome.error, ExecutionCancelledError
                        ):
                            node = state.plan.nodes[outcome.node_id]
                            state.stop("fail_fast", f"node {node.key} failed: {outcome.error.message}")
                            return
        finally:
            cancel_waiter.cancel()

    async def _run_node(
        self,
        state: _RunState,
        node: Node,
        record: NodeExecution,
        snapshot: Dict[str, Any],
        semaphore: asyncio.Semaphore,
    ) -> _NodeOutcome:
        async with semaphore:
            if state.cancel_event.is_set():
                return _NodeOutcome(node.id, error=ExecutionCancelledError("execution cancelled"))
            record.status = NodeExecutionStatus.RUNNING
            record.started_at = utcnow()
            record.input = {"variables": sorted(snapshot)}
            self.repository.update_node_execution(record, audit=state.audit)
            self.logger.debug(
                "flow_node_started",
                execution_id=state.execution.id,
                node=node.key,
                node_type=node.type.value,
            )
            started = time.monotonic()
            outcome = await self._execute_node_with_retry(state, node, record, snapshot)
            outcome.elapsed_ms = (time.monotonic() - started) * 1000
            return outcome

    def _node_timeout_ms(self, state: _RunState, node: Node) -> float:
        if node.timeout_seconds:
            return node.timeout_seconds * 1000
        return state.node_timeout_ms

    async def _execute_node_with_retry(
        self,
        state: _RunState,
        node: Node,
        record: NodeExecution,
        snapshot: Dict[str, Any],
    ) -> _NodeOutcome:
        """Run a node, retrying retryable failures with quadrupling backoff.

        The budget is ``node.max_retries`` when set, otherwise the call's
        ``retry_attempts``; both were checked against ``max_retries_hard_cap``
        when the run started.
        A budget of ``n`` means at most ``n + 1`` attempts.
        """
        max_retries = state.retry_attempts
        if node.max_retries is not None:
            max_retries = node.max_retries
        attempt = 0

        while True:
            remaining_ms = state.remaining_ms()
            if remaining_ms <= 0:
                return _NodeOutcome(
                    node.id,
                    error=FlowEngineError(
                        "execution timed out before the node finished",
                        error_code="execution_timeout",
                    ),
                    retry_count=attempt,
                )
            node_timeout_ms = min(self._node_timeout_ms(state, node), remaining_ms)
            ctx = NodeContext(
                execution_id=state.execution.id,
                gateway=self.gateway,
                node_timeout_seconds=node_timeout_ms / 1000.0,
                cancel_event=state.cancel_event,
                predecessor_keys=self._predecessor_keys(state, node),
                template_lookup=self.template_lookup,
            )
            try:
                result = await asyncio.wait_for(
                    execute_node(node, copy.deepcopy(snapshot), ctx),
                    timeout=node_timeout_ms / 1000.0,
                )
                return _NodeOutcome(node.id, result=result, retry_count=attempt)
            except asyncio.TimeoutError:
                error: FlowEngineError = ProviderTimeoutError(
                    f"node {node.key} timed out after {node_timeout_ms:g}ms"
                )
                self.logger.warning(
                    "flow_node_timeout",
                    node=node.key,
                    attempt=attempt + 1,
                    timeout_ms=node_timeout_ms,
                )
            except FlowEngineError as exc:
                error = exc
            except Exception as exc:
                self.logger.error(
                    "flow_node_internal_error",
                    node=node.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                error = FlowEngineError(
                    f"internal error in {node.type.value} node: {exc}",
                    error_code="internal_error",
                )

            if not error.retryable or attempt >= max_retries:
                if error.retryable:
                    self.logger.error(
                        "flow_node_retries_exhausted",
                        node=node.key,
                        attempts=attempt + 1,
                        error=error.message,
                    )
                return _NodeOutcome(node.id, error=error, retry_count=attempt)

            attempt += 1
            record.retry_count = attempt
            self.repository.update_node_execution(record, audit=state.audit)
            self.logger.warning(
                "flow_node_retry",
                node=node.key,
                attempt=attempt,
                max_retries=max_retries,
                error_code=error.error_code,
                error=error.message,
            )

            # backoff_ms * 4^(attempt-1), never beyond the execution deadline
            current_backoff_ms = state.backoff_ms * (4 ** (attempt - 1))
            sleep_ms = min(current_backoff_ms, state.remaining_ms() - 100)
            if sleep_ms > 0:
                self.logger.info(
                    "flow_node_backoff", node=node.key, attempt=attempt, backoff_ms=sleep_ms
                )
                try:
                    await asyncio.wait_for(
                        state.cancel_event.wait(), timeout=sleep_ms / 1000.0
                    )
                    return _NodeOutcome(
                        node.id,
                        error=ExecutionCancelledError("execution cancelled"),
                        retry_count=attempt,
                    )
                except asyncio.TimeoutError:
                    pass

    def _predecessor_keys(self, state: _RunState, node: Node) -> tuple:
        keys: List[str] = []
        for edge in state.plan.inbound[node.id]:
            if state.edge_state.get(edge.id):
                key = state.plan.nodes[edge.source_node_id].key
                if key not in keys:
                    keys.append(key)
        return tuple(keys)

    # -- commits -----------------------------------------------------------

    def _new_record(
        self, state: _RunState, node: Node, status: NodeExecutionStatus
    ) -> NodeExecution:
        state.order_seq += 1
        record = NodeExecution(
            id=new_id(),
            flow_execution_id=state.execution.id,
            node_id=node.id,
            node_key=node.key,
            node_type=node.type,
            status=status,
            execution_order=state.order_seq,
        )
        state.records[node.id] = record
        return record

    def _route(
        self, state: _RunState, node: Node, result: NodeResult
    ) -> Dict[str, Optional[bool]]:
        """Decide which outgoing edges fire after ``node`` succeeded.

        Returns edge id -> condition result for conditional edges, ``None``
        for edges that fire unconditionally, and ``False`` for edges that do
        not fire. A default edge fires only when no conditional edge from
        the same node matched.
        """
        edges = state.plan.outbound[node.id]
        if not edges:
            return {}
        scope: Optional[Dict[str, Any]] = None
        decisions: Dict[str, Optional[bool]] = {}
        conditional_matched = False
        for edge in edges:
            if edge.is_default:
                continue
            if edge.condition is not None:
                if scope is None:
                    scope = state.store.snapshot()
                    scope.update(result.output)
                matched = evaluate_condition(edge.condition, scope)
                decisions[edge.id] = matched
                conditional_matched = conditional_matched or matched
            elif edge.is_branch and node.type is NodeType.CONDITIONAL:
                matched = edge.source_handle == result.selected_handle
                decisions[edge.id] = matched
                conditional_matched = conditional_matched or matched
            else:
                decisions[edge.id] = None
        for edge in edges:
            if edge.is_default:
                decisions[edge.id] = None if not conditional_matched else False
        return decisions

    def _commit(self, state: _RunState, node: Node, outcome: _NodeOutcome) -> None:
        record = state.records[node.id]
        record.retry_count = outcome.retry_count
        record.ended_at = utcnow()
        record.execution_time_ms = round(outcome.elapsed_ms, 3)

        decisions: Dict[str, Optional[bool]] = {}
        if outcome.error is None and outcome.result is not None:
            try:
                decisions = self._route(state, node, outcome.result)
            except ExpressionError as exc:
                outcome.error = exc

        if outcome.error is None and outcome.result is not None:
            self._commit_success(state, node, record, outcome.result, decisions)
        elif isinstance(outcome.error, ExecutionCancelledError):
            self._cancel_record(state, node, outcome.error.message)
        else:
            self._commit_failure(state, node, record, outcome.error)

    def _commit_success(
        self,
        state: _RunState,
        node: Node,
        record: NodeExecution,
        result: NodeResult,
        decisions: Dict[str, Optional[bool]],
    ) -> None:
        execution = state.execution
        state.store.commit(result.output)
        execution.output_result.update(copy.deepcopy(result.contribution))

        record.status = NodeExecutionStatus.SUCCEEDED
        record.input = result.input
        record.output = copy.deepcopy(result.output)
        record.cost = result.cost
        record.tokens_consumed = result.tokens
        record.provider = result.provider
        record.model = result.model
        record.selected_handle = result.selected_handle
        self.repository.update_node_execution(record, audit=state.audit)

        execution.total_cost = round(execution.total_cost + result.cost, 8)
        execution.total_tokens += result.tokens

        for edge in state.plan.outbound[node.id]:
            decision = decisions.get(edge.id)
            fired = decision is not False
            state.edge_state[edge.id] = fired
            if fired:
                execution.edge_traversals.append(
                    EdgeTraversal(
                        edge_id=edge.id,
                        source_node_id=edge.source_node_id,
                        target_node_id=edge.target_node_id,
                        condition_result=decision,
                    )
                )
            else:
                state.edge_reason[edge.id] = SKIP_BRANCH_NOT_SELECTED

        self.logger.info(
            "flow_node_succeeded",
            execution_id=execution.id,
            node=node.key,
            retries=record.retry_count,
            duration_ms=record.execution_time_ms,
            tokens=result.tokens,
            selected_handle=result.selected_handle,
        )
        self._append_trace(
            state.trace,
            {
                "node": node.key,
                "status": record.status.value,
                "duration_ms": record.execution_time_ms,
                "retries": record.retry_count,
            },
        )
        self._check_thresholds(state)

    def _commit_failure(
        self,
        state: _RunState,
        node: Node,
        record: NodeExecution,
        error: Optional[FlowEngineError],
    ) -> None:
        error = error or FlowEngineError("node failed without an error")
        record.status = NodeExecutionStatus.FAILED
        record.error_message = sanitize_error_message(error.message)
        record.error_kind = error.error_code
        self.repository.update_node_execution(record, audit=state.audit)
        state.failures.append(node.id)
        for edge in state.plan.outbound[node.id]:
            state.edge_state[edge.id] = False
            state.edge_reason[edge.id] = SKIP_UPSTREAM_FAILED
        self.logger.warning(
            "flow_node_failed",
            execution_id=state.execution.id,
            node=node.key,
            error_code=error.error_code,
            error=record.error_message,
            retries=record.retry_count,
        )
        self._append_trace(
            state.trace,
            {
                "node": node.key,
                "status": record.status.value,
                "error": error.error_code,
                "message": record.error_message,
            },
        )
        if state.options.fail_fast:
            state.stop("fail_fast", f"node {node.key} failed: {record.error_message}")

    def _cancel_record(self, state: _RunState, node: Node, message: str) -> None:
        record = state.records.get(node.id)
        if record is None:
            record = self._new_record(state, node, NodeExecutionStatus.CANCELLED)
            record.error_message = message
            record.ended_at = utcnow()
            self.repository.create_node_execution(record, audit=state.audit)
        elif not record.status.is_terminal:
            record.status = NodeExecutionStatus.CANCELLED
            record.error_message = message
            record.error_kind = ExecutionCancelledError.error_code
            record.ended_at = utcnow()
            self.repository.update_node_execution(record, audit=state.audit)
        state.decided.add(node.id)
        for edge in state.plan.outbound[node.id]:
            state.edge_state[edge.id] = False
            state.edge_reason[edge.id] = SKIP_CANCELLED

    def _skip_node(self, state: _RunState, node: Node, reason: Optional[str] = None) -> None:
        if reason is None:
            reasons = {state.edge_reason.get(edge.id) for edge in state.plan.inbound[node.id]}
            if SKIP_UPSTREAM_FAILED in reasons:
                reason = SKIP_UPSTREAM_FAILED
            elif SKIP_CANCELLED in reasons:
                reason = SKIP_CANCELLED
            else:
                reason = SKIP_BRANCH_NOT_SELECTED
        record = self._new_record(state, node, NodeExecutionStatus.SKIPPED)
        record.skip_reason = reason
        record.ended_at = utcnow()
        self.repository.create_node_execution(record, audit=state.audit)
        state.decided.add(node.id)
        for edge in state.plan.outbound[node.id]:
            state.edge_state[edge.id] = False
            state.edge_reason[edge.id] = reason
        self.logger.info(
            "flow_node_skipped", execution_id=state.execution.id, node=node.key, reason=reason
        )

    def _check_thresholds(self, state: _RunState) -> None:
        options = state.options
        execution = state.execution
        if (
            options.max_cost_threshold is not None
            and execution.total_cost > options.max_cost_threshold
        ):
            error = ThresholdExceededError(
                f"cost {execution.total_cost:g} exceeded threshold {options.max_cost_threshold:g}"
            )
            state.stop("threshold", error.message)
        elif (
            options.max_token_threshold is not None
            and execution.total_tokens > options.max_token_threshold
        ):
            error = ThresholdExceededError(
                f"tokens {execution.total_tokens} exceeded threshold {options.max_token_threshold}"
            )
            state.stop("threshold", error.message)

    # -- completion --------------------------------------------------------

    def _finalize(self, state: _RunState) -> None:
        execution = state.execution
        plan = state.plan
        for node_id, record in list(state.records.items()):
            if not record.status.is_terminal:
                self._cancel_record(
                    state, plan.nodes[node_id], state.stop_message or "execution cancelled"
                )
        for node_id in plan.order:
            if node_id in state.decided:
                continue
            node = plan.nodes[node_id]
            if state.stop_reason == SKIP_CANCELLED:
                self._cancel_record(state, node, "execution cancelled")
            else:
                self._skip_node(state, node, SKIP_EXECUTION_STOPPED)

        output_succeeded = any(
            record.node_type is NodeType.OUTPUT
            and record.status is NodeExecutionStatus.SUCCEEDED
            for record in state.records.values()
        )
        if state.stop_reason == SKIP_CANCELLED:
            execution.status = FlowExecutionStatus.CANCELLED
            execution.error_message = state.stop_message
        elif state.stop_reason is not None:
            execution.status = FlowExecutionStatus.FAILED
            execution.error_message = state.stop_message
        elif state.failures and not state.options.continue_on_error:
            first = state.records[state.failures[0]]
            execution.status = FlowExecutionStatus.FAILED
            execution.error_message = f"node {first.node_key} failed: {first.error_message}"
        elif not output_succeeded:
            execution.status = FlowExecutionStatus.FAILED
            execution.error_message = "no output node produced a result"
        else:
            execution.status = FlowExecutionStatus.COMPLETED
            execution.error_message = None

        execution.ended_at = utcnow()
        execution.duration_ms = round((time.monotonic() - state.started) * 1000, 3)
        execution.node_executions = sorted(
            (copy.deepcopy(record) for record in state.records.values()),
            key=lambda record: record.execution_order,
        )
        self.repository.update_execution(execution, audit=state.audit)
        self.logger.info(
            "flow_execution_finished",
            execution_id=execution.id,
            flow_id=execution.flow_id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
            total_tokens=execution.total_tokens,
            total_cost=execution.total_cost,
            failed_nodes=len(state.failures),
            error=execution.error_message,
        )
        log_execution_trace(state.trace, self.logger)

    async def _publish_progress(self, state: _RunState) -> None:
        if self.cache is None:
            return
        execution = state.execution
        progress = {
            "execution_id": execution.id,
            "flow_id": execution.flow_id,
            "status": execution.status.value,
            "nodes": {
                record.node_key: record.status.value for record in state.records.values()
            },
            "total_tokens": execution.total_tokens,
            "total_cost": execution.total_cost,
        }
        try:
            await self.cache.set_execution_state(execution.id, progress)
        except Exception as exc:
            self.logger.warning(
                "execution_state_cache_failed", execution_id=execution.id, error=str(exc)
            )
