from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional

from liminalflow.logging import get_logger
from liminalflow.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    TerminalRecordError,
)
from liminalflow.storage.models import (
    Flow,
    FlowExecution,
    FlowVariant,
    NodeExecution,
    utcnow,
)
from liminalflow.storage.repository import AuditContext


class MemoryStore:
    """In-memory flow and execution store.

    Implements both the flow repository and the execution repository ports.
    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.flows: Dict[str, Flow] = {}
        self.variants: Dict[str, List[FlowVariant]] = {}
        self.templates: Dict[str, str] = {}
        self.executions: Dict[str, FlowExecution] = {}
        self.node_executions: Dict[str, Dict[str, NodeExecution]] = {}
        self.audit_log: List[Dict[str, Any]] = []
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()

    # -- flows -----------------------------------------------------------

    def save_flow(self, flow: Flow) -> Flow:
        with self._data_lock:
            self.flows[flow.id] = copy.deepcopy(flow)
        self.logger.info("flow_saved", flow_id=flow.id, version=flow.version)
        return flow

    def get_flow_by_id(self, flow_id: str) -> Optional[Flow]:
        with self._data_lock:
            flow = self.flows.get(flow_id)
            return copy.deepcopy(flow) if flow else None

    def save_variant(self, variant: FlowVariant) -> FlowVariant:
        with self._data_lock:
            existing = [
                v
                for v in self.variants.get(variant.base_flow_id, [])
                if v.id != variant.id
            ]
            existing.append(copy.deepcopy(variant))
            self.variants[variant.base_flow_id] = existing
        return variant

    def get_variants(self, base_flow_id: str) -> List[FlowVariant]:
        with self._data_lock:
            return [
                copy.deepcopy(v)
                for v in self.variants.get(base_flow_id, [])
                if v.is_active
            ]

    def save_template(self, template_id: str, content: str) -> None:
        with self._data_lock:
            self.templates[template_id] = content

    def get_template(self, template_id: str) -> Optional[str]:
        with self._data_lock:
            return self.templates.get(template_id)

    # -- executions ------------------------------------------------------

    def _audit(self, action: str, record_id: str, audit: AuditContext) -> None:
        self.audit_log.append(
            {
                "action": action,
                "record_id": record_id,
                "actor": audit.actor,
                "environment": audit.environment,
                "at": utcnow(),
            }
        )

    @staticmethod
    def _detached(execution: FlowExecution) -> FlowExecution:
        stored = copy.deepcopy(execution)
        # node executions live in their own table
        stored.node_executions = []
        return stored

    def create_execution(
        self, execution: FlowExecution, *, audit: AuditContext
    ) -> FlowExecution:
        with self._data_lock:
            if execution.id in self.executions:
                raise ConstraintViolation(
                    "execution already exists", {"execution_id": execution.id}
                )
            self.executions[execution.id] = self._detached(execution)
            self.node_executions.setdefault(execution.id, {})
            self._audit("create_execution", execution.id, audit)
        return execution

    def update_execution(
        self, execution: FlowExecution, *, audit: AuditContext
    ) -> FlowExecution:
        with self._data_lock:
            current = self.executions.get(execution.id)
            if current is None:
                raise RecordNotFound(
                    "execution not found", {"execution_id": execution.id}
                )
            if current.status.is_terminal:
                raise TerminalRecordError(
                    "execution is terminal and cannot be modified",
                    {"execution_id": execution.id, "status": current.status.value},
                )
            self.executions[execution.id] = self._detached(execution)
            self._audit("update_execution", execution.id, audit)
        return execution

    def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        with self._data_lock:
            stored = self.executions.get(execution_id)
            if stored is None:
                return None
            execution = copy.deepcopy(stored)
            execution.node_executions = self.get_node_executions(execution_id)
            return execution

    def get_execution_history(
        self, flow_id: str, limit: int = 50, offset: int = 0
    ) -> List[FlowExecution]:
        limit = max(0, limit)
        offset = max(0, offset)
        with self._data_lock:
            matching = [
                execution
                for execution in self.executions.values()
                if execution.flow_id == flow_id or execution.base_flow_id == flow_id
            ]
            matching.sort(key=lambda e: e.created_at, reverse=True)
            return [copy.deepcopy(e) for e in matching[offset : offset + limit]]

    def create_node_execution(
        self, record: NodeExecution, *, audit: AuditContext
    ) -> NodeExecution:
        with self._data_lock:
            if record.flow_execution_id not in self.executions:
                raise ConstraintViolation(
                    "parent execution not found",
                    {"execution_id": record.flow_execution_id},
                )
            records = self.node_executions.setdefault(record.flow_execution_id, {})
            if record.id in records:
                raise ConstraintViolation(
                    "node execution already exists", {"node_execution_id": record.id}
                )
            records[record.id] = copy.deepcopy(record)
            self._audit("create_node_execution", record.id, audit)
        return record

    def update_node_execution(
        self, record: NodeExecution, *, audit: AuditContext
    ) -> NodeExecution:
        with self._data_lock:
            records = self.node_executions.get(record.flow_execution_id, {})
            current = records.get(record.id)
            if current is None:
                raise RecordNotFound(
                    "node execution not found", {"node_execution_id": record.id}
                )
            if current.status.is_terminal:
                raise TerminalRecordError(
                    "node execution is terminal and cannot be modified",
                    {"node_execution_id": record.id, "status": current.status.value},
                )
            records[record.id] = copy.deepcopy(record)
            self._audit("update_node_execution", record.id, audit)
        return record

    def get_node_executions(self, execution_id: str) -> List[NodeExecution]:
        with self._data_lock:
            records = self.node_executions.get(execution_id, {})
            ordered = sorted(records.values(), key=lambda r: r.execution_order)
            return [copy.deepcopy(r) for r in ordered]
