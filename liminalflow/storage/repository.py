"""Persistence ports used by the flow engine.

Every write carries an explicit :class:`AuditContext` naming the actor, so
implementations never depend on ambient request or user state.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from liminalflow.storage.models import (
    Flow,
    FlowExecution,
    FlowVariant,
    NodeExecution,
)


@dataclass(frozen=True)
class AuditContext:
    actor: Optional[str] = None
    environment: Optional[str] = None


class ExecutionRepository(Protocol):
    """Stores flow and node execution records."""

    def create_execution(
        self, execution: FlowExecution, *, audit: AuditContext
    ) -> FlowExecution: ...

    def update_execution(
        self, execution: FlowExecution, *, audit: AuditContext
    ) -> FlowExecution: ...

    def get_execution(self, execution_id: str) -> Optional[FlowExecution]: ...

    def get_execution_history(
        self, flow_id: str, limit: int = 50, offset: int = 0
    ) -> List[FlowExecution]: ...

    def create_node_execution(
        self, record: NodeExecution, *, audit: AuditContext
    ) -> NodeExecution: ...

    def update_node_execution(
        self, record: NodeExecution, *, audit: AuditContext
    ) -> NodeExecution: ...

    def get_node_executions(self, execution_id: str) -> List[NodeExecution]: ...


class FlowRepository(Protocol):
    """Read access to flow graphs, their variants and prompt templates."""

    def get_flow_by_id(self, flow_id: str) -> Optional[Flow]: ...

    def get_variants(self, base_flow_id: str) -> List[FlowVariant]: ...

    def get_template(self, template_id: str) -> Optional[str]: ...


__all__ = ["AuditContext", "ExecutionRepository", "FlowRepository"]
