from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Union

from liminalflow.config import Settings, get_settings
from liminalflow.logging import (
    bind_execution_context,
    clear_execution_context,
    get_logger,
    set_correlation_id,
)
from liminalflow.service.errors import FlowEngineError, FlowValidationError, NotFoundError
from liminalflow.service.validation import ValidationCache, ValidationResult, validate_flow
from liminalflow.service.variants import VariantSelector
from liminalflow.service.workflow import ExecutionOptions, FlowExecutionEngine
from liminalflow.storage.models import (
    Flow,
    FlowExecution,
    FlowStatus,
    NodeExecution,
    new_id,
)
from liminalflow.storage.redis_cache import RedisCache
from liminalflow.storage.repository import AuditContext, ExecutionRepository, FlowRepository

logger = get_logger(__name__)


class FlowService:
    """Entry point for running, validating and inspecting flows."""

    def __init__(
        self,
        flows: FlowRepository,
        executions: ExecutionRepository,
        engine: FlowExecutionEngine,
        *,
        variants: Optional[VariantSelector] = None,
        settings: Optional[Settings] = None,
        cache: Optional[RedisCache] = None,
        validation_cache: Optional[ValidationCache] = None,
    ) -> None:
        self.flows = flows
        self.executions = executions
        self.engine = engine
        self.settings = settings or get_settings()
        self.variants = variants or VariantSelector(flows)
        self.cache = cache
        self.validation_cache = validation_cache or ValidationCache(
            self.settings.validation_cache_size
        )
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def _load_flow(self, flow_id: str) -> Flow:
        flow = self.flows.get_flow_by_id(flow_id)
        if flow is None:
            raise NotFoundError(f"flow {flow_id} not found", detail={"flow_id": flow_id})
        return flow

    async def validate(self, flow: Flow) -> ValidationResult:
        """Validate ``flow``, reusing earlier results for the same version and content."""
        key = ValidationCache.key_for(flow)
        cached = self.validation_cache.get(key)
        if cached is not None:
            return cached
        if self.cache is not None:
            try:
                payload = await self.cache.get_validation_result(*key)
            except Exception as exc:
                logger.warning("validation_cache_read_failed", flow_id=flow.id, error=str(exc))
                payload = None
            if payload is not None:
                result = ValidationResult.from_dict(payload)
                self.validation_cache.put(key, result)
                return result

        result = validate_flow(flow, max_retries_cap=self.settings.max_retries_hard_cap)
        self.validation_cache.put(key, result)
        logger.info(
            "flow_validated",
            flow_id=flow.id,
            version=flow.version,
            valid=result.is_valid,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        if self.cache is not None:
            try:
                await self.cache.set_validation_result(
                    *key,
                    result.to_dict(),
                    ttl_seconds=self.settings.validation_cache_ttl_seconds,
                )
            except Exception as exc:
                logger.warning("validation_cache_write_failed", flow_id=flow.id, error=str(exc))
        return result

    async def validate_flow(self, flow_id: str) -> ValidationResult:
        return await self.validate(self._load_flow(flow_id))

    async def execute_flow(
        self,
        flow_id: str,
        input_variables: Optional[Dict[str, Any]] = None,
        options: Union[ExecutionOptions, Dict[str, Any], None] = None,
    ) -> FlowExecution:
        """Run a flow (or one of its variants) and return the finished record.

        Raises :class:`NotFoundError` for unknown flows and
        :class:`FlowValidationError` for invalid graphs; in both cases no
        execution record is written. Node level failures never raise, they
        are reported on the returned execution.
        """
        if options is None:
            options = ExecutionOptions()
        elif isinstance(options, dict):
            options = ExecutionOptions.model_validate(options)

        base_flow = self._load_flow(flow_id)
        if base_flow.status is FlowStatus.ARCHIVED:
            raise FlowEngineError(
                f"flow {flow_id} is archived", error_code="flow_archived"
            )

        execution_id = new_id()
        selection = self.variants.select(
            base_flow,
            subject=options.user_id or execution_id,
            force_variant_id=options.force_variant_id,
            enabled=options.enable_variant_selection,
        )
        flow = selection.flow

        result = await self.validate(flow)
        if not result.is_valid:
            raise FlowValidationError(
                f"flow {flow.id} is invalid: {result.summary()}",
                result=result,
                detail=result.to_dict(),
            )

        environment = options.environment or self.settings.environment.value
        execution = FlowExecution(
            id=execution_id,
            flow_id=flow.id,
            flow_version=flow.version,
            base_flow_id=base_flow.id,
            variant_id=selection.variant_id,
            executed_by=options.user_id,
            environment=environment,
        )
        set_correlation_id(execution_id)
        bind_execution_context(execution_id, flow.id, variant_id=selection.variant_id)
        cancel_event = asyncio.Event()
        self._cancel_events[execution_id] = cancel_event
        try:
            return await self.engine.run(
                flow,
                input_variables,
                options,
                execution=execution,
                cancel_event=cancel_event,
                audit=AuditContext(actor=options.user_id, environment=environment),
            )
        finally:
            self._cancel_events.pop(execution_id, None)
            clear_execution_context()

    def cancel_execution(self, execution_id: str) -> bool:
        """Signal a running execution to stop.

        Returns False when the execution already finished.
        """
        event = self._cancel_events.get(execution_id)
        if event is not None:
            event.set()
            logger.info("flow_execution_cancel_requested", execution_id=execution_id)
            return True
        if self.executions.get_execution(execution_id) is None:
            raise NotFoundError(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return False

    def running_executions(self) -> List[str]:
        return list(self._cancel_events)

    def get_execution(self, execution_id: str) -> FlowExecution:
        execution = self.executions.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return execution

    def get_execution_history(
        self, flow_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[FlowExecution]:
        if limit is None:
            limit = self.settings.history_default_limit
        if limit <= 0 or offset < 0:
            raise FlowEngineError(
                "limit must be positive and offset non-negative", error_code="invalid_request"
            )
        return self.executions.get_execution_history(flow_id, limit=limit, offset=offset)

    def get_node_executions(self, execution_id: str) -> List[NodeExecution]:
        self.get_execution(execution_id)
        return self.executions.get_node_executions(execution_id)
