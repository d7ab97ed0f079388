"""Engine behaviour: ordering, routing, retries, failure handling, cancellation."""

import asyncio
import time

import pytest

from liminalflow.service.errors import ErrorKind, FlowEngineError, FlowValidationError
from liminalflow.service.model_backend import ProviderResponse
from liminalflow.service.workflow import ExecutionOptions, FlowExecutionEngine
from liminalflow.storage.models import FlowExecutionStatus, NodeExecutionStatus
from tests.flow_helpers import (
    ScriptedProvider,
    branch_flow,
    edge,
    hello_flow,
    make_flow,
    node,
    statuses,
)


class TestLinearFlows:
    """Prompt and output nodes wired in a straight line."""

    @pytest.mark.asyncio
    async def test_prompt_to_output(self, engine, provider):
        execution = await engine.run(hello_flow(), {"name": "Ada"})

        assert execution.status is FlowExecutionStatus.COMPLETED
        assert execution.output_result == {"result": "Hello Ada"}
        assert provider.calls[0].prompt == "Hello Ada"
        assert statuses(execution) == {"greet": "succeeded", "out": "succeeded"}
        assert execution.execution_plan == ["greet", "out"]

    @pytest.mark.asyncio
    async def test_totals_are_sum_of_node_records(self, engine):
        flow = make_flow(
            [
                node("a", "prompt", model="test-model", template="one"),
                node("b", "prompt", model="test-model", template="{{a.output}} two"),
                node("out", "output", variable="b.output"),
            ],
            [edge("a", "b"), edge("b", "out")],
        )

        execution = await engine.run(flow, {})

        assert execution.status is FlowExecutionStatus.COMPLETED
        assert execution.output_result == {"result": "one two"}
        assert execution.total_tokens == sum(r.tokens_consumed for r in execution.node_executions)
        assert execution.total_tokens == 10
        assert execution.total_cost == pytest.approx(0.002)

    @pytest.mark.asyncio
    async def test_records_are_persisted(self, engine, memory_store):
        execution = await engine.run(hello_flow(), {"name": "Ada"})

        stored = memory_store.get_execution(execution.id)
        assert stored.status is FlowExecutionStatus.COMPLETED
        assert stored.output_result == {"result": "Hello Ada"}
        assert [r.node_key for r in stored.node_executions] == ["greet", "out"]
        assert stored.ended_at is not None and stored.duration_ms is not None

    @pytest.mark.asyncio
    async def test_running_record_written_before_provider_call(self, memory_store, settings, gateway):
        seen = []

        class InspectingProvider(ScriptedProvider):
            async def complete(self, request):
                execution = memory_store.get_execution_history("hello")[0]
                records = memory_store.get_node_executions(execution.id)
                seen.extend((r.node_key, r.status) for r in records)
                return await super().complete(request)

        gateway.register(InspectingProvider(name="inspecting"), prefixes=["inspect-"])
        flow = hello_flow()
        flow.nodes[0].config["model"] = "inspect-model"
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)

        await engine.run(flow, {"name": "Ada"})

        assert ("greet", NodeExecutionStatus.RUNNING) in seen

    @pytest.mark.asyncio
    async def test_edge_traversals_recorded(self, engine):
        execution = await engine.run(hello_flow(), {"name": "Ada"})

        assert [t.edge_id for t in execution.edge_traversals] == ["greet->out"]


class TestBranching:
    @pytest.mark.asyncio
    async def test_true_branch_runs_default_skipped(self, engine):
        execution = await engine.run(branch_flow(), {"x": 10})

        assert execution.status is FlowExecutionStatus.COMPLETED
        assert statuses(execution)["B"] == "succeeded"
        assert statuses(execution)["C"] == "skipped"
        assert execution.node_execution("C").skip_reason == "branch_not_selected"
        assert execution.output_result == {"result": "B"}
        assert execution.node_execution("cond").selected_handle == "true"

    @pytest.mark.asyncio
    async def test_default_edge_taken_when_condition_false(self, engine):
        execution = await engine.run(branch_flow(), {"x": 3})

        assert statuses(execution)["B"] == "skipped"
        assert statuses(execution)["C"] == "succeeded"
        assert execution.output_result == {"result": "C"}

    @pytest.mark.asyncio
    async def test_edge_conditions_route_from_any_node(self, engine):
        flow = make_flow(
            [
                node("score", "variable", name="score", expression="points * 10"),
                node("pass", "output", name="verdict", template="pass {{score}}"),
                node("fail", "output", name="verdict", template="fail {{score}}"),
            ],
            [
                edge("score", "pass", condition={"variable": "score", "operator": ">=", "value": 50}),
                edge("score", "fail", is_default=True),
            ],
        )

        high = await engine.run(flow, {"points": 7})
        low = await engine.run(flow, {"points": 2})

        assert high.output_result == {"verdict": "pass 70"}
        assert low.output_result == {"verdict": "fail 20"}
        assert low.node_execution("pass").skip_reason == "branch_not_selected"

    @pytest.mark.asyncio
    async def test_skip_propagates_through_chain(self, engine):
        flow = make_flow(
            [
                node("cond", "conditional", condition="flag"),
                node("yes", "variable", name="answer", value="yes"),
                node("yes_more", "transform", operation="uppercase", input="answer"),
                node("no", "variable", name="answer", value="no"),
                node("out", "output", variable="answer"),
            ],
            [
                edge("cond", "yes", source_handle="true"),
                edge("yes", "yes_more"),
                edge("cond", "no", source_handle="false"),
                edge("yes_more", "out"),
                edge("no", "out"),
            ],
        )

        execution = await engine.run(flow, {"flag": False})

        assert statuses(execution) == {
            "cond": "succeeded",
            "yes": "skipped",
            "yes_more": "skipped",
            "no": "succeeded",
            "out": "succeeded",
        }
        assert execution.output_result == {"result": "no"}

    @pytest.mark.asyncio
    async def test_parallel_writes_commit_in_plan_order(self, engine):
        flow = make_flow(
            [
                node("first", "variable", name="v", value="first"),
                node("second", "variable", name="v", value="second"),
                node("out", "output", variable="v"),
            ],
            [edge("first", "out"), edge("second", "out")],
        )

        for _ in range(3):
            execution = await engine.run(flow, {})
            assert execution.output_result == {"result": "second"}


class TestRetries:
    @pytest.mark.asyncio
    async def test_rate_limited_twice_then_succeeds(self, engine, provider):
        provider.script = [ErrorKind.RATE_LIMITED, ErrorKind.RATE_LIMITED]

        execution = await engine.run(
            hello_flow(), {"name": "Ada"}, ExecutionOptions(retry_attempts=2, retry_backoff_ms=0)
        )

        record = execution.node_execution("greet")
        assert record.status is NodeExecutionStatus.SUCCEEDED
        assert record.retry_count == 2
        assert len(provider.calls) == 3
        assert execution.status is FlowExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_exhaustion_makes_budget_plus_one_attempts(self, engine, provider):
        provider.script = [ErrorKind.TRANSIENT] * 10

        execution = await engine.run(
            hello_flow(), {"name": "Ada"}, ExecutionOptions(retry_attempts=2, retry_backoff_ms=0)
        )

        record = execution.node_execution("greet")
        assert len(provider.calls) == 3
        assert record.status is NodeExecutionStatus.FAILED
        assert record.retry_count == 2
        assert record.error_kind == "provider_transient"
        assert execution.status is FlowExecutionStatus.FAILED
        assert execution.node_execution("out").skip_reason == "upstream_failed"

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(self, engine, provider):
        provider.script = [ErrorKind.AUTH]

        execution = await engine.run(
            hello_flow(), {"name": "Ada"}, ExecutionOptions(retry_attempts=3, retry_backoff_ms=0)
        )

        assert len(provider.calls) == 1
        assert execution.node_execution("greet").error_kind == "provider_auth"

    @pytest.mark.asyncio
    async def test_node_budget_overrides_call_budget(self, engine, provider):
        provider.script = [ErrorKind.TIMEOUT] * 10
        flow = hello_flow()
        flow.nodes[0].max_retries = 1

        await engine.run(flow, {"name": "Ada"}, ExecutionOptions(retry_attempts=4, retry_backoff_ms=0))

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_budget_above_hard_cap_is_rejected(self, engine, memory_store, provider):
        provider.script = [ErrorKind.RATE_LIMITED] * 20

        with pytest.raises(FlowEngineError) as excinfo:
            await engine.run(
                hello_flow(), {"name": "Ada"}, ExecutionOptions(retry_attempts=7, retry_backoff_ms=0)
            )

        assert excinfo.value.error_code == "invalid_request"
        assert provider.calls == []
        assert memory_store.executions == {}

    @pytest.mark.asyncio
    async def test_node_budget_above_hard_cap_is_rejected(self, engine, provider):
        flow = hello_flow()
        flow.nodes[0].max_retries = 9

        with pytest.raises(FlowEngineError) as excinfo:
            await engine.run(flow, {"name": "Ada"})

        assert excinfo.value.detail["nodes"] == ["greet"]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_budget_at_hard_cap_makes_every_attempt(self, memory_store, gateway, provider, settings):
        provider.script = [ErrorKind.RATE_LIMITED] * 20
        engine = FlowExecutionEngine(
            memory_store, gateway, settings=settings.model_copy(update={"max_retries_hard_cap": 7})
        )

        execution = await engine.run(
            hello_flow(), {"name": "Ada"}, ExecutionOptions(retry_attempts=7, retry_backoff_ms=0)
        )

        assert len(provider.calls) == 8
        assert execution.node_execution("greet").retry_count == 7


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_variable_fails_node(self, engine, provider):
        execution = await engine.run(hello_flow(), {})

        record = execution.node_execution("greet")
        assert record.status is NodeExecutionStatus.FAILED
        assert record.error_kind == "missing_variable"
        assert provider.calls == []
        assert execution.status is FlowExecutionStatus.FAILED
        assert "greet" in execution.error_message

    @pytest.mark.asyncio
    async def test_unsupported_transform_fails_node(self, engine):
        flow = make_flow(
            [
                node("t", "transform", operation="reverse_everything", value="abc"),
                node("out", "output"),
            ],
            [edge("t", "out")],
        )

        execution = await engine.run(flow, {})

        assert execution.node_execution("t").error_kind == "unsupported_transform"
        assert execution.status is FlowExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_output_reached_is_failure(self, engine):
        flow = make_flow(
            [
                node("cond", "conditional", condition="false"),
                node("out", "output", template="never"),
            ],
            [edge("cond", "out", source_handle="true")],
        )

        execution = await engine.run(flow, {})

        assert execution.status is FlowExecutionStatus.FAILED
        assert execution.error_message == "no output node produced a result"

    @pytest.mark.asyncio
    async def test_continue_on_error_keeps_partial_results(self, engine):
        flow = make_flow(
            [
                node("bad", "transform", operation="to_number", value="not a number"),
                node("good", "variable", name="greeting", value="hi"),
                node("out_bad", "output", name="number"),
                node("out_good", "output", name="greeting", variable="greeting"),
            ],
            [edge("bad", "out_bad"), edge("good", "out_good")],
        )

        strict = await engine.run(flow, {})
        lenient = await engine.run(flow, {}, ExecutionOptions(continue_on_error=True))

        assert strict.status is FlowExecutionStatus.FAILED
        assert strict.output_result == {"greeting": "hi"}
        assert lenient.status is FlowExecutionStatus.COMPLETED
        assert lenient.output_result == {"greeting": "hi"}
        assert statuses(lenient)["out_bad"] == "skipped"

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_in_flight_nodes(self, memory_store, settings):
        from liminalflow.service.gateway import ModelGateway

        slow = ScriptedProvider(delay=5.0)
        gateway = ModelGateway(default_timeout_seconds=10.0)
        gateway.register(slow, prefixes=["test-"])
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)
        flow = make_flow(
            [
                node("bad", "transform", operation="nope", value=1),
                node("slow", "prompt", model="test-model", template="take your time"),
                node("out", "output", variable="slow.output"),
            ],
            [edge("slow", "out"), edge("bad", "out")],
        )

        started = time.monotonic()
        execution = await engine.run(flow, {}, ExecutionOptions(fail_fast=True))

        assert time.monotonic() - started < 2.0
        assert execution.status is FlowExecutionStatus.FAILED
        assert statuses(execution)["bad"] == "failed"
        assert statuses(execution)["slow"] == "cancelled"
        assert "bad" in execution.error_message

    @pytest.mark.asyncio
    async def test_token_threshold_stops_scheduling(self, engine, provider):
        flow = make_flow(
            [
                node("a", "prompt", model="test-model", template="one"),
                node("b", "prompt", model="test-model", template="two"),
                node("out", "output", variable="b.output"),
            ],
            [edge("a", "b"), edge("b", "out")],
        )

        execution = await engine.run(flow, {}, ExecutionOptions(max_token_threshold=4))

        assert execution.status is FlowExecutionStatus.FAILED
        assert "exceeded threshold" in execution.error_message
        assert len(provider.calls) == 1
        assert execution.node_execution("b").skip_reason == "execution_stopped"


class TestTimeoutsAndCancellation:
    @pytest.mark.asyncio
    async def test_node_timeout_fails_node(self, memory_store, settings):
        from liminalflow.service.gateway import ModelGateway

        gateway = ModelGateway(default_timeout_seconds=10.0)
        gateway.register(ScriptedProvider(delay=2.0), prefixes=["test-"])
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)

        execution = await engine.run(hello_flow(), {"name": "Ada"}, ExecutionOptions(node_timeout_ms=50))

        record = execution.node_execution("greet")
        assert record.status is NodeExecutionStatus.FAILED
        assert record.error_kind == "provider_timeout"

    @pytest.mark.asyncio
    async def test_overall_timeout_fails_execution(self, memory_store, settings):
        from liminalflow.service.gateway import ModelGateway

        gateway = ModelGateway(default_timeout_seconds=10.0)
        gateway.register(ScriptedProvider(delay=3.0), prefixes=["test-"])
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)

        started = time.monotonic()
        execution = await engine.run(hello_flow(), {"name": "Ada"}, ExecutionOptions(timeout_ms=100))

        assert time.monotonic() - started < 2.0
        assert execution.status is FlowExecutionStatus.FAILED
        assert "timed out" in execution.error_message

    @pytest.mark.asyncio
    async def test_cancellation_marks_running_nodes(self, memory_store, settings):
        from liminalflow.service.gateway import ModelGateway

        slow = ScriptedProvider(delay=5.0)
        gateway = ModelGateway(default_timeout_seconds=10.0)
        gateway.register(slow, prefixes=["test-"])
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)
        cancel_event = asyncio.Event()

        task = asyncio.ensure_future(engine.run(hello_flow(), {"name": "Ada"}, cancel_event=cancel_event))
        while not slow.calls:
            await asyncio.sleep(0.01)
        cancel_event.set()
        execution = await asyncio.wait_for(task, timeout=2.0)

        assert execution.status is FlowExecutionStatus.CANCELLED
        assert statuses(execution)["greet"] == "cancelled"
        assert statuses(execution)["out"] == "cancelled"
        assert memory_store.get_execution(execution.id).status is FlowExecutionStatus.CANCELLED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_max_concurrent_nodes_bounds_parallelism(self, memory_store, settings):
        from liminalflow.service.gateway import ModelGateway

        provider = ScriptedProvider(delay=0.05)
        gateway = ModelGateway()
        gateway.register(provider, prefixes=["test-"])
        engine = FlowExecutionEngine(memory_store, gateway, settings=settings)
        prompts = [node(f"p{i}", "prompt", model="test-model", template=f"n{i}") for i in range(4)]
        flow = make_flow(
            prompts + [node("out", "output", template="{{p0.output}} {{p3.output}}")],
            [edge(f"p{i}", "out") for i in range(4)],
        )

        execution = await engine.run(flow, {}, ExecutionOptions(max_concurrent_nodes=2))

        assert execution.status is FlowExecutionStatus.COMPLETED
        assert provider.max_in_flight == 2
        assert execution.output_result == {"result": "n0 n3"}

    @pytest.mark.asyncio
    async def test_concurrent_executions_are_isolated(self, engine):
        names = ["Ada", "Grace", "Edsger", "Barbara"]

        results = await asyncio.gather(*(engine.run(hello_flow(), {"name": n}) for n in names))

        assert [r.output_result["result"] for r in results] == [f"Hello {n}" for n in names]
        assert len({r.id for r in results}) == len(names)

    @pytest.mark.asyncio
    async def test_siblings_read_the_wave_snapshot(self, engine):
        flow = make_flow(
            [
                node("writer", "variable", name="shared", value="new"),
                node("reader", "variable", name="seen", expression="shared"),
                node("after", "variable", name="later", expression="shared"),
                node("out", "output", template="{{seen}}|{{later}}"),
            ],
            [edge("writer", "after"), edge("reader", "after"), edge("after", "out")],
        )

        execution = await engine.run(flow, {"shared": "old"})

        assert execution.status is FlowExecutionStatus.COMPLETED
        assert execution.node_execution("writer").execution_order < execution.node_execution("after").execution_order
        assert execution.node_execution("reader").output["seen"] == "old"
        assert execution.node_execution("after").output["later"] == "new"
        assert execution.output_result == {"result": "old|new"}

    @pytest.mark.asyncio
    async def test_same_flow_and_inputs_resolve_identically(self, engine):
        flow = make_flow(
            [
                node("greet", "prompt", model="test-model", template="Hello {{name}}"),
                node("shout", "transform", operation="uppercase"),
                node("cond", "conditional", condition="len(shout.output) > 5"),
                node("long", "variable", name="size", value="long"),
                node("short", "variable", name="size", value="short"),
                node("out", "output", template="{{shout.output}} ({{size}})"),
            ],
            [
                edge("greet", "shout"),
                edge("shout", "cond"),
                edge("cond", "long", source_handle="true"),
                edge("cond", "short", is_default=True),
                edge("long", "out"),
                edge("short", "out"),
            ],
        )

        first = await engine.run(flow, {"name": "Ada"})
        second = await engine.run(flow, {"name": "Ada"})

        assert first.output_result == {"result": "HELLO ADA (long)"}
        assert second.output_result == first.output_result
        assert [t.edge_id for t in second.edge_traversals] == [t.edge_id for t in first.edge_traversals]
        assert statuses(second) == statuses(first)
        assert (second.total_tokens, second.total_cost) == (first.total_tokens, first.total_cost)


class TestPlanning:
    @pytest.mark.asyncio
    async def test_cycle_rejected_without_running(self, engine, provider, memory_store):
        flow = make_flow(
            [
                node("a", "variable", name="x", value=1),
                node("b", "variable", name="y", value=2),
                node("c", "variable", name="z", value=3),
                node("out", "output", variable="z"),
            ],
            [edge("a", "b"), edge("b", "c"), edge("c", "b"), edge("c", "out")],
        )

        with pytest.raises(FlowValidationError):
            await asyncio.wait_for(engine.run(flow, {}), timeout=2.0)
        assert memory_store.executions == {}

    @pytest.mark.asyncio
    async def test_dry_run_plans_without_calls(self, engine, provider, memory_store):
        execution = await engine.run(hello_flow(), {"name": "Ada"}, ExecutionOptions(dry_run=True))

        assert execution.status is FlowExecutionStatus.PENDING
        assert execution.dry_run is True
        assert execution.execution_plan == ["greet", "out"]
        assert provider.calls == []
        assert memory_store.executions == {}

    @pytest.mark.asyncio
    async def test_provider_response_metadata_recorded(self, engine, provider):
        provider.script = [
            ProviderResponse(success=True, content="hi", input_tokens=7, output_tokens=1, cost=0.5, model="test-model-x")
        ]

        execution = await engine.run(hello_flow(), {"name": "Ada"})

        record = execution.node_execution("greet")
        assert record.provider == "scripted"
        assert record.model == "test-model-x"
        assert record.tokens_consumed == 8
        assert execution.total_cost == pytest.approx(0.5)
