import pytest

from liminalflow.storage.errors import ConstraintViolation, RecordNotFound, TerminalRecordError
from liminalflow.storage.models import (
    FlowExecution,
    FlowExecutionStatus,
    NodeExecution,
    NodeExecutionStatus,
    NodeType,
)
from liminalflow.storage.repository import AuditContext

AUDIT = AuditContext(actor="tester", environment="test")


def _execution(execution_id="e1", flow_id="f1"):
    return FlowExecution(id=execution_id, flow_id=flow_id, flow_version=1)


def _node_record(record_id="n1", execution_id="e1", order=1):
    return NodeExecution(
        id=record_id,
        flow_execution_id=execution_id,
        node_id="a",
        node_key="a",
        node_type=NodeType.VARIABLE,
        execution_order=order,
    )


def test_records_are_copied_in_and_out(memory_store):
    execution = _execution()
    memory_store.create_execution(execution, audit=AUDIT)
    execution.output_result["leak"] = True

    stored = memory_store.get_execution("e1")
    stored.output_result["other"] = 1

    assert memory_store.get_execution("e1").output_result == {}


def test_duplicate_and_missing_records(memory_store):
    memory_store.create_execution(_execution(), audit=AUDIT)

    with pytest.raises(ConstraintViolation):
        memory_store.create_execution(_execution(), audit=AUDIT)
    with pytest.raises(ConstraintViolation):
        memory_store.update_execution(_execution("ghost"), audit=AUDIT)
    with pytest.raises(ConstraintViolation):
        memory_store.create_node_execution(_node_record(execution_id="ghost"), audit=AUDIT)


def test_terminal_records_are_immutable(memory_store):
    execution = _execution()
    memory_store.create_execution(execution, audit=AUDIT)
    execution.status = FlowExecutionStatus.COMPLETED
    memory_store.update_execution(execution, audit=AUDIT)

    execution.error_message = "rewrite"
    with pytest.raises(ConstraintViolation):
        memory_store.update_execution(execution, audit=AUDIT)

    record = _node_record()
    record.status = NodeExecutionStatus.SKIPPED
    memory_store.create_node_execution(record, audit=AUDIT)
    with pytest.raises(ConstraintViolation):
        memory_store.update_node_execution(record, audit=AUDIT)


def test_node_executions_ordered_and_attached(memory_store):
    memory_store.create_execution(_execution(), audit=AUDIT)
    memory_store.create_node_execution(_node_record("n2", order=2), audit=AUDIT)
    memory_store.create_node_execution(_node_record("n1", order=1), audit=AUDIT)

    assert [r.id for r in memory_store.get_node_executions("e1")] == ["n1", "n2"]
    assert [r.id for r in memory_store.get_execution("e1").node_executions] == ["n1", "n2"]


def test_history_filters_by_flow_and_base_flow(memory_store):
    memory_store.create_execution(_execution("e1", "f1"), audit=AUDIT)
    variant_run = _execution("e2", "f1-variant")
    variant_run.base_flow_id = "f1"
    memory_store.create_execution(variant_run, audit=AUDIT)
    memory_store.create_execution(_execution("e3", "other"), audit=AUDIT)

    assert {e.id for e in memory_store.get_execution_history("f1")} == {"e1", "e2"}
    assert len(memory_store.get_execution_history("f1", limit=1)) == 1


def test_audit_log_records_actor(memory_store):
    memory_store.create_execution(_execution(), audit=AUDIT)

    entry = memory_store.audit_log[-1]
    assert entry["action"] == "create_execution"
    assert entry["actor"] == "tester"
    assert entry["environment"] == "test"


def test_violation_subtypes(memory_store):
    execution = _execution()
    memory_store.create_execution(execution, audit=AUDIT)
    execution.status = FlowExecutionStatus.FAILED
    memory_store.update_execution(execution, audit=AUDIT)

    with pytest.raises(TerminalRecordError):
        memory_store.update_execution(execution, audit=AUDIT)
    with pytest.raises(RecordNotFound):
        memory_store.update_node_execution(_node_record(), audit=AUDIT)
