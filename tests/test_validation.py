"""Graph validation and the validation result cache."""

import pytest

from liminalflow.service.validation import ValidationCache, ValidationResult, validate_flow
from tests.flow_helpers import branch_flow, edge, hello_flow, make_flow, node


def _codes(issues):
    return [issue.code for issue in issues]


def test_valid_flows_pass():
    assert validate_flow(hello_flow()).is_valid
    assert validate_flow(branch_flow()).is_valid


def test_empty_flow_rejected():
    result = validate_flow(make_flow([], []))

    assert _codes(result.errors) == ["empty_flow"]


def test_duplicate_keys_and_bad_key_format():
    flow = make_flow(
        [
            node("same", "variable", node_id="n1", value=1),
            node("same", "variable", node_id="n2", value=2),
            node("bad key", "output", node_id="n3"),
        ],
        [edge("n1", "n3"), edge("n2", "n3")],
    )

    codes = _codes(validate_flow(flow).errors)

    assert "duplicate_node_key" in codes
    assert "invalid_node_key" in codes


@pytest.mark.parametrize("key", ["1abc", "class", "not", "has-dash"])
def test_keys_must_be_expression_names(key):
    flow = hello_flow()
    flow.nodes[0].key = key

    assert "invalid_node_key" in _codes(validate_flow(flow).errors)


def test_node_retry_budget_checked_against_cap():
    flow = hello_flow()
    flow.nodes[0].max_retries = 6

    assert validate_flow(flow).is_valid
    assert _codes(validate_flow(flow, max_retries_cap=5).errors) == ["invalid_max_retries"]

    flow.nodes[0].max_retries = 5
    assert validate_flow(flow, max_retries_cap=5).is_valid


def test_edges_must_reference_existing_nodes_and_handles():
    flow = hello_flow()
    flow.edges.append(edge("greet", "ghost"))
    flow.edges.append(edge("greet", "out", edge_id="bad-handle", source_handle="true"))

    codes = _codes(validate_flow(flow).errors)

    assert "unknown_node" in codes
    assert "unknown_handle" in codes


def test_multiple_default_edges_on_same_handle():
    flow = branch_flow()
    flow.edges.append(edge("cond", "out", edge_id="second-default", is_default=True))

    assert "multiple_default_edges" in _codes(validate_flow(flow).errors)


def test_cycle_detected_without_hanging():
    flow = make_flow(
        [
            node("start", "variable", value=1),
            node("a", "variable", value=1),
            node("b", "variable", value=2),
            node("out", "output", variable="b"),
        ],
        [edge("start", "a"), edge("a", "b"), edge("b", "a"), edge("b", "out")],
    )

    result = validate_flow(flow)

    assert "cycle_detected" in _codes(result.errors)
    assert "a -> b -> a" in result.summary()


def test_flow_without_start_node():
    flow = make_flow(
        [node("a", "variable", value=1), node("out", "output")],
        [edge("a", "out"), edge("out", "a")],
    )

    assert _codes(validate_flow(flow).errors) == ["no_start_node"]


def test_conditional_needs_branch_edges():
    flow = make_flow(
        [node("cond", "conditional", condition="x > 1"), node("out", "output", variable="x")],
        [edge("cond", "out")],
    )

    assert "conditional_without_branches" in _codes(validate_flow(flow).errors)


def test_output_must_be_reachable():
    flow = hello_flow()
    flow.nodes.append(node("island_src", "variable", value=1))
    flow.nodes.append(node("orphan", "output", variable="x"))
    flow.edges.append(edge("island_src", "orphan"))
    flow.edges.append(edge("orphan", "island_src"))

    result = validate_flow(flow)

    assert "unreachable_output" in _codes(result.errors)


def test_missing_output_node():
    flow = make_flow([node("a", "variable", value=1)], [])

    assert "no_output_node" in _codes(validate_flow(flow).errors)


def test_node_config_checks():
    flow = make_flow(
        [
            node("p", "prompt", template="hi"),
            node("v", "variable", expression="1 +"),
            node("t", "transform", operation="shout"),
            node("out", "output", variable="v"),
        ],
        [edge("p", "v"), edge("v", "t"), edge("t", "out")],
    )

    result = validate_flow(flow)

    assert "invalid_node_config" in _codes(result.errors)
    assert "invalid_expression" in _codes(result.errors)
    assert "unsupported_transform" in _codes(result.warnings)


def test_invalid_edge_condition():
    flow = branch_flow()
    flow.edges[0].condition = "x >"

    assert "invalid_condition" in _codes(validate_flow(flow).errors)


def test_disabled_nodes_warn_and_are_ignored():
    flow = hello_flow()
    flow.nodes.append(node("unused", "variable", value=1))
    flow.nodes[-1].is_enabled = False

    result = validate_flow(flow)

    assert result.is_valid
    assert "node_disabled" in _codes(result.warnings)


def test_result_round_trips_through_dict():
    result = validate_flow(make_flow([], []))

    restored = ValidationResult.from_dict(result.to_dict())

    assert restored == result


class TestValidationCache:
    def test_key_changes_with_content(self):
        flow = hello_flow()
        key = ValidationCache.key_for(flow)
        flow.nodes[0].config["template"] = "Bye {{name}}"

        assert ValidationCache.key_for(flow) != key
        assert key[:2] == ("hello", 1)

    def test_key_ignores_layout(self):
        flow = hello_flow()
        key = ValidationCache.key_for(flow)
        flow.nodes[0].position = {"x": 10.0, "y": 5.0}

        assert ValidationCache.key_for(flow) == key

    def test_lru_eviction(self):
        cache = ValidationCache(max_entries=2)
        for index in range(3):
            cache.put(("f", index, "h"), ValidationResult())

        assert len(cache) == 2
        assert cache.get(("f", 0, "h")) is None
        assert cache.get(("f", 2, "h")) is not None
