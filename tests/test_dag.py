"""
Unit tests for DAG validation and compilation
"""

import copy

import pytest

from conftest import node, edge
from services.engine import dag
from services.engine.exceptions import ValidationError
from services.engine.models import RetryPolicy


def test_topological_order_is_deterministic():
    """Roots are processed in sorted order regardless of declaration order"""
    definition = {"nodes": [node("B"), node("A"), node("C")], "edges": [edge("A", "C"), edge("B", "C")]}

    runtime = dag.compile(definition)

    assert runtime.order == ["A", "B", "C"]
    assert dag.root_nodes(runtime) == ["A", "B"]
    assert dag.leaf_nodes(runtime) == ["C"]


def test_independent_nodes_sorted():
    """No ordering between siblings other than their ids"""
    assert dag.topological_sort(["C", "B", "A"], []) == ["A", "B", "C"]


def test_kahn_resorts_ready_list():
    """A newly ready node is placed by id, not appended"""
    assert dag.topological_sort(["A", "Z", "B"], [("A", "B")]) == ["A", "B", "Z"]
    assert dag.topological_sort(["Z", "A", "M"], [("Z", "A")]) == ["M", "Z", "A"]


def test_cycle_detected_with_path():
    """A -> B -> C -> A is rejected with the cycle in the message"""
    definition = {
        "nodes": [node("A"), node("B"), node("C")],
        "edges": [edge("A", "B"), edge("B", "C"), edge("C", "A")],
    }

    with pytest.raises(ValidationError, match="Cycle detected: A -> B -> C -> A"):
        dag.validate(definition)


def test_duplicate_ids_rejected_first():
    definition = {"nodes": [node("A"), node("A")], "edges": [edge("A", "missing")]}

    with pytest.raises(ValidationError, match="Duplicate node id: A"):
        dag.validate(definition)


def test_unknown_edge_target():
    definition = {"nodes": [node("A"), node("B")], "edges": [edge("A", "X")]}

    with pytest.raises(ValidationError, match="unknown target node: X"):
        dag.validate(definition)


def test_self_loop_rejected():
    definition = {"nodes": [node("A")], "edges": [edge("A", "A")]}

    with pytest.raises(ValidationError, match="Self-loop"):
        dag.validate(definition)


def test_disconnected_node_rejected():
    definition = {"nodes": [node("A"), node("B"), node("C")], "edges": [edge("A", "B")]}

    with pytest.raises(ValidationError, match="Node C is disconnected"):
        dag.validate(definition)


def test_single_node_is_valid():
    runtime = dag.compile({"nodes": [node("only")], "edges": []})
    assert runtime.order == ["only"]


def test_if_requires_two_edges():
    definition = {
        "nodes": [node("check", "IF", expr="true"), node("T")],
        "edges": [edge("check", "T", "true")],
    }

    with pytest.raises(ValidationError, match="exactly 2 outgoing edges"):
        dag.validate(definition)


def test_if_requires_true_and_false():
    definition = {
        "nodes": [node("check", "IF", expr="true"), node("T"), node("U")],
        "edges": [edge("check", "T", "true"), edge("check", "U", "true")],
    }

    with pytest.raises(ValidationError, match='both "true" and "false"'):
        dag.validate(definition)


def test_if_accepts_structured_conditions():
    definition = {
        "nodes": [node("check", "IF", expr="inputs.ok"), node("T"), node("F")],
        "edges": [
            edge("check", "T", {"type": "IF"}),
            edge("check", "F", {"type": "ELSE"}),
        ],
    }

    runtime = dag.compile(definition)

    assert runtime.nodes["check"].condition is not None
    assert dag.get_edge(runtime, "check", "F").label == "ELSE"


def test_if_expression_must_parse():
    definition = {
        "nodes": [node("check", "IF", expr="steps.a.x =="), node("T"), node("F")],
        "edges": [edge("check", "T", "true"), edge("check", "F", "false")],
    }

    with pytest.raises(ValidationError, match="IF node check"):
        dag.validate(definition)


@pytest.mark.parametrize("config,message", [
    ({"ms": 0}, "positive"),
    ({"ms": "100"}, "positive"),
    ({"ms": 3_600_001}, "cannot exceed"),
])
def test_delay_config(config, message):
    with pytest.raises(ValidationError, match=message):
        dag.validate({"nodes": [{"id": "d", "type": "DELAY", "config": config}], "edges": []})


def test_api_proxy_requires_absolute_url():
    with pytest.raises(ValidationError, match="absolute http"):
        dag.validate({"nodes": [node("p", "API_PROXY", url="ftp://example.com/x")], "edges": []})


def test_text_transform_shift_must_be_numeric():
    with pytest.raises(ValidationError, match="shift must be a number"):
        dag.validate({"nodes": [node("t", shift="3")], "edges": []})


def test_unknown_aggregator_operation():
    with pytest.raises(ValidationError, match="unknown operation"):
        dag.validate({"nodes": [node("a", "DATA_AGGREGATOR", operation="explode")], "edges": []})


def test_custom_requires_code():
    with pytest.raises(ValidationError, match="code is required"):
        dag.validate({"nodes": [node("c", "CUSTOM")], "edges": []})


def test_schema_errors_become_validation_errors():
    with pytest.raises(ValidationError, match="Invalid workflow definition"):
        dag.validate({"nodes": [{"id": "x", "type": "NOPE"}], "edges": []})


def test_compile_does_not_mutate_input():
    definition = {
        "nodes": [node("A", shift=1), node("B", "DATA_AGGREGATOR", operation="merge", sources=["A"])],
        "edges": [edge("A", "B")],
    }
    snapshot = copy.deepcopy(definition)

    first = dag.compile(definition)
    first.nodes["B"].config["sources"].append("mutated")
    second = dag.compile(definition)

    assert definition == snapshot
    assert second.nodes["B"].config["sources"] == ["A"]
    assert first.order == second.order


def test_retry_resolution_precedence():
    definition = {
        "nodes": [
            {"id": "A", "type": "TEXT_TRANSFORM", "retryConfig": {"maxAttempts": 5, "backoffMs": 10}},
            {"id": "B", "type": "TEXT_TRANSFORM"},
        ],
        "edges": [edge("A", "B")],
        "settings": {"defaultMaxAttempts": 2},
    }

    runtime = dag.compile(definition)

    assert runtime.nodes["A"].retry == RetryPolicy(5, 10, 2.0)
    assert runtime.nodes["B"].retry == RetryPolicy(2, 1000, 2.0)


def test_system_retry_default():
    runtime = dag.compile({"nodes": [node("A")], "edges": []}, system_retry=RetryPolicy(4, 50, 3.0))
    assert runtime.nodes["A"].retry == RetryPolicy(4, 50, 3.0)


def test_adjacency_maps():
    definition = {
        "nodes": [node("A"), node("B"), node("C"), node("D")],
        "edges": [edge("A", "C"), edge("A", "B"), edge("B", "D"), edge("C", "D")],
    }

    runtime = dag.compile(definition)

    assert dag.child_nodes(runtime, "A") == ["B", "C"]
    assert dag.parent_nodes(runtime, "D") == ["B", "C"]
    assert dag.get_edge(runtime, "A", "D") is None
