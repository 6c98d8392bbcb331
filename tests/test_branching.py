"""
Unit tests for IF branch selection and skip propagation
"""

import pytest

from conftest import node, edge
from services.engine import dag
from services.engine.branching import compute_skipped_nodes, determine_branch, parents_complete
from services.engine.exceptions import ValidationError


def _diamond():
    """check -> T / F, both rejoin at D, D -> E"""
    return dag.compile({
        "nodes": [
            node("check", "IF", expr="inputs.go"),
            node("T"), node("F"), node("D"), node("E"),
        ],
        "edges": [
            edge("check", "T", "true"),
            edge("check", "F", "false"),
            edge("T", "D"),
            edge("F", "D"),
            edge("D", "E"),
        ],
    })


def test_reconvergent_node_is_not_skipped():
    runtime = _diamond()

    decision = determine_branch(runtime, "check", True)

    assert decision.selected == "T"
    assert decision.not_selected == "F"
    assert decision.skipped == ["F"]


def test_false_branch():
    decision = determine_branch(_diamond(), "check", False)

    assert decision.selected == "F"
    assert decision.skipped == ["T"]
    assert decision.to_output() == {"result": False, "branch": "false", "selected": "F", "skipped": ["T"]}


def test_whole_untaken_subtree_is_skipped():
    runtime = dag.compile({
        "nodes": [
            node("check", "IF", expr="true"),
            node("T"), node("F1"), node("F2"), node("F3"),
        ],
        "edges": [
            edge("check", "T", "true"),
            edge("check", "F1", "false"),
            edge("F1", "F2"),
            edge("F1", "F3"),
        ],
    })

    assert compute_skipped_nodes(runtime, "F1", "T") == {"F1", "F2", "F3"}


def test_selected_root_reachable_from_skipped_root():
    """check -> F -> T with T also the true target: T must not be skipped"""
    runtime = dag.compile({
        "nodes": [node("check", "IF", expr="true"), node("T"), node("F")],
        "edges": [edge("check", "T", "true"), edge("check", "F", "false"), edge("F", "T")],
    })

    decision = determine_branch(runtime, "check", True)

    assert decision.skipped == ["F"]


def test_determine_branch_requires_both_edges():
    runtime = dag.compile({"nodes": [node("A"), node("B")], "edges": [edge("A", "B")]})

    with pytest.raises(ValidationError):
        determine_branch(runtime, "A", True)


def test_parents_complete_join():
    runtime = _diamond()

    assert parents_complete(runtime, "D", {"T": "SUCCESS", "F": "SKIPPED"}) is True
    assert parents_complete(runtime, "D", {"T": "SUCCESS", "F": "PENDING"}) is False
    assert parents_complete(runtime, "D", {"T": "FAILED", "F": "SKIPPED"}) is False
    assert parents_complete(runtime, "check", {}) is True
