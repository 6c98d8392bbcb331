"""DAG validation and compilation.

validate() runs the structural and per-type checks in a fixed order and raises
ValidationError at the first failure. compile() validates and derives the
read-only DAGRuntime used by the orchestrator: node map, forward and reverse
adjacency, deterministic topological order and resolved retry policies.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from pydantic import ValidationError as PydanticValidationError

from constants import (
    TEXT_TRANSFORM_OPERATIONS,
    DATA_AGGREGATOR_OPERATIONS,
    TRUE_BRANCH_LABELS,
    FALSE_BRANCH_LABELS,
    DEFAULT_BACKOFF_MS,
    DEFAULT_BACKOFF_MULTIPLIER,
)
from core.logging import get_logger
from models.workflow import DAGDefinition, NodeConfig, NodeType
from services.engine import expressions
from services.engine.exceptions import ValidationError
from services.engine.models import DAGRuntime, EdgeRuntime, NodeRuntime, RetryPolicy

logger = get_logger(__name__)

DEFAULT_DELAY_MAX_MS = 3_600_000

DefinitionLike = Union[DAGDefinition, Dict[str, Any]]


def parse_definition(definition: DefinitionLike) -> DAGDefinition:
    """Coerce a raw dict into a DAGDefinition, mapping schema errors to ValidationError."""
    if isinstance(definition, DAGDefinition):
        return definition
    try:
        return DAGDefinition.model_validate(definition)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid workflow definition at {location or 'root'}: {first.get('msg')}") from e


# =============================================================================
# VALIDATION
# =============================================================================

def validate(definition: DefinitionLike, delay_max_ms: int = DEFAULT_DELAY_MAX_MS) -> DAGDefinition:
    """Validate a workflow definition.

    Args:
        definition: DAGDefinition or its JSON dict form
        delay_max_ms: Upper bound accepted for DELAY nodes

    Returns:
        The parsed DAGDefinition

    Raises:
        ValidationError: At the first failing check
    """
    dag = parse_definition(definition)
    _check_unique_ids(dag)
    _check_edges(dag)
    _check_acyclic(dag)
    _check_connected(dag)
    _check_if_branches(dag)
    for node in dag.nodes:
        _check_node_config(node, delay_max_ms)
    return dag


def _check_unique_ids(dag: DAGDefinition) -> None:
    seen: Set[str] = set()
    for node in dag.nodes:
        if node.id in seen:
            raise ValidationError(f"Duplicate node id: {node.id}")
        seen.add(node.id)


def _check_edges(dag: DAGDefinition) -> None:
    node_ids = {n.id for n in dag.nodes}
    for edge in dag.edges:
        if edge.source not in node_ids:
            raise ValidationError(f"Edge references unknown source node: {edge.source}")
        if edge.target not in node_ids:
            raise ValidationError(f"Edge references unknown target node: {edge.target}")
        if edge.source == edge.target:
            raise ValidationError(f"Self-loop on node {edge.source}")


def _check_acyclic(dag: DAGDefinition) -> None:
    """Iterative DFS with an explicit stack and recursion set."""
    adjacency = _adjacency([n.id for n in dag.nodes], ((e.source, e.target) for e in dag.edges))
    visited: Set[str] = set()

    for start in sorted(adjacency):
        if start in visited:
            continue
        # (node, iterator index into its children)
        stack: List[Tuple[str, int]] = [(start, 0)]
        path: List[str] = [start]
        on_stack: Set[str] = {start}
        visited.add(start)

        while stack:
            node_id, index = stack[-1]
            children = adjacency[node_id]
            if index >= len(children):
                stack.pop()
                path.pop()
                on_stack.discard(node_id)
                continue

            stack[-1] = (node_id, index + 1)
            child = children[index]
            if child in on_stack:
                cycle = path[path.index(child):] + [child]
                raise ValidationError(f"Cycle detected: {' -> '.join(cycle)}")
            if child not in visited:
                visited.add(child)
                on_stack.add(child)
                path.append(child)
                stack.append((child, 0))


def _check_connected(dag: DAGDefinition) -> None:
    if len(dag.nodes) <= 1:
        return
    touched = {e.source for e in dag.edges} | {e.target for e in dag.edges}
    for node in dag.nodes:
        if node.id not in touched:
            raise ValidationError(f"Node {node.id} is disconnected from the workflow")


def _check_if_branches(dag: DAGDefinition) -> None:
    for node in dag.nodes:
        if node.type != NodeType.IF:
            continue
        outgoing = [e for e in dag.edges if e.source == node.id]
        if len(outgoing) != 2:
            raise ValidationError(
                f"IF node {node.id} must have exactly 2 outgoing edges, found {len(outgoing)}")
        labels = [e.label for e in outgoing]
        has_true = any(label in TRUE_BRANCH_LABELS for label in labels)
        has_false = any(label in FALSE_BRANCH_LABELS for label in labels)
        if not (has_true and has_false):
            raise ValidationError(f'IF node {node.id} must have both "true" and "false" condition edges')


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_node_config(node: NodeConfig, delay_max_ms: int) -> None:
    config = node.config

    if node.type == NodeType.TEXT_TRANSFORM:
        if "shift" in config and not _is_number(config["shift"]):
            raise ValidationError(f"TEXT_TRANSFORM node {node.id}: shift must be a number")
        operation = config.get("operation")
        if operation is not None and operation not in TEXT_TRANSFORM_OPERATIONS:
            raise ValidationError(f"TEXT_TRANSFORM node {node.id}: unknown operation {operation!r}")

    elif node.type == NodeType.API_PROXY:
        url = config.get("url")
        if not url or not isinstance(url, str):
            raise ValidationError(f"API_PROXY node {node.id}: url is required and must be a string")
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValidationError(f"API_PROXY node {node.id}: url must be an absolute http(s) URL")

    elif node.type == NodeType.DELAY:
        ms = config.get("ms")
        if not _is_number(ms) or ms <= 0:
            raise ValidationError(f"DELAY node {node.id}: ms must be a positive number")
        if ms > delay_max_ms:
            raise ValidationError(f"DELAY node {node.id}: ms cannot exceed {delay_max_ms}")

    elif node.type == NodeType.IF:
        expr = config.get("expr")
        if not expr or not isinstance(expr, str):
            raise ValidationError(f"IF node {node.id}: expr (expression) is required and must be a string")
        try:
            expressions.parse(expr)
        except expressions.ExpressionError as e:
            raise ValidationError(f"IF node {node.id}: {e}") from e

    elif node.type == NodeType.DATA_AGGREGATOR:
        operation = config.get("operation")
        if operation not in DATA_AGGREGATOR_OPERATIONS:
            raise ValidationError(f"DATA_AGGREGATOR node {node.id}: unknown operation {operation!r}")

    elif node.type == NodeType.CUSTOM:
        code = config.get("code")
        if not code or not isinstance(code, str):
            raise ValidationError(f"CUSTOM node {node.id}: code is required and must be a string")
        timeout_ms = config.get("timeoutMs")
        if timeout_ms is not None and (not _is_number(timeout_ms) or timeout_ms <= 0):
            raise ValidationError(f"CUSTOM node {node.id}: timeoutMs must be a positive number")


# =============================================================================
# COMPILATION
# =============================================================================

def _adjacency(node_ids: Iterable[str], pairs: Iterable[Tuple[str, str]]) -> Dict[str, List[str]]:
    adjacency: Dict[str, Set[str]] = {node_id: set() for node_id in node_ids}
    for source, target in pairs:
        adjacency.setdefault(source, set()).add(target)
    return {node_id: sorted(targets) for node_id, targets in adjacency.items()}


def topological_sort(node_ids: Iterable[str], pairs: Iterable[Tuple[str, str]]) -> List[str]:
    """Kahn's algorithm with deterministic tie-breaking.

    The ready list is re-sorted by node id before every pop, so nodes that
    become ready at the same time always come out in the same order.

    Raises:
        ValidationError: If the graph contains a cycle
    """
    node_ids = list(node_ids)
    adjacency = _adjacency(node_ids, pairs)
    in_degree = {node_id: 0 for node_id in adjacency}
    for targets in adjacency.values():
        for target in targets:
            in_degree[target] += 1

    ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
    order: List[str] = []

    while ready:
        ready.sort()
        node_id = ready.pop(0)
        order.append(node_id)
        for child in adjacency[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if len(order) != len(adjacency):
        raise ValidationError("Cannot perform topological sort - DAG contains a cycle")
    return order


def resolve_retry_policy(node: NodeConfig, dag: DAGDefinition,
                         system_default: Optional[RetryPolicy] = None) -> RetryPolicy:
    """Node override, else workflow default attempts, else system default."""
    if node.retry_config is not None:
        return RetryPolicy(
            max_attempts=node.retry_config.max_attempts,
            backoff_ms=node.retry_config.backoff_ms,
            backoff_multiplier=node.retry_config.backoff_multiplier,
        )
    if dag.settings is not None and dag.settings.default_max_attempts is not None:
        return RetryPolicy(
            max_attempts=dag.settings.default_max_attempts,
            backoff_ms=DEFAULT_BACKOFF_MS,
            backoff_multiplier=DEFAULT_BACKOFF_MULTIPLIER,
        )
    return system_default or RetryPolicy()


def compile(definition: DefinitionLike, system_retry: Optional[RetryPolicy] = None,
            delay_max_ms: int = DEFAULT_DELAY_MAX_MS) -> DAGRuntime:
    """Validate and compile a definition into a DAGRuntime.

    The source definition is never mutated; node configs are deep-copied.
    """
    dag = validate(definition, delay_max_ms=delay_max_ms)

    node_ids = [n.id for n in dag.nodes]
    pairs = [(e.source, e.target) for e in dag.edges]

    nodes: Dict[str, NodeRuntime] = {}
    for node in dag.nodes:
        condition = expressions.parse(node.config["expr"]) if node.type == NodeType.IF else None
        nodes[node.id] = NodeRuntime(
            id=node.id,
            type=node.type,
            config=copy.deepcopy(node.config),
            retry=resolve_retry_policy(node, dag, system_retry),
            plugin_version=node.plugin_version,
            condition=condition,
        )

    reverse_pairs = [(target, source) for source, target in pairs]
    edges = sorted(
        (EdgeRuntime(e.source, e.target, e.label) for e in dag.edges),
        key=lambda e: (e.source, e.target),
    )

    runtime = DAGRuntime(
        nodes=nodes,
        edges=edges,
        children=_adjacency(node_ids, pairs),
        parents=_adjacency(node_ids, reverse_pairs),
        order=topological_sort(node_ids, pairs),
        max_concurrency=dag.settings.max_concurrency if dag.settings else None,
    )
    logger.debug("DAG compiled", nodes=len(nodes), edges=len(edges), order=runtime.order)
    return runtime


# =============================================================================
# GRAPH HELPERS
# =============================================================================

def root_nodes(dag: DAGRuntime) -> List[str]:
    """Nodes with no incoming edge, sorted."""
    return sorted(node_id for node_id, parents in dag.parents.items() if not parents)


def leaf_nodes(dag: DAGRuntime) -> List[str]:
    return sorted(node_id for node_id, children in dag.children.items() if not children)


def child_nodes(dag: DAGRuntime, node_id: str) -> List[str]:
    return list(dag.children.get(node_id, []))


def parent_nodes(dag: DAGRuntime, node_id: str) -> List[str]:
    return list(dag.parents.get(node_id, []))


def get_edge(dag: DAGRuntime, source: str, target: str) -> Optional[EdgeRuntime]:
    for edge in dag.edges:
        if edge.source == source and edge.target == target:
            return edge
    return None
