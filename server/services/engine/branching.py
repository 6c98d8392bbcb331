"""IF-node branch selection and skip propagation."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from constants import TRUE_BRANCH_LABELS, FALSE_BRANCH_LABELS
from core.logging import get_logger
from services.engine.exceptions import ValidationError
from services.engine.models import COMPLETE_STEP_STATUSES, DAGRuntime, StepStatus

logger = get_logger(__name__)


@dataclass
class BranchDecision:
    """Outcome of an IF node: the branch root taken and the nodes to skip."""
    condition: bool
    selected: str
    not_selected: str
    skipped: List[str] = field(default_factory=list)

    def to_output(self) -> Dict[str, Any]:
        return {
            "result": self.condition,
            "branch": "true" if self.condition else "false",
            "selected": self.selected,
            "skipped": list(self.skipped),
        }


def _reachable(dag: DAGRuntime, start: str) -> Set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        node_id = queue.popleft()
        for child in dag.children.get(node_id, []):
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen


def compute_skipped_nodes(dag: DAGRuntime, skipped_root: str, selected_root: str) -> Set[str]:
    """Nodes on the untaken branch that the taken branch cannot reach.

    Traversal from the skipped root stops at any node reachable from the
    selected root, so reconvergent nodes are gated by the fan-in join
    instead of being skipped.
    """
    keep = _reachable(dag, selected_root)
    skipped: Set[str] = set()
    queue = deque([skipped_root])

    while queue:
        node_id = queue.popleft()
        if node_id in keep or node_id in skipped:
            continue
        skipped.add(node_id)
        queue.extend(dag.children.get(node_id, []))

    return skipped


def determine_branch(dag: DAGRuntime, if_node_id: str, condition_result: bool) -> BranchDecision:
    """Match the true/false edges of an IF node and compute the skip set."""
    true_target: Optional[str] = None
    false_target: Optional[str] = None

    for edge in dag.edges:
        if edge.source != if_node_id:
            continue
        if edge.label in TRUE_BRANCH_LABELS:
            true_target = edge.target
        elif edge.label in FALSE_BRANCH_LABELS:
            false_target = edge.target

    if true_target is None or false_target is None:
        raise ValidationError(f'IF node {if_node_id} must have both "true" and "false" condition edges')

    selected, not_selected = (true_target, false_target) if condition_result else (false_target, true_target)
    skipped = sorted(compute_skipped_nodes(dag, not_selected, selected))
    logger.debug("Branch decided", node_id=if_node_id, condition=condition_result,
                 selected=selected, skipped=skipped)
    return BranchDecision(condition_result, selected, not_selected, skipped)


def parents_complete(dag: DAGRuntime, node_id: str, statuses: Mapping[str, Any]) -> bool:
    """Fan-in join: every parent is SUCCESS or SKIPPED."""
    for parent in dag.parents.get(node_id, []):
        status = statuses.get(parent)
        if status is None or StepStatus(status) not in COMPLETE_STEP_STATUSES:
            return False
    return True
