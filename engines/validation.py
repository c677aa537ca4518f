"""Error taxonomy and structural validation for case graphs."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List

from schemas import LINEAR_NODE_TYPES, Case, NodeType
from scenario_graph import ScenarioGraph


class ScenarioError(Exception):
    """Base class for scenario engine errors."""
    pass


class CaseValidationError(ScenarioError):
    """Raised when a case graph cannot be published."""

    def __init__(self, errors: List[str], warnings: List[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Case is not ready for publishing: " + "; ".join(self.errors))


class StructuralWarning(UserWarning):
    """Category for dangling transitions met at runtime; logged, never raised."""
    pass


class AttemptSealedError(ScenarioError):
    """Raised when a sealed attempt is mutated."""
    pass


class CollaboratorFailure(ScenarioError):
    """Raised when an external collaborator (LLM, fact checker, resolver) fails."""

    def __init__(self, collaborator: str, message: str) -> None:
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")


class SessionStateError(ScenarioError):
    """Raised when a runtime operation is not allowed in the session's current state."""
    pass


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"valid": self.is_valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate_case(case: Case) -> ValidationResult:
    """Check the structural validity of ``case``'s graph.

    Hard errors: missing start node, edges pointing at unknown nodes, duplicate
    node ids, and a second outgoing edge on a node type that only takes one.
    Unreachable nodes and linear nodes without an exit are warnings.
    """

    result = ValidationResult()
    graph = ScenarioGraph(case)

    duplicates = [node_id for node_id, count in Counter(n.id for n in case.nodes).items() if count > 1]
    for node_id in duplicates:
        result.errors.append(f"Node id '{node_id}' is used by more than one node")

    if not case.start_node_id:
        result.errors.append("Case must have a start node")
    elif not graph.has_node(case.start_node_id):
        result.errors.append(f"Start node '{case.start_node_id}' does not exist")

    for edge in case.edges:
        if not graph.has_node(edge.source_node_id):
            result.errors.append(
                f"Edge '{edge.id}' starts at unknown node '{edge.source_node_id}'"
            )
        if not graph.has_node(edge.target_node_id):
            result.errors.append(
                f"Edge '{edge.id}' points to unknown node '{edge.target_node_id}'"
            )

    for node in graph.nodes():
        outgoing = graph.outgoing(node.id)
        label = node.label or node.id
        if node.type in LINEAR_NODE_TYPES:
            if len(outgoing) > 1:
                result.errors.append(
                    f"{node.type.value.capitalize()} node '{label}' has {len(outgoing)} outgoing "
                    "connections; only branch nodes may have more than one"
                )
            elif not outgoing:
                result.warnings.append(
                    f"{node.type.value.capitalize()} node '{label}' has no outgoing connection "
                    "and will end the conversation"
                )
        elif node.type is NodeType.BRANCH and not outgoing:
            result.warnings.append(f"Branch node '{label}' has no outgoing connection")
        elif node.type is NodeType.ENDING and outgoing:
            result.warnings.append(f"Ending node '{label}' has outgoing connections that are never followed")

    if graph.has_node(case.start_node_id):
        for node_id in graph.unreachable_nodes():
            node = graph.get_node(node_id)
            label = node.label if node and node.label else node_id
            result.warnings.append(f"Node '{label}' is not reachable from the start node")

    return result


def check_publish_readiness(case: Case) -> List[str]:
    """Content checks applied on top of :func:`validate_case` when publishing."""

    problems: List[str] = []
    if not case.name.strip():
        problems.append("Case must have a name")
    if len(case.nodes) < 2:
        problems.append("Case must have at least 2 nodes (opening and ending)")
    if not any(node.type is NodeType.ENDING for node in case.nodes):
        problems.append("Case must have an ending node")
    known = {node.id for node in case.nodes}
    for objective in case.learning_objectives:
        for node_id in objective.node_ids:
            if node_id not in known:
                problems.append(
                    f"Learning objective '{objective.title}' references unknown node '{node_id}'"
                )
    return problems


def ensure_publishable(case: Case) -> ValidationResult:
    """Return the validation result or raise :class:`CaseValidationError` listing every problem."""

    result = validate_case(case)
    errors = check_publish_readiness(case) + result.errors
    if errors:
        raise CaseValidationError(errors, result.warnings)
    return result
