"""Read-only arena over a case's conversation graph."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import yaml

from schemas import Case, NodeType, ScenarioEdge, ScenarioNode


class ScenarioGraph:
    """Nodes and edges of one case version, indexed by id.

    Nodes reference each other only through ids; the runtime keeps the current
    node id and a shared reference to this arena. Outgoing edges keep the order
    in which they appear in the case's edge list, which is what makes first-edge
    selection deterministic.
    """

    def __init__(self, case: Case) -> None:
        self._case = case
        self._nodes: Dict[str, ScenarioNode] = {}
        self._outgoing: Dict[str, List[ScenarioEdge]] = {}
        self._incoming: Dict[str, List[ScenarioEdge]] = {}
        for node in case.nodes:
            self._nodes.setdefault(node.id, node)
        for edge in case.edges:
            self._outgoing.setdefault(edge.source_node_id, []).append(edge)
            self._incoming.setdefault(edge.target_node_id, []).append(edge)

    # ------------------------------------------------------------------
    @property
    def case(self) -> Case:
        return self._case

    # ------------------------------------------------------------------
    @property
    def start_node_id(self) -> str:
        return self._case.start_node_id

    # ------------------------------------------------------------------
    def get_node(self, node_id: Optional[str]) -> Optional[ScenarioNode]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    # ------------------------------------------------------------------
    def has_node(self, node_id: Optional[str]) -> bool:
        return node_id is not None and node_id in self._nodes

    # ------------------------------------------------------------------
    def nodes(self) -> List[ScenarioNode]:
        return list(self._nodes.values())

    # ------------------------------------------------------------------
    def outgoing(self, node_id: str) -> List[ScenarioEdge]:
        return list(self._outgoing.get(node_id, []))

    # ------------------------------------------------------------------
    def incoming(self, node_id: str) -> List[ScenarioEdge]:
        return list(self._incoming.get(node_id, []))

    # ------------------------------------------------------------------
    def next_node(self, node_id: str) -> Optional[str]:
        """Target of the first edge leaving ``node_id``, or ``None`` when there is none."""

        edges = self._outgoing.get(node_id)
        if not edges:
            return None
        return edges[0].target_node_id

    # ------------------------------------------------------------------
    def nodes_of_type(self, *types: NodeType) -> List[ScenarioNode]:
        wanted = set(types)
        return [node for node in self._nodes.values() if node.type in wanted]

    # ------------------------------------------------------------------
    def reachable_from(self, node_id: str) -> Set[str]:
        if node_id not in self._nodes:
            return set()
        visited: Set[str] = {node_id}
        stack: List[str] = [node_id]
        while stack:
            current = stack.pop()
            for edge in self._outgoing.get(current, []):
                target = edge.target_node_id
                if target in self._nodes and target not in visited:
                    visited.add(target)
                    stack.append(target)
        return visited

    # ------------------------------------------------------------------
    def unreachable_nodes(self) -> List[str]:
        reachable = self.reachable_from(self.start_node_id)
        return [node_id for node_id in self._nodes if node_id not in reachable]

    # ------------------------------------------------------------------
    def is_path(self, node_ids: Iterable[str]) -> bool:
        """True when consecutive ids are joined by an edge of this graph."""

        previous: Optional[str] = None
        for node_id in node_ids:
            if node_id not in self._nodes:
                return False
            if previous is not None and not any(
                edge.target_node_id == node_id for edge in self._outgoing.get(previous, [])
            ):
                return False
            previous = node_id
        return True


def next_node(case: Case, node_id: str) -> Optional[str]:
    """Return the target of the first edge whose source is ``node_id``."""

    for edge in case.edges:
        if edge.source_node_id == node_id:
            return edge.target_node_id
    return None


def _load_case_payload(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".json":
        return json.loads(text)
    if suffix in {".yml", ".yaml"}:
        return yaml.safe_load(text) or {}
    raise ValueError(f"Unsupported case file format: {path}")


def case_from_mapping(payload: Mapping[str, Any]) -> Case:
    """Build a :class:`Case` from an authored mapping.

    Authoring tools export camelCase keys (``startNodeId``, ``sourceNodeId``);
    both spellings are accepted.
    """

    return Case.model_validate(_snake_keys(payload))


def load_case_file(path: str | Path) -> Case:
    return case_from_mapping(_load_case_payload(Path(path)))


def _snake(key: str) -> str:
    out: List[str] = []
    for char in key:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


# Keys whose values are free-form and must not be rewritten.
_OPAQUE_KEYS = {"metadata"}


def _snake_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        converted: Dict[str, Any] = {}
        for key, item in value.items():
            new_key = _snake(str(key))
            converted[new_key] = item if new_key in _OPAQUE_KEYS else _snake_keys(item)
        return converted
    if isinstance(value, list):
        return [_snake_keys(item) for item in value]
    return value
