"""Attempt bookkeeping and learning-objective scoring for one scenario run."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import db
from engines.validation import AttemptSealedError, SessionStateError
from schemas import (
    Attempt,
    Case,
    ChatMessage,
    FactCheckResult,
    LearningObjective,
    NodeType,
    ScenarioNode,
    utc_now,
)
from scenario_graph import ScenarioGraph

logger = logging.getLogger(__name__)

PASSING_SCORE = 70
MIN_SCORE = 0
MAX_SCORE = 100


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def _default_assessed_nodes(graph: ScenarioGraph) -> List[str]:
    return [node.id for node in graph.nodes_of_type(NodeType.CHECKPOINT, NodeType.ENDING)]


def _question_answered(node: ScenarioNode, answers: Sequence[str]) -> bool:
    patterns = [p.strip().lower() for p in node.config.expected_patterns if p and p.strip()]
    if not patterns:
        return True
    return any(pattern in answer.lower() for answer in answers for pattern in patterns)


def _node_achieved(
    node: Optional[ScenarioNode],
    visited: set,
    answers_by_node: Dict[str, List[str]],
) -> bool:
    if node is None or node.id not in visited:
        return False
    if node.type is NodeType.QUESTION:
        return _question_answered(node, answers_by_node.get(node.id, []))
    return True


def fact_check_factor(case: Case, fact_checks: Sequence[FactCheckResult]) -> float:
    if not case.guardrails.require_fact_check or not fact_checks:
        return 1.0
    return sum(1 for check in fact_checks if check.passed) / len(fact_checks)


def score_objectives(
    case: Case,
    node_path: Iterable[str],
    messages: Sequence[ChatMessage] = (),
    fact_checks: Sequence[FactCheckResult] = (),
) -> Dict[str, int]:
    """Score every learning objective of ``case`` on a 0-100 scale.

    An objective is assessed on its associated nodes (all checkpoint and ending
    nodes when it names none). The subscore is the share of those nodes the run
    achieved, scaled by the fact-check pass rate when the case requires fact
    checking.
    """

    graph = ScenarioGraph(case)
    visited = set(node_path)
    answers_by_node: Dict[str, List[str]] = {}
    for message in messages:
        if message.role == "user" and message.node_id:
            answers_by_node.setdefault(message.node_id, []).append(message.content)
    factor = fact_check_factor(case, fact_checks)
    default_nodes = _default_assessed_nodes(graph)

    breakdown: Dict[str, int] = {}
    for objective in case.learning_objectives:
        assessed = objective.node_ids or default_nodes
        if not assessed:
            breakdown[objective.id] = MIN_SCORE
            continue
        achieved = sum(
            1 for node_id in assessed if _node_achieved(graph.get_node(node_id), visited, answers_by_node)
        )
        breakdown[objective.id] = _clamp(_round_half_up(100.0 * achieved / len(assessed) * factor))
    return breakdown


def aggregate_score(objectives: Sequence[LearningObjective], breakdown: Dict[str, int]) -> int:
    """Weighted mean of the per-objective subscores, rounded and clamped to 0-100."""

    total_weight = sum(objective.weight for objective in objectives)
    if total_weight <= 0:
        return MIN_SCORE
    weighted = sum(breakdown.get(objective.id, 0) * objective.weight for objective in objectives)
    return _clamp(_round_half_up(weighted / total_weight))


def score_completion(case: Case, node_path: Iterable[str]) -> int:
    """Score used when a case defines no learning objectives: share of checkpoint/ending nodes reached."""

    graph = ScenarioGraph(case)
    assessed = _default_assessed_nodes(graph)
    if not assessed:
        return MIN_SCORE
    visited = set(node_path)
    return _clamp(_round_half_up(100.0 * sum(1 for n in assessed if n in visited) / len(assessed)))


class AttemptTracker:
    """Own the single working attempt of one live session and seal it on finalize."""

    def __init__(self, db_module=db, *, clock=utc_now) -> None:
        self._db = db_module
        self._clock = clock
        self._student_id: Optional[str] = None
        self._case_id: Optional[str] = None
        self._case_version = 0
        self._session_id: Optional[str] = None
        self._attempt_number = 0
        self._started_at: Optional[datetime] = None
        self._messages: List[ChatMessage] = []
        self._node_path: List[str] = []
        self._checkpoints: List[str] = []
        self._fact_checks: List[FactCheckResult] = []
        self._last_timestamp: Optional[datetime] = None
        self._sealed: Optional[Attempt] = None

    # ------------------------------------------------------------------
    @property
    def started(self) -> bool:
        return self._started_at is not None

    # ------------------------------------------------------------------
    @property
    def is_sealed(self) -> bool:
        return self._sealed is not None

    # ------------------------------------------------------------------
    def begin(
        self,
        student_id: str,
        case_id: str,
        *,
        case_version: int = 0,
        session_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> Attempt:
        if self.started:
            raise SessionStateError("Attempt already begun for this tracker")
        self._student_id = student_id
        self._case_id = case_id
        self._case_version = case_version
        self._session_id = session_id
        self._attempt_number = self._db.next_attempt_number(student_id, case_id)
        self._started_at = started_at or self._clock()
        logger.info(
            "Attempt %d begun for student=%s case=%s", self._attempt_number, student_id, case_id
        )
        attempt = self.snapshot()
        self._db.save_attempt(attempt)
        return attempt

    # ------------------------------------------------------------------
    def _ensure_writable(self) -> None:
        if self._sealed is not None:
            raise AttemptSealedError(
                f"Attempt {self._sealed.attempt_number} for {self._sealed.student_id}/"
                f"{self._sealed.case_id} is sealed"
            )
        if not self.started:
            raise SessionStateError("Attempt has not been begun")

    # ------------------------------------------------------------------
    def record(self, message: ChatMessage) -> None:
        self._ensure_writable()
        self._messages.append(message)
        if self._last_timestamp is None or message.timestamp > self._last_timestamp:
            self._last_timestamp = message.timestamp

    # ------------------------------------------------------------------
    def visit(self, node_id: str, *, checkpoint: bool = False) -> None:
        self._ensure_writable()
        self._node_path.append(node_id)
        if checkpoint and node_id not in self._checkpoints:
            self._checkpoints.append(node_id)

    # ------------------------------------------------------------------
    def record_fact_check(self, result: FactCheckResult) -> None:
        self._ensure_writable()
        self._fact_checks.append(result)

    # ------------------------------------------------------------------
    def _elapsed_seconds(self) -> float:
        if self._started_at is None or self._last_timestamp is None:
            return 0.0
        return max(0.0, (self._last_timestamp - self._started_at).total_seconds())

    # ------------------------------------------------------------------
    def snapshot(self) -> Attempt:
        if self._sealed is not None:
            return self._sealed
        if not self.started:
            raise SessionStateError("Attempt has not been begun")
        return Attempt(
            student_id=self._student_id,
            case_id=self._case_id,
            attempt_number=self._attempt_number,
            case_version=self._case_version,
            session_id=self._session_id,
            started_at=self._started_at,
            total_messages=len(self._messages),
            total_time_seconds=self._elapsed_seconds(),
            node_path=list(self._node_path),
            checkpoints_reached=list(self._checkpoints),
            messages=list(self._messages),
            fact_checks=list(self._fact_checks),
        )

    # ------------------------------------------------------------------
    def finalize(self, case: Case) -> Attempt:
        """Score and seal the attempt; later calls return the same sealed record."""

        if self._sealed is not None:
            return self._sealed
        if not self.started:
            raise SessionStateError("Attempt has not been begun")

        if case.learning_objectives:
            breakdown = score_objectives(case, self._node_path, self._messages, self._fact_checks)
            score = aggregate_score(case.learning_objectives, breakdown)
        else:
            breakdown = {}
            score = score_completion(case, self._node_path)

        sealed = self.snapshot().model_copy(
            update={
                "completed_at": self._clock(),
                "score": score,
                "score_breakdown": breakdown,
                "is_passing": score >= PASSING_SCORE,
                "status": "completed",
                "sealed": True,
            }
        )
        self._sealed = sealed
        self._db.save_attempt(sealed)
        logger.info(
            "Attempt %d sealed for student=%s case=%s score=%d",
            sealed.attempt_number,
            sealed.student_id,
            sealed.case_id,
            score,
        )
        return sealed

    # ------------------------------------------------------------------
    def abandon(self) -> Attempt:
        """Seal an unfinished attempt without a score so progress is kept."""

        if self._sealed is not None:
            return self._sealed
        if not self.started:
            raise SessionStateError("Attempt has not been begun")
        sealed = self.snapshot().model_copy(
            update={
                "completed_at": self._clock(),
                "score": None,
                "is_passing": None,
                "status": "abandoned",
                "sealed": True,
            }
        )
        self._sealed = sealed
        self._db.save_attempt(sealed)
        logger.info(
            "Attempt %d abandoned for student=%s case=%s", sealed.attempt_number, sealed.student_id, sealed.case_id
        )
        return sealed
