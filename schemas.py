"""Pydantic schemas for cases, runtime sessions, attempts and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "NodeType",
    "SessionStatus",
    "NodeConfig",
    "ScenarioNode",
    "ScenarioEdge",
    "LearningObjective",
    "MentalHealthResources",
    "GuardrailConfig",
    "PersonalityTraits",
    "KnowledgeBoundaries",
    "AvatarConfig",
    "Case",
    "FactCheckResult",
    "ChatMessage",
    "ScenarioSession",
    "Attempt",
    "LearningCurvePoint",
    "LearningCurve",
    "utc_now",
    "parse_json_safe",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class NodeType(str, Enum):
    """Closed set of node kinds; the runtime dispatches on every member."""

    OPENING = "opening"
    DIALOGUE = "dialogue"
    QUESTION = "question"
    LISTEN = "listen"
    BRANCH = "branch"
    CHECKPOINT = "checkpoint"
    ENDING = "ending"
    FEEDBACK = "feedback"


# Node types that never take more than one outgoing edge.
LINEAR_NODE_TYPES = frozenset(
    {
        NodeType.OPENING,
        NodeType.DIALOGUE,
        NodeType.QUESTION,
        NodeType.LISTEN,
        NodeType.CHECKPOINT,
        NodeType.FEEDBACK,
    }
)


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"


class NodeConfig(BaseModel):
    timeout: int = Field(
        default=30,
        ge=1,
        description="Seconds a listen node waits for the learner before the host may nudge.",
    )
    expected_patterns: list[str] = Field(
        default_factory=list,
        description="Phrases a good answer to a question node is expected to mention.",
    )
    feedback_type: Literal["positive", "neutral", "negative"] = "neutral"

    model_config = {
        "extra": "allow",
    }


class ScenarioNode(BaseModel):
    id: str
    type: NodeType
    label: str = ""
    content: str = ""
    config: NodeConfig = Field(default_factory=NodeConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ScenarioEdge(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("edge"))
    source_node_id: str
    target_node_id: str
    label: str | None = Field(
        default=None,
        description="Author-facing description of when this transition applies (branch nodes).",
    )


class LearningObjective(BaseModel):
    id: str
    title: str
    description: str = ""
    type: Literal["knowledge", "skill", "attitude"] = "knowledge"
    weight: int = Field(default=5, ge=1, le=10)
    node_ids: list[str] = Field(
        default_factory=list,
        description=(
            "Checkpoint, ending or question nodes the objective is assessed on. "
            "Empty means every checkpoint and ending node of the case."
        ),
    )


class MentalHealthResources(BaseModel):
    counseling_phone: str = "216-368-5872"
    crisis_line: str = "988"
    additional_info: str = "Student support services available through Student Affairs"


class GuardrailConfig(BaseModel):
    blocked_topics: list[str] = Field(default_factory=list)
    off_topic_response: str = "I'm sorry, but I can only discuss topics related to this case."
    max_response_length: int = Field(default=500, ge=1)
    require_fact_check: bool = False
    mental_health_topics: list[str] = Field(default_factory=list)
    blocked_responses: list[str] = Field(default_factory=list)
    mental_health_resources: MentalHealthResources = Field(default_factory=MentalHealthResources)
    mental_health_response: str = (
        "It sounds like you might be going through something difficult, and you don't have to "
        "handle it alone. You can reach University Counseling Services at {counseling_phone}. "
        "If you are in crisis, contact campus safety or call {crisis_line} (Suicide & Crisis Lifeline). "
        "{additional_info}"
    )
    updated_at: datetime | None = None
    updated_by: str | None = None


class PersonalityTraits(BaseModel):
    formality: int = Field(default=5, ge=1, le=10)
    patience: int = Field(default=5, ge=1, le=10)
    empathy: int = Field(default=5, ge=1, le=10)
    directness: int = Field(default=5, ge=1, le=10)


class KnowledgeBoundaries(BaseModel):
    can_discuss: list[str] = Field(default_factory=list)
    cannot_discuss: list[str] = Field(default_factory=list)


class AvatarConfig(BaseModel):
    base_avatar_id: str | None = None
    case_context: str = ""
    personality_traits: PersonalityTraits = Field(default_factory=PersonalityTraits)
    knowledge_boundaries: KnowledgeBoundaries = Field(default_factory=KnowledgeBoundaries)


class Case(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("case"))
    name: str = ""
    description: str = ""
    course_id: str | None = None
    difficulty: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    estimated_duration: int = Field(default=15, ge=0, description="Expected duration in minutes.")
    status: Literal["draft", "published", "archived"] = "draft"
    version: int = Field(default=0, ge=0, description="Incremented on every publish.")
    learning_objectives: list[LearningObjective] = Field(default_factory=list)
    nodes: list[ScenarioNode] = Field(default_factory=list)
    edges: list[ScenarioEdge] = Field(default_factory=list)
    start_node_id: str = ""
    avatar_config: AvatarConfig = Field(default_factory=AvatarConfig)
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(cls, name: str, description: str = "", **fields: Any) -> "Case":
        """Create a draft case holding an opening and an ending node joined by one edge."""

        opening = ScenarioNode(
            id=_new_id("node"),
            type=NodeType.OPENING,
            label="Opening",
            content="Hello! How can I help you today?",
        )
        ending = ScenarioNode(
            id=_new_id("node"),
            type=NodeType.ENDING,
            label="Ending",
            content="Thank you for the conversation!",
        )
        return cls(
            name=name,
            description=description,
            nodes=[opening, ending],
            edges=[ScenarioEdge(source_node_id=opening.id, target_node_id=ending.id)],
            start_node_id=opening.id,
            **fields,
        )


class FactCheckResult(BaseModel):
    passed: bool
    reason: str | None = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    node_id: str | None = None
    guardrail: str | None = Field(
        default=None,
        description="Guardrail action applied to this message when it was not 'allow'.",
    )
    fact_check: FactCheckResult | None = None


class ScenarioSession(BaseModel):
    session_id: str = Field(default_factory=lambda: _new_id("session"))
    case_id: str
    case_version: int = 0
    student_id: str | None = None
    current_node_id: str | None = None
    visited_node_ids: list[str] = Field(default_factory=list)
    messages: list[ChatMessage] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.NOT_STARTED
    checkpoints_reached: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    abandoned: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None


class Attempt(BaseModel):
    student_id: str
    case_id: str
    attempt_number: int = Field(ge=1)
    case_version: int = 0
    session_id: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    total_messages: int = 0
    total_time_seconds: float = 0.0
    node_path: list[str] = Field(default_factory=list)
    checkpoints_reached: list[str] = Field(default_factory=list)
    messages: list[ChatMessage] = Field(default_factory=list)
    fact_checks: list[FactCheckResult] = Field(default_factory=list)
    score: int | None = None
    score_breakdown: Dict[str, int] = Field(default_factory=dict)
    is_passing: bool | None = None
    status: Literal["in_progress", "completed", "abandoned"] = "in_progress"
    sealed: bool = False

    model_config = {
        "frozen": True,
    }


class LearningCurvePoint(BaseModel):
    attempt_number: int
    score: int
    time_spent_minutes: float
    date: str


class LearningCurve(BaseModel):
    attempts: List[LearningCurvePoint] = Field(default_factory=list)
    trend: Literal["improving", "stable", "declining"] = "stable"
    improvement_rate: float = 0.0
    predicted_next_score: Optional[int] = None


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse an LLM reply into ``model``, falling back to the first embedded JSON object.

    Models often wrap the JSON verdict in prose ("Sure! {...}"); the fallback pass
    extracts the first balanced object. Unlike a strict parse, trailing prose after
    the object is tolerated because verdict prompts commonly end with an explanation.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, _ = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError) as exc:
        raise exc from first_error
