"""Case builders and fake collaborators shared by the scenario tests."""

from typing import Iterable, List, Optional, Sequence, Tuple

from schemas import (
    Case,
    FactCheckResult,
    GuardrailConfig,
    LearningObjective,
    NodeConfig,
    ScenarioEdge,
    ScenarioNode,
)


def node(node_id: str, node_type: str, content: str = "", label: Optional[str] = None, **config) -> ScenarioNode:
    return ScenarioNode(
        id=node_id,
        type=node_type,
        label=label or node_id.title(),
        content=content or f"{node_id} content",
        config=NodeConfig(**config),
    )


def build_case(
    nodes: Sequence[ScenarioNode],
    edges: Iterable[Tuple[str, str]],
    *,
    start: Optional[str] = None,
    objectives: Sequence[LearningObjective] = (),
    guardrails: Optional[GuardrailConfig] = None,
    case_id: str = "case-test",
) -> Case:
    return Case(
        id=case_id,
        name="Test case",
        description="A manager asks about quarterly results.",
        nodes=list(nodes),
        edges=[
            ScenarioEdge(id=f"e{i}", source_node_id=src, target_node_id=dst)
            for i, (src, dst) in enumerate(edges, start=1)
        ],
        start_node_id=start or nodes[0].id,
        learning_objectives=list(objectives),
        guardrails=guardrails or GuardrailConfig(),
    )


def question_case(**kwargs) -> Case:
    """opening -> question -> ending"""
    return build_case(
        [
            node("opening", "opening", "Welcome to the interview."),
            node("question", "question", "What drove revenue this quarter?"),
            node("ending", "ending", "Thanks, that's all."),
        ],
        [("opening", "question"), ("question", "ending")],
        **kwargs,
    )


class FakeLLM:
    def __init__(self, replies: Sequence[str] = ("Revenue grew because of new clients.",), error=None):
        self.replies = list(replies)
        self.error = error
        self.calls: List[Tuple[str, list]] = []

    def generate_reply(self, system_prompt, history):
        self.calls.append((system_prompt, list(history)))
        if self.error is not None:
            raise self.error
        return self.replies[min(len(self.calls), len(self.replies)) - 1]


class FakeFactChecker:
    def __init__(self, passed: bool = True, error=None):
        self.passed = passed
        self.error = error
        self.calls = []

    def check(self, question, answer, knowledge):
        self.calls.append((question, answer, knowledge))
        if self.error is not None:
            raise self.error
        return FactCheckResult(passed=self.passed, reason="checked")


class MemoryAttemptStore:
    """Stand-in for the ``db`` module's attempt functions."""

    def __init__(self):
        self.saved = []
        self.counters = {}

    def next_attempt_number(self, student_id, case_id):
        key = (student_id, case_id)
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def save_attempt(self, attempt):
        self.saved.append(attempt)
