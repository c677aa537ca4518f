import asyncio
import threading

import pytest

from engines.attempt_tracker import AttemptTracker
from engines.scenario_runtime import (
    APOLOGY_MESSAGE,
    UNVERIFIED_REPLY_MESSAGE,
    FirstEdgeResolver,
    ScenarioRuntime,
)
from engines.validation import CollaboratorFailure, SessionStateError, StructuralWarning
from helpers import (
    FakeFactChecker,
    FakeLLM,
    MemoryAttemptStore,
    build_case,
    node,
    question_case,
)
from scenario_graph import ScenarioGraph
from schemas import GuardrailConfig, LearningObjective, NodeType, SessionStatus


def _runtime(case, **kwargs):
    kwargs.setdefault("auto_advance", True)
    kwargs.setdefault("dialogue_delay", 0)
    kwargs.setdefault("checkpoint_delay", 0)
    return ScenarioRuntime(case, **kwargs)


def _run(coro):
    return asyncio.run(coro)


def _assistant(messages):
    return [m for m in messages if m.role == "assistant"]


def _branch_case(first: str, second: str):
    return build_case(
        [
            node("opening", "opening", "Let's begin."),
            node("branch", "branch"),
            node("a", "ending", "Ending A"),
            node("b", "ending", "Ending B"),
        ],
        [("opening", "branch"), ("branch", first), ("branch", second)],
    )


def test_question_scenario_without_avatar_produces_three_turns():
    runtime = _runtime(question_case())
    opening = _run(runtime.start())

    assert [m.node_id for m in opening] == ["opening", "question"]
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT

    _run(runtime.submit_user_message("Revenue grew"))
    session = runtime.snapshot()

    assert session.status is SessionStatus.COMPLETED
    assert [m.node_id for m in _assistant(session.messages)] == ["opening", "question", "ending"]
    user = [m for m in session.messages if m.role == "user"]
    assert len(user) == 1
    assert user[0].node_id == "question"
    assert user[0].content == "Revenue grew"


def test_avatar_reply_is_tagged_with_current_node():
    llm = FakeLLM(["It was mainly new clients."])
    runtime = _runtime(question_case(), llm=llm)
    _run(runtime.start())

    emitted = _run(runtime.submit_user_message("Why did revenue grow?"))

    assert [(m.role, m.node_id) for m in emitted] == [
        ("user", "question"),
        ("assistant", "question"),
        ("assistant", "ending"),
    ]
    assert emitted[1].content == "It was mainly new clients."
    system_prompt, history = llm.calls[0]
    assert "Important Guidelines" in system_prompt
    assert system_prompt.startswith("Current Date and Time (America/New_York):")
    assert "What drove revenue this quarter?" in system_prompt
    assert history[-1].content == "Why did revenue grow?"


def test_branch_uses_first_edge_in_list_order():
    for first, second in (("a", "b"), ("b", "a")):
        for _ in range(2):
            runtime = _runtime(_branch_case(first, second))
            _run(runtime.start())
            session = runtime.snapshot()
            assert session.current_node_id == first
            assert session.messages[-1].content == f"Ending {first.upper()}"
            assert "branch" not in [m.node_id for m in session.messages]


def test_custom_branch_resolver_runs_off_loop():
    class LastEdge:
        def resolve_branch(self, node_id, context):
            return context.options[-1].target_node_id

    runtime = _runtime(_branch_case("a", "b"), branch_resolver=LastEdge())
    _run(runtime.start())
    assert runtime.snapshot().current_node_id == "b"


def test_resolver_target_outside_edges_falls_back_to_first_edge():
    class Stray:
        def resolve_branch(self, node_id, context):
            return "opening"

    runtime = _runtime(_branch_case("b", "a"), branch_resolver=Stray())
    _run(runtime.start())
    assert runtime.snapshot().current_node_id == "b"


def test_first_edge_resolver_without_options():
    from engines.scenario_runtime import BranchContext

    context = BranchContext(case=question_case(), history=[], visited_node_ids=[], options=[])
    assert FirstEdgeResolver().resolve_branch("branch", context) is None


def test_blocked_message_stays_on_question():
    config = GuardrailConfig(blocked_topics=["politics"], blocked_responses=["Let's stay on the case."])
    llm = FakeLLM()
    runtime = _runtime(question_case(guardrails=config), llm=llm)
    _run(runtime.start())

    emitted = _run(runtime.submit_user_message("What do you think about politics?"))

    assert [m.role for m in emitted] == ["user", "assistant"]
    assert emitted[1].content == "Let's stay on the case."
    assert emitted[1].guardrail == "block_redirect"
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT
    assert runtime.current_node.id == "question"
    assert llm.calls == []


def test_mental_health_message_takes_precedence():
    config = GuardrailConfig(blocked_topics=["stress"], mental_health_topics=["stress"])
    runtime = _runtime(question_case(guardrails=config), llm=FakeLLM())
    _run(runtime.start())

    emitted = _run(runtime.submit_user_message("I feel so much stress lately"))

    assert emitted[1].guardrail == "mental_health_resource"
    assert "988" in emitted[1].content
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT


def test_llm_failure_emits_apology_and_keeps_waiting():
    llm = FakeLLM(error=CollaboratorFailure("llm", "endpoint down"))
    runtime = _runtime(question_case(), llm=llm)
    _run(runtime.start())

    emitted = _run(runtime.submit_user_message("Hello?"))

    assert emitted[-1].content == APOLOGY_MESSAGE
    assert emitted[-1].node_id == "question"
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT


def test_prompt_build_failure_emits_apology():
    llm = FakeLLM()
    runtime = _runtime(question_case(), llm=llm, prompt_variant="no-such-variant")
    _run(runtime.start())

    emitted = _run(runtime.submit_user_message("Revenue grew"))

    assert [m.role for m in emitted] == ["user", "assistant"]
    assert emitted[1].content == APOLOGY_MESSAGE
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT
    assert llm.calls == []


def _two_question_case():
    return build_case(
        [
            node("opening", "opening", "Hi"),
            node("q1", "question", "First question?"),
            node("q2", "question", "Second question?"),
            node("ending", "ending", "Bye"),
        ],
        [("opening", "q1"), ("q1", "q2"), ("q2", "ending")],
    )


class _GatedLLM:
    """Blocks inside ``generate_reply`` until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate_reply(self, system_prompt, history):
        self.entered.set()
        self.release.wait(5)
        return "Avatar reply."


def test_abandon_during_avatar_reply_stays_completed():
    llm = _GatedLLM()
    store = MemoryAttemptStore()
    runtime = _runtime(_two_question_case(), llm=llm, student_id="s1", tracker=AttemptTracker(store))

    async def scenario():
        await runtime.start()
        turn = asyncio.create_task(runtime.submit_user_message("An answer"))
        while not llm.entered.is_set():
            await asyncio.sleep(0.01)
        runtime.abandon()
        llm.release.set()
        return await turn

    emitted = _run(scenario())
    session = runtime.snapshot()

    assert [m.role for m in emitted] == ["user"]
    assert session.status is SessionStatus.COMPLETED
    assert session.abandoned
    assert session.current_node_id == "q1"
    assert "Avatar reply." not in [m.content for m in session.messages]
    assert runtime.attempt.status == "abandoned"
    assert runtime.attempt.score is None
    assert store.saved[-1] == runtime.attempt


def test_abandon_during_presentation_delay_stops_traversal():
    async def abandon_while_paused(seconds):
        runtime.abandon()

    runtime = _runtime(_two_question_case(), dialogue_delay=1.0, delay=abandon_while_paused)
    messages = _run(runtime.start())

    assert [m.node_id for m in messages] == ["opening"]
    assert runtime.status is SessionStatus.COMPLETED
    assert runtime.snapshot().visited_node_ids == ["opening"]


def test_abandon_during_branch_resolution_stops_traversal():
    class AbandoningResolver:
        def resolve_branch(self, node_id, context):
            runtime.abandon()
            return context.options[0].target_node_id

    runtime = _runtime(_branch_case("a", "b"), branch_resolver=AbandoningResolver())
    _run(runtime.start())

    session = runtime.snapshot()
    assert session.status is SessionStatus.COMPLETED
    assert session.abandoned
    assert session.visited_node_ids == ["opening", "branch"]
    assert "Ending A" not in [m.content for m in session.messages]


def test_outbound_content_is_truncated():
    config = GuardrailConfig(max_response_length=20)
    case = build_case(
        [
            node("opening", "opening", "This opening line is definitely longer than twenty characters."),
            node("ending", "ending", "Bye"),
        ],
        [("opening", "ending")],
        guardrails=config,
    )
    runtime = _runtime(case)
    messages = _run(runtime.start())

    assert len(messages[0].content) <= 20
    assert messages[0].guardrail == "truncate"
    assert messages[1].content == "Bye"
    assert messages[1].guardrail is None


def test_dangling_dialogue_ends_implicitly():
    case = build_case(
        [node("opening", "opening", "Hi"), node("talk", "dialogue", "Some context")],
        [("opening", "talk")],
    )
    runtime = _runtime(case)
    messages = _run(runtime.start())

    assert [m.node_id for m in messages] == ["opening", "talk"]
    assert runtime.status is SessionStatus.COMPLETED
    assert len(runtime.snapshot().warnings) == 1
    assert isinstance(runtime.structural_warnings[0], StructuralWarning)


def test_edge_to_unknown_node_ends_implicitly():
    case = build_case([node("opening", "opening", "Hi")], [("opening", "ghost")])
    runtime = _runtime(case)
    _run(runtime.start())

    assert runtime.status is SessionStatus.COMPLETED
    assert "ghost" in runtime.snapshot().warnings[0]


def test_cycle_without_input_is_cut_off():
    case = build_case(
        [node("d1", "dialogue", "one"), node("d2", "dialogue", "two")],
        [("d1", "d2"), ("d2", "d1")],
    )
    runtime = _runtime(case, max_steps_per_tick=10)
    messages = _run(runtime.start())

    assert len(messages) == 10
    assert runtime.status is SessionStatus.COMPLETED


def test_checkpoint_message_format():
    case = build_case(
        [
            node("opening", "opening", "Hi"),
            node("cp", "checkpoint", "Halfway there", label="Midpoint"),
            node("ending", "ending", "Done"),
        ],
        [("opening", "cp"), ("cp", "ending")],
    )
    runtime = _runtime(case)
    messages = _run(runtime.start())

    assert messages[1].content == "[Checkpoint: Midpoint] Halfway there"
    assert runtime.snapshot().checkpoints_reached == ["cp"]


def test_listen_node_waits_silently():
    case = build_case(
        [node("opening", "opening", "Hi"), node("listen", "listen"), node("ending", "ending", "Bye")],
        [("opening", "listen"), ("listen", "ending")],
    )
    runtime = _runtime(case)
    messages = _run(runtime.start())

    assert [m.node_id for m in messages] == ["opening"]
    assert runtime.current_node.id == "listen"
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT


def test_manual_advance_between_dialogue_nodes():
    runtime = _runtime(question_case(), auto_advance=False)
    messages = _run(runtime.start())

    assert [m.node_id for m in messages] == ["opening"]
    assert runtime.awaiting_advance
    with pytest.raises(SessionStateError):
        _run(runtime.submit_user_message("too early"))

    messages = _run(runtime.advance())
    assert [m.node_id for m in messages] == ["question"]
    assert runtime.status is SessionStatus.WAITING_FOR_INPUT
    with pytest.raises(SessionStateError):
        _run(runtime.advance())


def test_presentation_delays_use_hook():
    waits = []

    async def record_delay(seconds):
        waits.append(seconds)

    case = build_case(
        [
            node("opening", "opening", "Hi"),
            node("cp", "checkpoint", "Mid", label="Mid"),
            node("ending", "ending", "Bye"),
        ],
        [("opening", "cp"), ("cp", "ending")],
    )
    runtime = _runtime(case, dialogue_delay=1.5, checkpoint_delay=1.0, delay=record_delay)
    _run(runtime.start())
    assert waits == [1.5, 1.0]


def test_start_twice_is_rejected():
    runtime = _runtime(question_case())
    _run(runtime.start())
    with pytest.raises(SessionStateError):
        _run(runtime.start())


def test_visited_nodes_follow_edges():
    runtime = _runtime(_branch_case("b", "a"))
    _run(runtime.start())
    session = runtime.snapshot()
    graph = ScenarioGraph(runtime.case)

    assert session.visited_node_ids == ["opening", "branch", "b"]
    assert graph.is_path(session.visited_node_ids)
    tags = [m.node_id for m in session.messages]
    assert all(tag in session.visited_node_ids for tag in tags)


def _collapse(tags):
    collapsed = []
    for tag in tags:
        if not collapsed or collapsed[-1] != tag:
            collapsed.append(tag)
    return collapsed


def test_transcript_tags_follow_graph_path():
    config = GuardrailConfig(blocked_topics=["politics"], blocked_responses=["Back to the case, please."])
    case = build_case(
        [
            node("opening", "opening", "Welcome."),
            node("q1", "question", "What happened last quarter?"),
            node("talk", "dialogue", "Let me add some context."),
            node("cp", "checkpoint", "Context covered", label="Context"),
            node("branch", "branch"),
            node("good", "ending", "Well done."),
            node("other", "ending", "Let's try again later."),
        ],
        [
            ("opening", "q1"),
            ("q1", "talk"),
            ("talk", "cp"),
            ("cp", "branch"),
            ("branch", "good"),
            ("branch", "other"),
        ],
        guardrails=config,
    )
    runtime = _runtime(case, llm=FakeLLM(["Sales went up."]))
    _run(runtime.start())
    _run(runtime.submit_user_message("What about politics?"))
    _run(runtime.submit_user_message("Tell me about sales"))

    session = runtime.snapshot()
    graph = ScenarioGraph(case)
    tags = _collapse([m.node_id for m in session.messages])
    silent = {n.id for n in case.nodes if n.type in (NodeType.BRANCH, NodeType.LISTEN)}

    assert session.status is SessionStatus.COMPLETED
    assert tags == ["opening", "q1", "talk", "cp", "good"]
    assert graph.is_path(session.visited_node_ids)
    assert tags == [node_id for node_id in session.visited_node_ids if node_id not in silent]
    assert graph.is_path(tags[:4])


def test_termination_after_ending_keeps_scored_attempt():
    case = question_case(
        objectives=[LearningObjective(id="explain", title="Explain revenue", node_ids=["question"])]
    )
    case.nodes[1].config.expected_patterns = ["clients"]
    store = MemoryAttemptStore()
    runtime = _runtime(case, student_id="s1", tracker=AttemptTracker(store))
    _run(runtime.start())
    _run(runtime.submit_user_message("New clients signed up"))
    finished = runtime.attempt

    again = runtime.abandon()

    assert again == finished
    assert again.score == 100
    assert again.status != "abandoned"
    assert not runtime.snapshot().abandoned
    assert len([a for a in store.saved if a.sealed]) == 1


def test_listener_sees_every_message():
    seen = []
    runtime = _runtime(question_case(), on_message=seen.append)
    _run(runtime.start())
    _run(runtime.submit_user_message("answer"))
    assert seen == runtime.snapshot().messages


def test_concurrent_messages_are_serialised():
    case = build_case(
        [
            node("opening", "opening", "Hi"),
            node("q1", "question", "First?"),
            node("q2", "question", "Second?"),
            node("ending", "ending", "Bye"),
        ],
        [("opening", "q1"), ("q1", "q2"), ("q2", "ending")],
    )
    runtime = _runtime(case, llm=FakeLLM(["reply one", "reply two"]))

    async def scenario():
        await runtime.start()
        await asyncio.gather(runtime.submit_user_message("a"), runtime.submit_user_message("b"))

    _run(scenario())
    contents = [m.content for m in runtime.snapshot().messages]
    assert contents == ["Hi", "First?", "a", "reply one", "Second?", "b", "reply two", "Bye"]


class TestAttemptIntegration:
    def _case(self, **kwargs):
        case = question_case(
            objectives=[LearningObjective(id="explain", title="Explain revenue", node_ids=["question"])],
            **kwargs,
        )
        case.nodes[1].config.expected_patterns = ["clients"]
        return case

    def test_finished_scenario_seals_scored_attempt(self):
        store = MemoryAttemptStore()
        runtime = _runtime(self._case(), student_id="s1", tracker=AttemptTracker(store))
        _run(runtime.start())
        _run(runtime.submit_user_message("New clients signed up"))

        attempt = runtime.attempt
        assert attempt.sealed
        assert attempt.score == 100
        assert attempt.is_passing is True
        assert attempt.node_path == ["opening", "question", "ending"]
        assert attempt.total_messages == 4
        assert store.saved[-1] == attempt

    def test_missing_expected_answer_scores_zero(self):
        runtime = _runtime(self._case(), student_id="s1", tracker=AttemptTracker(MemoryAttemptStore()))
        _run(runtime.start())
        _run(runtime.submit_user_message("No idea"))

        assert runtime.attempt.score == 0
        assert runtime.attempt.is_passing is False

    def test_failed_fact_check_replaces_reply_and_lowers_score(self):
        config = GuardrailConfig(require_fact_check=True)
        checker = FakeFactChecker(passed=False)
        runtime = _runtime(
            self._case(guardrails=config),
            llm=FakeLLM(["Revenue tripled overnight."]),
            fact_checker=checker,
            student_id="s1",
            tracker=AttemptTracker(MemoryAttemptStore()),
        )
        _run(runtime.start())
        emitted = _run(runtime.submit_user_message("Was it new clients?"))

        assert emitted[1].content == UNVERIFIED_REPLY_MESSAGE
        assert emitted[1].fact_check.passed is False
        assert checker.calls[0][1] == "Revenue tripled overnight."
        assert len(runtime.attempt.fact_checks) == 1
        assert runtime.attempt.score == 0

    def test_fact_checker_error_counts_as_failed(self):
        config = GuardrailConfig(require_fact_check=True)
        runtime = _runtime(
            question_case(guardrails=config),
            llm=FakeLLM(),
            fact_checker=FakeFactChecker(error=CollaboratorFailure("fact_check", "down")),
        )
        _run(runtime.start())
        emitted = _run(runtime.submit_user_message("hello"))

        assert emitted[1].fact_check.passed is False
        assert runtime.status is SessionStatus.COMPLETED

    def test_abandon_seals_without_score(self):
        runtime = _runtime(self._case(), student_id="s1", tracker=AttemptTracker(MemoryAttemptStore()))
        _run(runtime.start())

        attempt = runtime.abandon()

        assert attempt.status == "abandoned"
        assert attempt.score is None
        assert runtime.snapshot().abandoned
        assert runtime.status is SessionStatus.COMPLETED
        assert runtime.abandon() == attempt
        with pytest.raises(SessionStateError):
            _run(runtime.submit_user_message("late"))
