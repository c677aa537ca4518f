"""State machine that walks a case graph and produces the avatar's side of the conversation."""

from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from engines.attempt_tracker import AttemptTracker
from engines.validation import SessionStateError, StructuralWarning
from env_validation import get_env_bool, get_env_float
from guardrails import (
    GuardrailAction,
    build_guarded_prompt,
    merge_with_defaults,
    requires_fact_check,
    screen_inbound,
    screen_outbound,
)
from prompts.avatar_prompts import build_avatar_system_prompt
from scenario_graph import ScenarioGraph
from schemas import (
    Attempt,
    Case,
    ChatMessage,
    FactCheckResult,
    GuardrailConfig,
    NodeType,
    ScenarioNode,
    ScenarioSession,
    SessionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I'm sorry, I'm having trouble responding right now. Could you say that again?"
UNVERIFIED_REPLY_MESSAGE = (
    "I'm not certain about that, and I'd rather not guess. Could you ask me in a different way?"
)


class ReplyGenerator(Protocol):
    def generate_reply(self, system_prompt: str, history: Sequence[ChatMessage]) -> str: ...


class FactChecker(Protocol):
    def check(self, question: str, answer: str, knowledge: str) -> FactCheckResult: ...


@dataclass(frozen=True)
class BranchOption:
    target_node_id: str
    target_label: str
    label: Optional[str] = None


@dataclass
class BranchContext:
    """What a branch resolver may look at when choosing the next node."""

    case: Case
    history: List[ChatMessage]
    visited_node_ids: List[str]
    options: List[BranchOption] = field(default_factory=list)


class BranchResolver(Protocol):
    def resolve_branch(self, node_id: str, context: BranchContext) -> Optional[str]: ...


class FirstEdgeResolver:
    """Pick the first outgoing edge in edge-list order."""

    def resolve_branch(self, node_id: str, context: BranchContext) -> Optional[str]:
        return context.options[0].target_node_id if context.options else None


MessageListener = Callable[[ChatMessage], Any]
DelayFn = Callable[[float], Awaitable[Any]]


class ScenarioRuntime:
    """Drive one session through a case graph.

    States move ``not_started -> running <-> waiting_for_input -> completed``.
    Node processing is synchronous within a tick; collaborator calls (LLM,
    fact checker, branch resolver) run in a worker thread and are the only
    suspension points besides the presentation delay. One runtime owns one
    session; concurrent ``submit_user_message`` calls queue on a lock.
    """

    def __init__(
        self,
        case: Case,
        *,
        llm: Optional[ReplyGenerator] = None,
        student_id: Optional[str] = None,
        tracker: Optional[AttemptTracker] = None,
        guardrail_config: Optional[GuardrailConfig] = None,
        branch_resolver: Optional[BranchResolver] = None,
        fact_checker: Optional[FactChecker] = None,
        auto_advance: Optional[bool] = None,
        dialogue_delay: Optional[float] = None,
        checkpoint_delay: Optional[float] = None,
        delay: DelayFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_message: Optional[MessageListener] = None,
        max_steps_per_tick: int = 200,
        prompt_variant: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.case = case
        self.graph = ScenarioGraph(case)
        self._llm = llm
        self._tracker = tracker if tracker is not None else (AttemptTracker() if student_id else None)
        self._student_id = student_id
        self.guardrails = (
            merge_with_defaults(case.guardrails, guardrail_config) if guardrail_config else case.guardrails
        )
        self._branch_resolver: BranchResolver = branch_resolver or FirstEdgeResolver()
        self._fact_checker = fact_checker
        self._auto_advance = get_env_bool("SCENARIO_AUTO_ADVANCE", True) if auto_advance is None else auto_advance
        self._dialogue_delay = (
            get_env_float("SCENARIO_DIALOGUE_DELAY", 1.5) if dialogue_delay is None else dialogue_delay
        )
        self._checkpoint_delay = (
            get_env_float("SCENARIO_CHECKPOINT_DELAY", 1.0) if checkpoint_delay is None else checkpoint_delay
        )
        self._delay = delay
        self._rng = rng
        self._on_message = on_message
        self._max_steps = max(1, max_steps_per_tick)
        self._prompt_variant = prompt_variant
        self._timezone = os.getenv("GUARDRAILS_TIMEZONE", "America/New_York")
        self._lock = asyncio.Lock()
        self._pending_advance: Optional[str] = None
        self._completed = False
        self.structural_warnings: List[StructuralWarning] = []

        session_fields: Dict[str, Any] = {
            "case_id": case.id,
            "case_version": case.version,
            "student_id": student_id,
        }
        if session_id:
            session_fields["session_id"] = session_id
        self._session = ScenarioSession(**session_fields)

    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._session.session_id

    # ------------------------------------------------------------------
    @property
    def status(self) -> SessionStatus:
        return self._session.status

    # ------------------------------------------------------------------
    @property
    def current_node(self) -> Optional[ScenarioNode]:
        return self.graph.get_node(self._session.current_node_id)

    # ------------------------------------------------------------------
    @property
    def awaiting_advance(self) -> bool:
        return self._pending_advance is not None

    # ------------------------------------------------------------------
    @property
    def attempt(self) -> Optional[Attempt]:
        if self._tracker is None or not self._tracker.started:
            return None
        return self._tracker.snapshot()

    # ------------------------------------------------------------------
    def snapshot(self) -> ScenarioSession:
        return self._session.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def start(self) -> List[ChatMessage]:
        """Begin the session at the start node and run until input is needed or it ends."""

        async with self._lock:
            if self._session.status is not SessionStatus.NOT_STARTED:
                raise SessionStateError(f"Session {self.session_id} has already started")
            self._session.status = SessionStatus.RUNNING
            self._session.started_at = utc_now()
            if self._tracker is not None and self._student_id and not self._tracker.started:
                self._tracker.begin(
                    self._student_id,
                    self.case.id,
                    case_version=self.case.version,
                    session_id=self.session_id,
                    started_at=self._session.started_at,
                )
            emitted: List[ChatMessage] = []
            await self._run_from(self.graph.start_node_id, emitted, source=None)
            return emitted

    # ------------------------------------------------------------------
    async def advance(self) -> List[ChatMessage]:
        """Continue past a dialogue, feedback or checkpoint node when auto-advance is off."""

        async with self._lock:
            if self._pending_advance is None:
                raise SessionStateError(f"Session {self.session_id} is not waiting to advance")
            target, self._pending_advance = self._pending_advance, None
            emitted: List[ChatMessage] = []
            await self._run_from(target, emitted, source=self._session.current_node_id)
            return emitted

    # ------------------------------------------------------------------
    async def submit_user_message(self, text: str) -> List[ChatMessage]:
        """Handle one learner message; returns every message appended, the learner's first."""

        async with self._lock:
            if self._session.status is not SessionStatus.WAITING_FOR_INPUT:
                raise SessionStateError(
                    f"Session {self.session_id} is {self._session.status.value}, not waiting for input"
                )
            node = self.current_node
            if node is None:
                raise SessionStateError(
                    f"Session {self.session_id} is waiting at unknown node '{self._session.current_node_id}'"
                )
            emitted: List[ChatMessage] = []
            user_message = ChatMessage(role="user", content=text, node_id=node.id)
            self._append(user_message, emitted)

            decision = screen_inbound(text, self.guardrails, self._rng)
            if decision.substitutes_content:
                # The question stays open; the learner must still answer it.
                self._append(
                    ChatMessage(
                        role="assistant",
                        content=decision.text,
                        node_id=node.id,
                        guardrail=decision.action.value,
                    ),
                    emitted,
                )
                return emitted

            if self._llm is not None:
                replied = await self._reply_to(node, text, emitted)
                if not replied:
                    return emitted

            self._session.status = SessionStatus.RUNNING
            await self._run_from(self.graph.next_node(node.id), emitted, source=node)
            return emitted

    # ------------------------------------------------------------------
    def abandon(self) -> Optional[Attempt]:
        """End the session early; the attempt is sealed without a score.

        A turn still waiting on a collaborator or a delay stops at its next
        suspension point and leaves the session completed.
        """

        if self._completed:
            return self.attempt
        self._completed = True
        self._pending_advance = None
        self._session.status = SessionStatus.COMPLETED
        self._session.abandoned = True
        self._session.ended_at = utc_now()
        logger.info("Session %s abandoned at node %s", self.session_id, self._session.current_node_id)
        if self._tracker is not None and self._tracker.started:
            return self._tracker.abandon()
        return None

    # ------------------------------------------------------------------
    async def _reply_to(self, node: ScenarioNode, text: str, emitted: List[ChatMessage]) -> bool:
        """Append the avatar's reply; False when the turn must stop at the current node."""

        try:
            system_prompt = build_guarded_prompt(
                build_avatar_system_prompt(self.case, node, variant=self._prompt_variant),
                text,
                self.guardrails,
                timezone_name=self._timezone,
            )
            history = list(self._session.messages)
            reply = await asyncio.to_thread(self._llm.generate_reply, system_prompt, history)
        except Exception as exc:
            if self._completed:
                return False
            logger.error(
                "Avatar reply failed for session %s at node %s: %s",
                self.session_id,
                node.id,
                exc,
                exc_info=True,
            )
            self._append(ChatMessage(role="assistant", content=APOLOGY_MESSAGE, node_id=node.id), emitted)
            return False
        if self._ended_while_waiting(node, "avatar reply"):
            return False

        verdict: Optional[FactCheckResult] = None
        if requires_fact_check(self.guardrails) and self._fact_checker is not None:
            verdict = await self._fact_check(text, reply)
            if self._ended_while_waiting(node, "fact check"):
                return False
            if self._tracker is not None and self._tracker.started and not self._tracker.is_sealed:
                self._tracker.record_fact_check(verdict)
            if not verdict.passed:
                reply = UNVERIFIED_REPLY_MESSAGE
        self._emit(node, reply, emitted, fact_check=verdict)
        return True

    # ------------------------------------------------------------------
    async def _fact_check(self, question: str, answer: str) -> FactCheckResult:
        knowledge = "\n\n".join(
            part for part in (self.case.avatar_config.case_context, self.case.description) if part
        )
        try:
            return await asyncio.to_thread(self._fact_checker.check, question, answer, knowledge)
        except Exception as exc:
            logger.error("Fact check failed for session %s: %s", self.session_id, exc, exc_info=True)
            return FactCheckResult(passed=False, reason="fact check unavailable")

    # ------------------------------------------------------------------
    def _append(self, message: ChatMessage, emitted: List[ChatMessage]) -> None:
        self._session.messages.append(message)
        emitted.append(message)
        if self._tracker is not None and self._tracker.started and not self._tracker.is_sealed:
            self._tracker.record(message)
        if self._on_message is not None:
            self._on_message(message)

    # ------------------------------------------------------------------
    def _emit(
        self,
        node: ScenarioNode,
        text: str,
        emitted: List[ChatMessage],
        *,
        fact_check: Optional[FactCheckResult] = None,
    ) -> None:
        decision = screen_outbound(text, self.guardrails)
        self._append(
            ChatMessage(
                role="assistant",
                content=decision.text,
                node_id=node.id,
                guardrail=None if decision.action is GuardrailAction.ALLOW else decision.action.value,
                fact_check=fact_check,
            ),
            emitted,
        )

    # ------------------------------------------------------------------
    def _enter(self, node: ScenarioNode) -> None:
        self._session.current_node_id = node.id
        self._session.visited_node_ids.append(node.id)
        if self._tracker is not None and self._tracker.started and not self._tracker.is_sealed:
            self._tracker.visit(node.id, checkpoint=node.type is NodeType.CHECKPOINT)

    # ------------------------------------------------------------------
    def _structural_warning(self, message: str) -> None:
        warning = StructuralWarning(message)
        self.structural_warnings.append(warning)
        self._session.warnings.append(message)
        logger.warning("Structural warning in case %s (session %s): %s", self.case.id, self.session_id, message)

    # ------------------------------------------------------------------
    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self._pending_advance = None
        self._session.status = SessionStatus.COMPLETED
        self._session.ended_at = utc_now()
        if self._tracker is not None and self._tracker.started:
            self._tracker.finalize(self.case)

    # ------------------------------------------------------------------
    def _ended_while_waiting(self, node: ScenarioNode, what: str) -> bool:
        if not self._completed:
            return False
        logger.info(
            "Session %s ended while waiting on %s at node %s; turn stopped", self.session_id, what, node.id
        )
        return True

    # ------------------------------------------------------------------
    def _implicit_end(self, node: ScenarioNode | None, reason: str) -> None:
        where = f"{node.type.value} node '{node.id}'" if node else "session"
        self._structural_warning(f"{where}: {reason}; ending conversation")
        self._complete()

    # ------------------------------------------------------------------
    async def _run_from(
        self,
        node_id: Optional[str],
        emitted: List[ChatMessage],
        *,
        source: Optional[ScenarioNode | str],
    ) -> None:
        steps = 0
        previous = self.graph.get_node(source) if isinstance(source, str) else source
        current = node_id
        while True:
            if self._completed:
                return
            if current is None:
                self._implicit_end(previous, "no outgoing transition")
                return
            node = self.graph.get_node(current)
            if node is None:
                self._implicit_end(previous, f"transition to unknown node '{current}'")
                return
            steps += 1
            if steps > self._max_steps:
                self._implicit_end(node, f"more than {self._max_steps} nodes processed without input")
                return
            self._enter(node)
            handler = self._NODE_HANDLERS[node.type]
            step = await handler(self, node, emitted)
            if step is _STOP:
                return
            previous, current = node, step

    # ------------------------------------------------------------------
    async def _pace(self, node: ScenarioNode, seconds: float) -> Optional[str]:
        """Return the next node id once the presentation delay has passed, or stop for ``advance``."""

        target = self.graph.next_node(node.id)
        if target is None:
            self._implicit_end(node, "no outgoing transition")
            return _STOP
        if not self._auto_advance:
            self._pending_advance = target
            self._session.status = SessionStatus.RUNNING
            return _STOP
        if seconds > 0:
            await self._delay(seconds)
            if self._ended_while_waiting(node, "presentation delay"):
                return _STOP
        return target

    # ------------------------------------------------------------------
    async def _handle_speaking(self, node: ScenarioNode, emitted: List[ChatMessage]):
        self._emit(node, node.content, emitted)
        return await self._pace(node, self._dialogue_delay)

    # ------------------------------------------------------------------
    async def _handle_question(self, node: ScenarioNode, emitted: List[ChatMessage]):
        self._emit(node, node.content, emitted)
        self._session.status = SessionStatus.WAITING_FOR_INPUT
        return _STOP

    # ------------------------------------------------------------------
    async def _handle_listen(self, node: ScenarioNode, emitted: List[ChatMessage]):
        self._session.status = SessionStatus.WAITING_FOR_INPUT
        return _STOP

    # ------------------------------------------------------------------
    async def _handle_branch(self, node: ScenarioNode, emitted: List[ChatMessage]):
        options = []
        for edge in self.graph.outgoing(node.id):
            target = self.graph.get_node(edge.target_node_id)
            options.append(
                BranchOption(
                    target_node_id=edge.target_node_id,
                    target_label=target.label if target and target.label else edge.target_node_id,
                    label=edge.label,
                )
            )
        if not options:
            self._implicit_end(node, "branch has no outgoing transition")
            return _STOP
        context = BranchContext(
            case=self.case,
            history=list(self._session.messages),
            visited_node_ids=list(self._session.visited_node_ids),
            options=options,
        )
        if isinstance(self._branch_resolver, FirstEdgeResolver):
            target = self._branch_resolver.resolve_branch(node.id, context)
        else:
            try:
                target = await asyncio.to_thread(self._branch_resolver.resolve_branch, node.id, context)
            except Exception as exc:
                logger.error(
                    "Branch resolver failed at node %s, using first edge: %s", node.id, exc, exc_info=True
                )
                target = options[0].target_node_id
            if self._ended_while_waiting(node, "branch resolver"):
                return _STOP
        if target is None:
            self._implicit_end(node, "branch resolver returned no target")
            return _STOP
        if target not in {option.target_node_id for option in options}:
            logger.warning("Branch resolver chose %s outside node %s edges, using first edge", target, node.id)
            target = options[0].target_node_id
        return target

    # ------------------------------------------------------------------
    async def _handle_checkpoint(self, node: ScenarioNode, emitted: List[ChatMessage]):
        if node.id not in self._session.checkpoints_reached:
            self._session.checkpoints_reached.append(node.id)
        self._emit(node, f"[Checkpoint: {node.label}] {node.content}", emitted)
        return await self._pace(node, self._checkpoint_delay)

    # ------------------------------------------------------------------
    async def _handle_ending(self, node: ScenarioNode, emitted: List[ChatMessage]):
        self._emit(node, node.content, emitted)
        self._complete()
        return _STOP

    _NODE_HANDLERS: Dict[NodeType, Callable[..., Awaitable[Any]]] = {
        NodeType.OPENING: _handle_speaking,
        NodeType.DIALOGUE: _handle_speaking,
        NodeType.FEEDBACK: _handle_speaking,
        NodeType.QUESTION: _handle_question,
        NodeType.LISTEN: _handle_listen,
        NodeType.BRANCH: _handle_branch,
        NodeType.CHECKPOINT: _handle_checkpoint,
        NodeType.ENDING: _handle_ending,
    }


_STOP: Any = object()

_unhandled = set(NodeType) - set(ScenarioRuntime._NODE_HANDLERS)
if _unhandled:
    raise RuntimeError(f"ScenarioRuntime has no handler for node types: {sorted(t.value for t in _unhandled)}")
