"""LLM-backed collaborators: avatar replies, fact checking and branch resolution."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar
from uuid import uuid4

import requests
from pydantic import BaseModel, ValidationError

from engines.validation import CollaboratorFailure
from env_validation import get_env_float, get_env_int
from schemas import ChatMessage, FactCheckResult, parse_json_safe

if TYPE_CHECKING:
    from engines.scenario_runtime import BranchContext

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("scenario.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

T = TypeVar("T")


class LLMResponseError(Exception):
    """The endpoint answered but the payload held no completion."""
    pass


def with_retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[Type[Exception], ...] = (requests.RequestException, LLMResponseError),
    collaborator: str = "llm",
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry with exponential backoff; exhaustion raises :class:`CollaboratorFailure`."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            delay = initial_delay
            last_exception: Optional[Exception] = None
            attempts = max(1, max_retries)
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as exc:
                    last_exception = exc
                    logger.warning(
                        "%s call failed (attempt %d/%d): %s", collaborator, attempt + 1, attempts, exc
                    )
                    if attempt < attempts - 1:
                        sleep(min(delay, max_delay))
                        delay *= backoff_factor
            raise CollaboratorFailure(
                collaborator, f"failed after {attempts} attempts: {last_exception}"
            ) from last_exception

        return wrapper

    return decorator


def _strip_think(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _history_messages(history: Iterable[ChatMessage | Mapping[str, Any]]) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    for entry in history:
        if isinstance(entry, ChatMessage):
            role, content = entry.role, entry.content
        else:
            role, content = str(entry.get("role", "user")), str(entry.get("content", ""))
        if content:
            messages.append({"role": role, "content": content})
    return messages


class LLMClient:
    """Completion client for an OpenAI-style ``/chat/completions`` endpoint."""

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        http=requests,
    ) -> None:
        self.url = url or os.getenv("LLM_URL", "http://localhost:4891/v1/chat/completions")
        self.model = model or os.getenv("LLM_MODEL", "gpt-4.1")
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY")
        self.timeout = timeout if timeout is not None else get_env_float("LLM_TIMEOUT", 60.0)
        self.max_tokens = max_tokens if max_tokens is not None else get_env_int("LLM_MAX_TOKENS", 500)
        self.temperature = temperature if temperature is not None else get_env_float("LLM_TEMPERATURE", 0.7)
        self.max_retries = max_retries if max_retries is not None else get_env_int("LLM_MAX_RETRIES", 2)
        self.retry_delay = retry_delay
        self._http = http

    # ------------------------------------------------------------------
    def generate_reply(
        self,
        system_prompt: str,
        history: Sequence[ChatMessage | Mapping[str, Any]],
        *,
        purpose: str = "avatar_reply",
    ) -> str:
        """Return the avatar's next utterance for ``history`` under ``system_prompt``."""

        messages = [{"role": "system", "content": system_prompt}, *_history_messages(history)]
        call = with_retry(
            max_retries=self.max_retries,
            initial_delay=self.retry_delay,
            collaborator="llm",
        )(self._complete)
        return call(messages, purpose)

    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ------------------------------------------------------------------
    def _complete(self, messages: List[Dict[str, str]], purpose: str) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            payload["max_tokens"] = int(self.max_tokens)

        request_id = str(uuid4())
        start = time.perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        outcome = "error"
        try:
            response = self._http.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
            if response.status_code == 400:
                # Some local servers reject sampling fields; retry with the bare payload.
                minimal = {"model": self.model, "messages": messages}
                response = self._http.post(self.url, json=minimal, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
                tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError):
                try:
                    content = data["choices"][0]["text"]
                except (KeyError, IndexError, TypeError) as exc:
                    raise LLMResponseError(f"Unexpected LLM response: {str(data)[:300]}") from exc
            text = _strip_think(content or "")
            if not text:
                raise LLMResponseError("LLM returned an empty completion")
            outcome = "ok"
            return text
        finally:
            _LLM_LOGGER.info(
                json.dumps(
                    {
                        "event": "llm_call",
                        "request_id": request_id,
                        "purpose": purpose,
                        "model": self.model,
                        "latency_ms": int((time.perf_counter() - start) * 1000),
                        "tokens_in": tokens_in,
                        "tokens_out": tokens_out,
                        "outcome": outcome,
                    },
                    ensure_ascii=False,
                )
            )


FACT_CHECK_PROMPT = """You verify statements made by a role-play avatar in a business case interview.
Compare the avatar's reply with the case knowledge below. A reply passes when it does not
contradict the knowledge and does not invent facts the knowledge does not support.

Case knowledge:
{knowledge}

Respond with exactly one JSON object: {{"passed": true|false, "reason": "<one sentence>"}}"""


class LLMFactChecker:
    """Validate avatar replies against the case's knowledge via a second LLM round-trip."""

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    def check(self, question: str, answer: str, knowledge: str) -> FactCheckResult:
        history = [
            {"role": "user", "content": f"Learner message:\n{question}\n\nAvatar reply:\n{answer}"},
        ]
        reply = self._client.generate_reply(
            FACT_CHECK_PROMPT.format(knowledge=knowledge or "(no case knowledge provided)"),
            history,
            purpose="fact_check",
        )
        try:
            return parse_json_safe(reply, FactCheckResult)
        except (ValidationError, ValueError) as exc:
            raise CollaboratorFailure("fact_check", f"unparseable verdict: {reply[:200]}") from exc


class _BranchChoice(BaseModel):
    target_node_id: str
    reason: str | None = None


BRANCH_PROMPT = """You decide where a scripted business-case conversation goes next.
Read the conversation and choose exactly one of the options.

Options:
{options}

Respond with exactly one JSON object: {{"target_node_id": "<id of the chosen option>", "reason": "<short>"}}"""


class LLMBranchResolver:
    """Choose a branch target by asking the LLM; unusable answers fall back to the first edge."""

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    def resolve_branch(self, node_id: str, context: "BranchContext") -> Optional[str]:
        if not context.options:
            return None
        lines = []
        for option in context.options:
            condition = f" (when: {option.label})" if option.label else ""
            lines.append(f"- {option.target_node_id}: {option.target_label}{condition}")
        reply = self._client.generate_reply(
            BRANCH_PROMPT.format(options="\n".join(lines)),
            context.history,
            purpose="branch_resolution",
        )
        valid = {option.target_node_id for option in context.options}
        try:
            choice = parse_json_safe(reply, _BranchChoice)
        except (ValidationError, ValueError):
            logger.warning("Branch resolver reply for node %s was not valid JSON; using first edge", node_id)
            return context.options[0].target_node_id
        if choice.target_node_id not in valid:
            logger.warning(
                "Branch resolver chose unknown target %r for node %s; using first edge",
                choice.target_node_id,
                node_id,
            )
            return context.options[0].target_node_id
        return choice.target_node_id
