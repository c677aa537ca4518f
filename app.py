# app.py: Case Scenario Engine host
# - Case authoring, validation and publishing
# - Live scenario sessions held in an in-process runtime registry
# - Attempt history, learning curves and system guardrails

import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

import db
from engines.attempt_tracker import AttemptTracker
from engines.learning_curve import LearningCurveAnalyzer
from engines.scenario_runtime import ScenarioRuntime
from engines.validation import (
    AttemptSealedError,
    CaseValidationError,
    CollaboratorFailure,
    SessionStateError,
    check_publish_readiness,
    validate_case,
)
from env_validation import get_env_bool, get_env_float
from guardrails import invalidate_guardrail_cache, load_guardrail_config
from llm import LLMBranchResolver, LLMClient, LLMFactChecker
from scenario_graph import case_from_mapping
from schemas import Case, ChatMessage, GuardrailConfig, SessionStatus

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Case scenario engine ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Case Scenario Engine", version=APP_VERSION, lifespan=_lifespan)

_RUNTIMES: Dict[str, ScenarioRuntime] = {}
_LAST_ACTIVITY: Dict[str, float] = {}
_RUNTIMES_LOCK = threading.Lock()
_clock = time.monotonic
_ANALYZER = LearningCurveAnalyzer()


# --------- Error mapping ---------
@app.exception_handler(CaseValidationError)
async def _case_validation_error(_: Request, exc: CaseValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "errors": exc.errors, "warnings": exc.warnings},
    )


@app.exception_handler(SessionStateError)
async def _session_state_error(_: Request, exc: SessionStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(AttemptSealedError)
async def _attempt_sealed_error(_: Request, exc: AttemptSealedError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(db.NotFoundError)
async def _not_found_error(_: Request, exc: db.NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(CollaboratorFailure)
async def _collaborator_failure(_: Request, exc: CollaboratorFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc), "collaborator": exc.collaborator})


# --------- Request models ---------
class SessionStartRequest(BaseModel):
    case_id: str
    student_id: Optional[str] = None
    case_version: Optional[int] = Field(default=None, ge=1)
    preview: bool = Field(default=False, description="Run the draft case without recording an attempt.")


class MessageRequest(BaseModel):
    content: str = Field(min_length=1)


# --------- Collaborators and registry ---------
def _collaborators() -> Tuple[Any, Any, Any]:
    """Return the (reply generator, fact checker, branch resolver) used by new sessions."""
    client = LLMClient()
    resolver = LLMBranchResolver(client) if get_env_bool("SCENARIO_LLM_BRANCHING", False) else None
    return client, LLMFactChecker(client), resolver


def evict_idle_runtimes() -> List[str]:
    """Abandon live sessions idle longer than SCENARIO_SESSION_TTL seconds and drop them.

    Their attempts are sealed without a score. A TTL of 0 or less disables eviction.
    """
    ttl = get_env_float("SCENARIO_SESSION_TTL", 1800.0)
    if ttl <= 0:
        return []
    now = _clock()
    with _RUNTIMES_LOCK:
        idle = [sid for sid, seen in _LAST_ACTIVITY.items() if now - seen > ttl]
        evicted = [_RUNTIMES.pop(sid) for sid in idle if sid in _RUNTIMES]
        for sid in idle:
            _LAST_ACTIVITY.pop(sid, None)
    for runtime in evicted:
        runtime.abandon()
        db.save_session(runtime.snapshot())
        logger.info("Session %s evicted after %.0fs idle", runtime.session_id, ttl)
    return [runtime.session_id for runtime in evicted]


def _register(runtime: ScenarioRuntime) -> None:
    evict_idle_runtimes()
    with _RUNTIMES_LOCK:
        _RUNTIMES[runtime.session_id] = runtime
        _LAST_ACTIVITY[runtime.session_id] = _clock()


def _get_runtime(session_id: str) -> ScenarioRuntime:
    evict_idle_runtimes()
    with _RUNTIMES_LOCK:
        runtime = _RUNTIMES.get(session_id)
        if runtime is not None:
            _LAST_ACTIVITY[session_id] = _clock()
    if runtime is None:
        stored = db.get_session(session_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="session not found")
        raise HTTPException(status_code=409, detail=f"session is {stored.status.value} and no longer live")
    return runtime


def _session_payload(runtime: ScenarioRuntime, messages: List[ChatMessage]) -> Dict[str, Any]:
    session = runtime.snapshot()
    db.save_session(session)
    if session.status is SessionStatus.COMPLETED:
        with _RUNTIMES_LOCK:
            _RUNTIMES.pop(runtime.session_id, None)
            _LAST_ACTIVITY.pop(runtime.session_id, None)
    attempt = runtime.attempt
    return {
        "session": session.model_dump(mode="json"),
        "messages": [message.model_dump(mode="json") for message in messages],
        "awaiting_advance": runtime.awaiting_advance,
        "attempt": attempt.model_dump(mode="json") if attempt else None,
    }


def _case_or_404(case_id: str) -> Case:
    case = db.get_case(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case not found")
    return case


def _parse_case(payload: Dict[str, Any], **overrides: Any) -> Case:
    data = dict(payload)
    data.update(overrides)
    try:
        if "nodes" not in data:
            # A case created without a graph starts as opening -> ending.
            template = Case.new(str(data.get("name", "")), str(data.get("description", "")))
            data = {**template.model_dump(include={"nodes", "edges", "start_node_id"}), **data}
        return case_from_mapping(data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


# --------- Endpoints ---------
@app.get("/health")
def health():
    evict_idle_runtimes()
    with _RUNTIMES_LOCK:
        live = len(_RUNTIMES)
    return {"status": "ok", "version": APP_VERSION, "live_sessions": live}


@app.post("/cases")
def create_case(payload: Dict[str, Any]):
    case = _parse_case(payload, status="draft", version=0)
    if db.get_case(case.id) is not None:
        raise HTTPException(status_code=409, detail="case id exists")
    return db.save_case(case).model_dump(mode="json")


@app.get("/cases")
def list_cases(course_id: Optional[str] = None, status: Optional[str] = None):
    return {"cases": [case.model_dump(mode="json") for case in db.list_cases(course_id, status)]}


@app.get("/cases/{case_id}")
def get_case(case_id: str, version: Optional[int] = None):
    if version is not None:
        case = db.get_published_case(case_id, version)
        if case is None:
            raise HTTPException(status_code=404, detail="case version not found")
        return case.model_dump(mode="json")
    return _case_or_404(case_id).model_dump(mode="json")


@app.put("/cases/{case_id}")
def update_case(case_id: str, payload: Dict[str, Any]):
    stored = _case_or_404(case_id)
    case = _parse_case(
        payload,
        id=case_id,
        version=stored.version,
        status=payload.get("status", stored.status),
        created_at=stored.created_at,
    )
    return db.save_case(case).model_dump(mode="json")


@app.post("/cases/{case_id}/validate")
def validate(case_id: str):
    case = _case_or_404(case_id)
    result = validate_case(case).to_dict()
    readiness = check_publish_readiness(case)
    result["publish_ready"] = result["valid"] and not readiness
    result["publish_errors"] = readiness
    return result


@app.post("/cases/{case_id}/publish")
def publish(case_id: str):
    return db.publish_case(case_id).model_dump(mode="json")


@app.post("/cases/{case_id}/archive")
def archive(case_id: str):
    return db.archive_case(case_id).model_dump(mode="json")


@app.post("/sessions")
async def start_session(req: SessionStartRequest):
    if req.preview:
        case = _case_or_404(req.case_id)
        student_id = None
    else:
        if not req.student_id:
            raise HTTPException(status_code=400, detail="student_id required")
        case = db.get_published_case(req.case_id, req.case_version)
        if case is None:
            raise HTTPException(status_code=404, detail="published case not found")
        student_id = req.student_id

    llm, fact_checker, branch_resolver = _collaborators()
    runtime = ScenarioRuntime(
        case,
        llm=llm,
        student_id=student_id,
        tracker=AttemptTracker() if student_id else None,
        guardrail_config=load_guardrail_config(),
        branch_resolver=branch_resolver,
        fact_checker=fact_checker,
    )
    _register(runtime)
    messages = await runtime.start()
    logger.info("Session %s started for case %s (student=%s)", runtime.session_id, case.id, student_id)
    return _session_payload(runtime, messages)


@app.post("/sessions/{session_id}/messages")
async def post_message(session_id: str, req: MessageRequest):
    runtime = _get_runtime(session_id)
    messages = await runtime.submit_user_message(req.content)
    return _session_payload(runtime, messages)


@app.post("/sessions/{session_id}/advance")
async def advance_session(session_id: str):
    runtime = _get_runtime(session_id)
    messages = await runtime.advance()
    return _session_payload(runtime, messages)


@app.post("/sessions/{session_id}/abandon")
def abandon_session(session_id: str):
    runtime = _get_runtime(session_id)
    runtime.abandon()
    return _session_payload(runtime, [])


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    evict_idle_runtimes()
    with _RUNTIMES_LOCK:
        runtime = _RUNTIMES.get(session_id)
    session = runtime.snapshot() if runtime else db.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return {"session": session.model_dump(mode="json"), "live": runtime is not None}


@app.get("/students/{student_id}/cases/{case_id}/attempts")
def list_attempts(student_id: str, case_id: str):
    attempts = db.list_attempts(student_id, case_id)
    return {
        "attempts": [attempt.model_dump(mode="json") for attempt in attempts],
        "summary": _ANALYZER.score_summary(attempts),
    }


@app.get("/students/{student_id}/cases/{case_id}/learning-curve")
def learning_curve(student_id: str, case_id: str, time_range: Optional[str] = None):
    attempts = db.list_attempts(student_id, case_id)
    try:
        curve = _ANALYZER.curve(attempts, time_range=time_range)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "curve": curve.model_dump(mode="json"),
        "score_summary": _ANALYZER.score_summary(attempts),
        "time_usage": _ANALYZER.time_usage(attempts),
        "conversation_summary": _ANALYZER.conversation_summary(attempts),
    }


@app.get("/cases/{case_id}/class-trend")
def class_trend(case_id: str):
    _case_or_404(case_id)
    return {"case_id": case_id, "trend": _ANALYZER.class_trend(db.list_case_attempts(case_id))}


@app.get("/guardrails")
def get_guardrails():
    return load_guardrail_config().model_dump(mode="json")


@app.put("/guardrails")
def put_guardrails(config: GuardrailConfig, updated_by: Optional[str] = None):
    stored = db.save_guardrail_config(config, updated_by=updated_by)
    invalidate_guardrail_cache()
    logger.info("Guardrail configuration updated by %s", updated_by or "unknown")
    return stored.model_dump(mode="json")
