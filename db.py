import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from db_pool import SQLiteConnectionPool
from engines.validation import ScenarioError, ensure_publishable
from schemas import Attempt, Case, GuardrailConfig, ScenarioSession, utc_now

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


class NotFoundError(ScenarioError):
    """Raised when a stored record does not exist."""
    pass


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS cases (
              case_id     TEXT PRIMARY KEY,
              name        TEXT NOT NULL DEFAULT '',
              course_id   TEXT,
              status      TEXT NOT NULL DEFAULT 'draft',
              version     INTEGER NOT NULL DEFAULT 0,
              case_json   TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_cases_course ON cases(course_id, status);

            CREATE TABLE IF NOT EXISTS case_versions (
              case_id      TEXT NOT NULL,
              version      INTEGER NOT NULL,
              case_json    TEXT NOT NULL,
              published_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (case_id, version)
            );

            CREATE TABLE IF NOT EXISTS sessions (
              session_id   TEXT PRIMARY KEY,
              case_id      TEXT NOT NULL,
              student_id   TEXT,
              status       TEXT NOT NULL,
              session_json TEXT NOT NULL,
              updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_student ON sessions(student_id, case_id);

            CREATE TABLE IF NOT EXISTS attempts (
              student_id     TEXT NOT NULL,
              case_id        TEXT NOT NULL,
              attempt_number INTEGER NOT NULL,
              status         TEXT NOT NULL,
              score          INTEGER,
              started_at     TEXT NOT NULL,
              attempt_json   TEXT NOT NULL,
              updated_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (student_id, case_id, attempt_number)
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_case ON attempts(case_id, started_at);

            CREATE TABLE IF NOT EXISTS attempt_counters (
              student_id  TEXT NOT NULL,
              case_id     TEXT NOT NULL,
              last_number INTEGER NOT NULL,
              PRIMARY KEY (student_id, case_id)
            );

            CREATE TABLE IF NOT EXISTS guardrail_config (
              id          INTEGER PRIMARY KEY CHECK (id = 1),
              config_json TEXT NOT NULL,
              updated_by  TEXT,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        con.commit()


# ---------------------------------------------------------------------------
# Cases


def save_case(case: Case) -> Case:
    """Insert or replace the working copy of ``case``; returns it with ``updated_at`` refreshed."""

    stored = case.model_copy(update={"updated_at": utc_now()})
    _exec(
        """
        INSERT INTO cases(case_id, name, course_id, status, version, case_json, updated_at)
        VALUES (?,?,?,?,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(case_id) DO UPDATE SET
          name=excluded.name,
          course_id=excluded.course_id,
          status=excluded.status,
          version=excluded.version,
          case_json=excluded.case_json,
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            stored.id,
            stored.name,
            stored.course_id,
            stored.status,
            int(stored.version),
            stored.model_dump_json(),
        ),
    )
    return stored


def get_case(case_id: str) -> Optional[Case]:
    rows = _query("SELECT case_json FROM cases WHERE case_id = ?", (case_id,))
    if not rows:
        return None
    return Case.model_validate_json(rows[0]["case_json"])


def list_cases(course_id: Optional[str] = None, status: Optional[str] = None) -> list[Case]:
    clauses = []
    params: list = []
    if course_id:
        clauses.append("course_id = ?")
        params.append(course_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(f"SELECT case_json FROM cases {where} ORDER BY updated_at DESC, case_id", params)
    return [Case.model_validate_json(row["case_json"]) for row in rows]


def publish_case(case_id: str) -> Case:
    """Validate the working copy, bump its version and snapshot it as immutable.

    Raises CaseValidationError when the graph is not publishable.
    """

    case = get_case(case_id)
    if case is None:
        raise NotFoundError(f"Case {case_id} not found")
    ensure_publishable(case)
    published = case.model_copy(update={"status": "published", "version": case.version + 1})
    published = save_case(published)
    _exec(
        "INSERT INTO case_versions(case_id, version, case_json) VALUES (?,?,?)",
        (published.id, published.version, published.model_dump_json()),
    )
    logger.info("Published case %s as version %d", published.id, published.version)
    return published


def get_published_case(case_id: str, version: Optional[int] = None) -> Optional[Case]:
    """Return a published snapshot; the latest one when ``version`` is omitted."""

    if version is None:
        rows = _query(
            "SELECT case_json FROM case_versions WHERE case_id = ? ORDER BY version DESC LIMIT 1",
            (case_id,),
        )
    else:
        rows = _query(
            "SELECT case_json FROM case_versions WHERE case_id = ? AND version = ?",
            (case_id, int(version)),
        )
    if not rows:
        return None
    return Case.model_validate_json(rows[0]["case_json"])


def archive_case(case_id: str) -> Case:
    case = get_case(case_id)
    if case is None:
        raise NotFoundError(f"Case {case_id} not found")
    return save_case(case.model_copy(update={"status": "archived"}))


# ---------------------------------------------------------------------------
# Sessions


def save_session(session: ScenarioSession) -> None:
    _exec(
        """
        INSERT INTO sessions(session_id, case_id, student_id, status, session_json, updated_at)
        VALUES (?,?,?,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(session_id) DO UPDATE SET
          status=excluded.status,
          session_json=excluded.session_json,
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            session.session_id,
            session.case_id,
            session.student_id,
            session.status.value,
            session.model_dump_json(),
        ),
    )


def get_session(session_id: str) -> Optional[ScenarioSession]:
    rows = _query("SELECT session_json FROM sessions WHERE session_id = ?", (session_id,))
    if not rows:
        return None
    return ScenarioSession.model_validate_json(rows[0]["session_json"])


# ---------------------------------------------------------------------------
# Attempts


def next_attempt_number(student_id: str, case_id: str) -> int:
    """Reserve the next attempt number for a (student, case) pair.

    Numbers come from a counter that never goes backwards, so deleting an
    attempt never causes its number to be handed out again.
    """

    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            "SELECT last_number FROM attempt_counters WHERE student_id = ? AND case_id = ?",
            (student_id, case_id),
        ).fetchone()
        if row is None:
            existing = con.execute(
                "SELECT MAX(attempt_number) FROM attempts WHERE student_id = ? AND case_id = ?",
                (student_id, case_id),
            ).fetchone()[0]
            number = int(existing or 0) + 1
            con.execute(
                "INSERT INTO attempt_counters(student_id, case_id, last_number) VALUES (?,?,?)",
                (student_id, case_id, number),
            )
        else:
            number = int(row["last_number"]) + 1
            con.execute(
                "UPDATE attempt_counters SET last_number = ? WHERE student_id = ? AND case_id = ?",
                (number, student_id, case_id),
            )
        con.commit()
    return number


def save_attempt(attempt: Attempt) -> None:
    _exec(
        """
        INSERT INTO attempts(student_id, case_id, attempt_number, status, score, started_at, attempt_json, updated_at)
        VALUES (?,?,?,?,?,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(student_id, case_id, attempt_number) DO UPDATE SET
          status=excluded.status,
          score=excluded.score,
          attempt_json=excluded.attempt_json,
          updated_at=CURRENT_TIMESTAMP
        """,
        (
            attempt.student_id,
            attempt.case_id,
            int(attempt.attempt_number),
            attempt.status,
            attempt.score,
            attempt.started_at.isoformat(),
            attempt.model_dump_json(),
        ),
    )


def get_attempt(student_id: str, case_id: str, attempt_number: int) -> Optional[Attempt]:
    rows = _query(
        """
        SELECT attempt_json FROM attempts
        WHERE student_id = ? AND case_id = ? AND attempt_number = ?
        """,
        (student_id, case_id, int(attempt_number)),
    )
    if not rows:
        return None
    return Attempt.model_validate_json(rows[0]["attempt_json"])


def list_attempts(student_id: str, case_id: str) -> list[Attempt]:
    """All attempts of one student on one case, ordered by attempt number."""

    rows = _query(
        """
        SELECT attempt_json FROM attempts
        WHERE student_id = ? AND case_id = ?
        ORDER BY attempt_number ASC
        """,
        (student_id, case_id),
    )
    return [Attempt.model_validate_json(row["attempt_json"]) for row in rows]


def list_case_attempts(case_id: str) -> list[Attempt]:
    rows = _query(
        """
        SELECT attempt_json FROM attempts
        WHERE case_id = ?
        ORDER BY started_at ASC, student_id, attempt_number
        """,
        (case_id,),
    )
    return [Attempt.model_validate_json(row["attempt_json"]) for row in rows]


def delete_attempt(student_id: str, case_id: str, attempt_number: int) -> bool:
    cur = _exec(
        "DELETE FROM attempts WHERE student_id = ? AND case_id = ? AND attempt_number = ?",
        (student_id, case_id, int(attempt_number)),
    )
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Guardrails


def get_guardrail_config() -> Optional[GuardrailConfig]:
    """Return the system-wide guardrail configuration, or ``None`` when none was saved."""

    rows = _query("SELECT config_json FROM guardrail_config WHERE id = 1")
    if not rows:
        return None
    return GuardrailConfig.model_validate(json.loads(rows[0]["config_json"]))


def save_guardrail_config(config: GuardrailConfig, updated_by: Optional[str] = None) -> GuardrailConfig:
    stored = config.model_copy(update={"updated_at": utc_now(), "updated_by": updated_by})
    _exec(
        """
        INSERT INTO guardrail_config(id, config_json, updated_by, updated_at)
        VALUES (1,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(id) DO UPDATE SET
          config_json=excluded.config_json,
          updated_by=excluded.updated_by,
          updated_at=CURRENT_TIMESTAMP
        """,
        (stored.model_dump_json(), updated_by),
    )
    return stored
