import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db
    import guardrails

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool.close_all()
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    guardrails.invalidate_guardrail_cache()
    yield str(db_path)
    db._pool.close_all()
    guardrails.invalidate_guardrail_cache()


@pytest.fixture
def headless_env(monkeypatch):
    """Run scenarios without presentation delays."""
    monkeypatch.setenv("SCENARIO_AUTO_ADVANCE", "true")
    monkeypatch.setenv("SCENARIO_DIALOGUE_DELAY", "0")
    monkeypatch.setenv("SCENARIO_CHECKPOINT_DELAY", "0")
