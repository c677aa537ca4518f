"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass

_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "LLM_URL": "http://localhost:4891/v1/chat/completions",
    "LLM_MODEL": "gpt-4.1",
}

_OPTIONAL_VARS: Dict[str, str] = {
    "LLM_API_KEY": "Bearer token for the LLM endpoint",
    "SCENARIO_AUTO_ADVANCE": "Auto-advance past dialogue/feedback/checkpoint nodes",
}

_NUMERIC_VARS = (
    "LLM_TIMEOUT",
    "LLM_MAX_TOKENS",
    "LLM_TEMPERATURE",
    "LLM_MAX_RETRIES",
    "SCENARIO_DIALOGUE_DELAY",
    "SCENARIO_CHECKPOINT_DELAY",
    "GUARDRAILS_CACHE_TTL",
    "SCENARIO_SESSION_TTL",
)


def validate_environment() -> None:
    """Apply defaults and validate configuration at start-up.

    Raises EnvironmentError if a value is malformed.
    """
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    url = os.getenv("LLM_URL", "")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for LLM_URL: {url}")

    bad_numbers = []
    for var in _NUMERIC_VARS:
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            float(raw)
        except ValueError:
            bad_numbers.append(f"{var}={raw!r}")
    if bad_numbers:
        raise EnvironmentError(f"Non-numeric configuration values: {', '.join(bad_numbers)}")

    timezone_name = os.getenv("GUARDRAILS_TIMEZONE")
    if timezone_name:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise EnvironmentError(f"Unknown timezone for GUARDRAILS_TIMEZONE: {timezone_name}") from exc

    variant = os.getenv("AVATAR_PROMPT_VARIANT")
    if variant:
        from prompts.avatar_prompts import load_prompts

        available = load_prompts()
        if variant.lower() not in available:
            raise EnvironmentError(
                f"Unknown AVATAR_PROMPT_VARIANT: {variant} (available: {', '.join(sorted(available))})"
            )

    for var, description in _OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(float(raw))
    except ValueError:
        logger.warning("Invalid integer for %s: %r; using %s", name, raw, default)
        return default


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %r; using %s", name, raw, default)
        return default
