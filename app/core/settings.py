"""Runtime configuration for the orchestrator, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _to_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %d", name, raw, default)
        return default


def _to_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Configuration derived from the environment for the orchestrator."""

    database_url: str | None = None
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 20.0
    llm_max_attempts: int = 3
    history_window: int = 10
    summary_window: int = 50
    stale_after_days: int = 7
    max_nudges: int = 2
    default_timezone: str = "America/New_York"
    max_message_length: int = 5000
    lock_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Build settings from ``os.environ`` falling back to defaults."""

        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
            llm_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            llm_timeout_seconds=_to_float("LLM_TIMEOUT_SECONDS", 20.0),
            llm_max_attempts=max(1, _to_int("LLM_MAX_ATTEMPTS", 3)),
            history_window=max(1, _to_int("HISTORY_WINDOW", 10)),
            summary_window=max(2, _to_int("SUMMARY_WINDOW", 50)),
            stale_after_days=max(1, _to_int("STALE_AFTER_DAYS", 7)),
            max_nudges=max(0, _to_int("MAX_NUDGES", 2)),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "America/New_York"),
            max_message_length=_to_int("CHAT_MAX_MESSAGE_LENGTH", 5000),
            lock_timeout_seconds=_to_float("LOCK_TIMEOUT_SECONDS", 10.0),
        )
