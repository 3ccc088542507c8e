"""Database helpers for company-scoped psycopg connections."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from typing import TypeVar

import psycopg

from .company_context import get_current_company_id
from .errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS employees (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    full_name TEXT NOT NULL,
    job_title TEXT,
    department TEXT,
    team_id TEXT,
    is_active BOOLEAN NOT NULL DEFAULT true
);
CREATE INDEX IF NOT EXISTS ix_employees_company ON employees (company_id);

CREATE TABLE IF NOT EXISTS agent_templates (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    agent_type TEXT NOT NULL,
    description TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_instances (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    template_id TEXT NOT NULL REFERENCES agent_templates (id),
    name TEXT NOT NULL,
    created_by TEXT,
    config JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ix_agent_instances_company ON agent_instances (company_id);

CREATE TABLE IF NOT EXISTS agent_schedules (
    agent_instance_id TEXT PRIMARY KEY REFERENCES agent_instances (id) ON DELETE CASCADE,
    cadence TEXT NOT NULL,
    cron_expression TEXT,
    timezone TEXT NOT NULL,
    next_run_at TIMESTAMPTZ,
    last_run_at TIMESTAMPTZ,
    is_active BOOLEAN NOT NULL DEFAULT true
);
CREATE INDEX IF NOT EXISTS ix_agent_schedules_due ON agent_schedules (is_active, next_run_at);

CREATE TABLE IF NOT EXISTS agent_runs (
    id TEXT PRIMARY KEY,
    agent_instance_id TEXT NOT NULL REFERENCES agent_instances (id) ON DELETE CASCADE,
    trigger_kind TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    finished_at TIMESTAMPTZ,
    messages_sent INTEGER NOT NULL DEFAULT 0,
    conversations_touched INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    agent_instance_id TEXT NOT NULL REFERENCES agent_instances (id),
    participant_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    message_count INTEGER NOT NULL DEFAULT 0,
    unread_count INTEGER NOT NULL DEFAULT 0,
    nudge_count INTEGER NOT NULL DEFAULT 0,
    last_message_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_conversations_open_pair
    ON conversations (agent_instance_id, participant_id)
    WHERE status IN ('active', 'escalated');

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    sender_type TEXT NOT NULL,
    sender_id TEXT,
    content TEXT NOT NULL,
    content_type TEXT NOT NULL DEFAULT 'text',
    is_read BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (conversation_id, seq)
);

CREATE TABLE IF NOT EXISTS agent_escalations (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    company_id TEXT NOT NULL,
    trigger_message_id TEXT,
    escalation_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_agent_escalations_open
    ON agent_escalations (conversation_id) WHERE status = 'open';

CREATE TABLE IF NOT EXISTS feedback_summaries (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    company_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    sentiment TEXT NOT NULL,
    sentiment_score DOUBLE PRECISION NOT NULL DEFAULT 0,
    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    action_items JSONB NOT NULL DEFAULT '[]'::jsonb,
    key_quotes JSONB NOT NULL DEFAULT '[]'::jsonb,
    message_range_start TEXT,
    message_range_end TEXT,
    previous_summary_id TEXT REFERENCES feedback_summaries (id),
    delta_notes TEXT,
    computed_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ix_feedback_summaries_latest
    ON feedback_summaries (conversation_id, computed_at DESC);

CREATE TABLE IF NOT EXISTS audit_logs (
    id BIGSERIAL PRIMARY KEY,
    company_id TEXT,
    actor_user_id TEXT,
    actor_role TEXT,
    action TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    before_state JSONB,
    after_state JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def ensure_schema(conn: psycopg.Connection) -> None:
    """Create the orchestrator tables if they do not exist.

    The DDL relies on ``IF NOT EXISTS`` clauses, so the function is
    non-destructive and can be called on every start-up.
    """

    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


def apply_company_settings(conn: psycopg.Connection, company_id: str | None = None) -> None:
    """Ensure ``app.company_id`` is configured for the provided connection.

    Row level security policies read the setting, so it is applied with session
    scope to survive transaction boundaries.
    """

    effective = company_id or get_current_company_id()
    if not effective:
        raise RuntimeError("company_id is required for company-scoped operations")

    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT set_config('app.company_id', %s, false)",
                (str(effective),),
            )
    except Exception:  # pragma: no cover - defensive logging
        logger.exception("Failed to apply company settings to connection")
        raise


def storage_call(func: Callable[..., T]) -> Callable[..., T]:
    """Wrap a repository method so driver failures surface as ``StorageError``."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except psycopg.Error as exc:
            logger.exception("Storage call %s failed", func.__qualname__)
            raise StorageError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


@contextmanager
def connection_from_dsn(dsn: str, *, autocommit: bool = False) -> Iterator[psycopg.Connection]:
    """Open a connection that commits on success and rolls back on error.

    With ``autocommit`` every statement outside an explicit
    ``conn.transaction()`` block is durable immediately.
    """

    try:
        conn = psycopg.connect(dsn, autocommit=autocommit)
    except psycopg.Error as exc:
        raise StorageError(f"Could not connect to database: {exc}") from exc
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
