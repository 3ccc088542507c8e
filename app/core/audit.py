"""Audit events emitted by the orchestrator and the sinks that store them."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from .errors import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """Description of a state change; persisting it is the sink's job."""

    action: str
    target_type: str
    target_id: str
    company_id: str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditSink(Protocol):
    """Append-only audit log collaborator."""

    def record(self, event: AuditEvent) -> None: ...


class InMemoryAuditSink:
    """Keep audit events in a list; used by tests and local runs."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class PostgresAuditSink:
    """Write audit events into the ``audit_logs`` table."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def record(self, event: AuditEvent) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO audit_logs
                        (company_id, actor_user_id, actor_role, action, target_type,
                         target_id, before_state, after_state, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.company_id,
                        event.actor_id,
                        event.actor_role,
                        event.action,
                        event.target_type,
                        event.target_id,
                        Jsonb(event.before_state) if event.before_state is not None else None,
                        Jsonb(event.after_state) if event.after_state is not None else None,
                        event.created_at,
                    ),
                )
        except psycopg.Error as exc:
            logger.exception("Failed to record audit event %s", event.action)
            raise StorageError(f"Failed to record audit event {event.action}") from exc
