"""Persistence adapters for conversations, messages and escalations."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.db import storage_call
from ..core.errors import StorageError
from . import schemas


class ConversationRepository(Protocol):
    """Storage contract for the run orchestrator and conversation service.

    Callers serialize writes per conversation; implementations only have to
    keep ``get_or_create_open`` unique per instance+participant pair and make
    ``append_message`` store the message and the updated counters together.
    """

    def get_or_create_open(
        self, company_id: str, instance_id: str, participant_id: str, now: datetime
    ) -> Tuple[schemas.Conversation, bool]: ...

    def get(self, conversation_id: str) -> Optional[schemas.Conversation]: ...

    def list_for_company(self, company_id: str, limit: int = 100) -> List[schemas.Conversation]: ...

    def list_for_participant(
        self, company_id: str, participant_id: str, limit: int = 100
    ) -> List[schemas.Conversation]: ...

    def save(self, conversation: schemas.Conversation) -> None: ...

    def append_message(
        self, conversation: schemas.Conversation, message: schemas.Message
    ) -> None: ...

    def list_messages(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[schemas.Message]: ...

    def mark_agent_messages_read(self, conversation_id: str) -> int: ...

    def get_open_escalation(self, conversation_id: str) -> Optional[schemas.EscalationRecord]: ...

    def create_escalation(self, record: schemas.EscalationRecord) -> None: ...

    def close_escalation(self, conversation_id: str) -> None: ...

    def add_summary(self, summary: schemas.FeedbackSummary) -> None: ...

    def latest_summary(self, conversation_id: str) -> Optional[schemas.FeedbackSummary]: ...


def new_conversation(
    company_id: str, instance_id: str, participant_id: str, now: datetime
) -> schemas.Conversation:
    return schemas.Conversation(
        id=str(uuid4()),
        company_id=company_id,
        agent_instance_id=instance_id,
        participant_id=participant_id,
        created_at=now,
        updated_at=now,
    )


class InMemoryConversationRepository:
    """Thread-safe dictionary store; each method is atomic on its own."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conversations: Dict[str, schemas.Conversation] = {}
        self._messages: Dict[str, List[schemas.Message]] = {}
        self._escalations: Dict[str, List[schemas.EscalationRecord]] = {}
        self._summaries: Dict[str, List[schemas.FeedbackSummary]] = {}

    def get_or_create_open(
        self, company_id: str, instance_id: str, participant_id: str, now: datetime
    ) -> Tuple[schemas.Conversation, bool]:
        with self._lock:
            for conversation in self._conversations.values():
                if (
                    conversation.agent_instance_id == instance_id
                    and conversation.participant_id == participant_id
                    and conversation.is_open
                ):
                    return conversation.model_copy(), False
            conversation = new_conversation(company_id, instance_id, participant_id, now)
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            return conversation.model_copy(), True

    def get(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy() if conversation else None

    def list_for_company(self, company_id: str, limit: int = 100) -> List[schemas.Conversation]:
        with self._lock:
            items = [c.model_copy() for c in self._conversations.values() if c.company_id == company_id]
        return _newest_first(items)[:limit]

    def list_for_participant(
        self, company_id: str, participant_id: str, limit: int = 100
    ) -> List[schemas.Conversation]:
        with self._lock:
            items = [
                c.model_copy()
                for c in self._conversations.values()
                if c.company_id == company_id and c.participant_id == participant_id
            ]
        return _newest_first(items)[:limit]

    def save(self, conversation: schemas.Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = conversation.model_copy()

    def append_message(self, conversation: schemas.Conversation, message: schemas.Message) -> None:
        with self._lock:
            self._messages.setdefault(conversation.id, []).append(message.model_copy())
            self._conversations[conversation.id] = conversation.model_copy()

    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[schemas.Message]:
        with self._lock:
            messages = [m.model_copy() for m in self._messages.get(conversation_id, [])]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def mark_agent_messages_read(self, conversation_id: str) -> int:
        with self._lock:
            messages = self._messages.get(conversation_id, [])
            changed = 0
            for index, message in enumerate(messages):
                if message.sender_type == "agent" and not message.is_read:
                    messages[index] = message.model_copy(update={"is_read": True})
                    changed += 1
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                self._conversations[conversation_id] = conversation.model_copy(update={"unread_count": 0})
            return changed

    def get_open_escalation(self, conversation_id: str) -> Optional[schemas.EscalationRecord]:
        with self._lock:
            for record in self._escalations.get(conversation_id, []):
                if record.status == "open":
                    return record.model_copy()
        return None

    def create_escalation(self, record: schemas.EscalationRecord) -> None:
        with self._lock:
            self._escalations.setdefault(record.conversation_id, []).append(record.model_copy())

    def close_escalation(self, conversation_id: str) -> None:
        with self._lock:
            records = self._escalations.get(conversation_id, [])
            self._escalations[conversation_id] = [
                r.model_copy(update={"status": "closed"}) if r.status == "open" else r
                for r in records
            ]

    def list_escalations(self, conversation_id: str) -> List[schemas.EscalationRecord]:
        with self._lock:
            return [r.model_copy() for r in self._escalations.get(conversation_id, [])]

    def add_summary(self, summary: schemas.FeedbackSummary) -> None:
        with self._lock:
            self._summaries.setdefault(summary.conversation_id, []).append(summary.model_copy())

    def latest_summary(self, conversation_id: str) -> Optional[schemas.FeedbackSummary]:
        with self._lock:
            summaries = self._summaries.get(conversation_id)
            return summaries[-1].model_copy() if summaries else None

    def list_summaries(self, conversation_id: str) -> List[schemas.FeedbackSummary]:
        with self._lock:
            return [s.model_copy() for s in self._summaries.get(conversation_id, [])]


def _newest_first(items: List[schemas.Conversation]) -> List[schemas.Conversation]:
    return sorted(items, key=lambda c: c.last_message_at or c.created_at, reverse=True)


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    _CONVERSATION_COLUMNS = (
        "id, company_id, agent_instance_id, participant_id, status, message_count, "
        "unread_count, nudge_count, last_message_at, created_at, updated_at"
    )
    _MESSAGE_COLUMNS = (
        "id, conversation_id, seq, sender_type, sender_id, content, content_type, is_read, created_at"
    )
    _ESCALATION_COLUMNS = (
        "id, conversation_id, company_id, trigger_message_id, escalation_type, severity, "
        "description, status, created_at"
    )
    _SUMMARY_COLUMNS = (
        "id, conversation_id, company_id, summary, sentiment, sentiment_score, tags, "
        "action_items, key_quotes, message_range_start, message_range_end, "
        "previous_summary_id, delta_notes, computed_at"
    )

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    # Conversation operations --------------------------------------------------
    @storage_call
    def get_or_create_open(
        self, company_id: str, instance_id: str, participant_id: str, now: datetime
    ) -> Tuple[schemas.Conversation, bool]:
        candidate = new_conversation(company_id, instance_id, participant_id, now)
        with self._cursor() as cur:
            # The conflicting open row can close before the SELECT sees it.
            for _ in range(2):
                cur.execute(
                    f"""
                    INSERT INTO conversations ({self._CONVERSATION_COLUMNS})
                    VALUES (%s, %s, %s, %s, 'active', 0, 0, 0, NULL, %s, %s)
                    ON CONFLICT (agent_instance_id, participant_id)
                        WHERE status IN ('active', 'escalated') DO NOTHING
                    RETURNING {self._CONVERSATION_COLUMNS}
                    """,
                    (candidate.id, company_id, instance_id, participant_id, now, now),
                )
                row = cur.fetchone()
                if row:
                    return schemas.Conversation(**row), True
                cur.execute(
                    f"""
                    SELECT {self._CONVERSATION_COLUMNS} FROM conversations
                    WHERE agent_instance_id = %s AND participant_id = %s
                      AND status IN ('active', 'escalated')
                    """,
                    (instance_id, participant_id),
                )
                row = cur.fetchone()
                if row:
                    return schemas.Conversation(**row), False
        raise StorageError(
            f"Could not open a conversation for {participant_id} on instance {instance_id}"
        )

    @storage_call
    def get(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {self._CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        return schemas.Conversation(**row) if row else None

    @storage_call
    def list_for_company(self, company_id: str, limit: int = 100) -> List[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._CONVERSATION_COLUMNS} FROM conversations
                WHERE company_id = %s
                ORDER BY COALESCE(last_message_at, created_at) DESC
                LIMIT %s
                """,
                (company_id, limit),
            )
            return [schemas.Conversation(**row) for row in cur.fetchall()]

    @storage_call
    def list_for_participant(
        self, company_id: str, participant_id: str, limit: int = 100
    ) -> List[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._CONVERSATION_COLUMNS} FROM conversations
                WHERE company_id = %s AND participant_id = %s
                ORDER BY COALESCE(last_message_at, created_at) DESC
                LIMIT %s
                """,
                (company_id, participant_id, limit),
            )
            return [schemas.Conversation(**row) for row in cur.fetchall()]

    @storage_call
    def save(self, conversation: schemas.Conversation) -> None:
        with self._cursor() as cur:
            self._update_conversation(cur, conversation)

    @storage_call
    def append_message(self, conversation: schemas.Conversation, message: schemas.Message) -> None:
        with self._conn.transaction(), self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO messages ({self._MESSAGE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.seq,
                    message.sender_type,
                    message.sender_id,
                    message.content,
                    message.content_type,
                    message.is_read,
                    message.created_at,
                ),
            )
            self._update_conversation(cur, conversation)

    def _update_conversation(self, cur, conversation: schemas.Conversation) -> None:
        cur.execute(
            """
            UPDATE conversations
               SET status = %s, message_count = %s, unread_count = %s, nudge_count = %s,
                   last_message_at = %s, updated_at = %s
             WHERE id = %s
            """,
            (
                conversation.status,
                conversation.message_count,
                conversation.unread_count,
                conversation.nudge_count,
                conversation.last_message_at,
                conversation.updated_at,
                conversation.id,
            ),
        )

    # Message operations ---------------------------------------------------------
    @storage_call
    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[schemas.Message]:
        with self._cursor() as cur:
            if limit is None:
                cur.execute(
                    f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE conversation_id = %s ORDER BY seq",
                    (conversation_id,),
                )
                rows = cur.fetchall()
            else:
                cur.execute(
                    f"""
                    SELECT {self._MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = %s ORDER BY seq DESC LIMIT %s
                    """,
                    (conversation_id, limit),
                )
                rows = list(reversed(cur.fetchall()))
        return [schemas.Message(**row) for row in rows]

    @storage_call
    def mark_agent_messages_read(self, conversation_id: str) -> int:
        with self._conn.transaction(), self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages SET is_read = true
                WHERE conversation_id = %s AND sender_type = 'agent' AND NOT is_read
                """,
                (conversation_id,),
            )
            changed = cur.rowcount
            cur.execute(
                "UPDATE conversations SET unread_count = 0 WHERE id = %s",
                (conversation_id,),
            )
        return changed

    # Escalation operations ------------------------------------------------------
    @storage_call
    def get_open_escalation(self, conversation_id: str) -> Optional[schemas.EscalationRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._ESCALATION_COLUMNS} FROM agent_escalations
                WHERE conversation_id = %s AND status = 'open'
                """,
                (conversation_id,),
            )
            row = cur.fetchone()
        return schemas.EscalationRecord(**row) if row else None

    @storage_call
    def create_escalation(self, record: schemas.EscalationRecord) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO agent_escalations ({self._ESCALATION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id) WHERE status = 'open' DO NOTHING
                """,
                (
                    record.id,
                    record.conversation_id,
                    record.company_id,
                    record.trigger_message_id,
                    record.escalation_type,
                    record.severity,
                    record.description,
                    record.status,
                    record.created_at,
                ),
            )

    @storage_call
    def close_escalation(self, conversation_id: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE agent_escalations SET status = 'closed' WHERE conversation_id = %s AND status = 'open'",
                (conversation_id,),
            )

    # Feedback summaries ---------------------------------------------------------
    @storage_call
    def add_summary(self, summary: schemas.FeedbackSummary) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO feedback_summaries ({self._SUMMARY_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    summary.id,
                    summary.conversation_id,
                    summary.company_id,
                    summary.summary,
                    summary.sentiment,
                    summary.sentiment_score,
                    Jsonb(summary.tags),
                    Jsonb([item.model_dump() for item in summary.action_items]),
                    Jsonb(summary.key_quotes),
                    summary.message_range_start,
                    summary.message_range_end,
                    summary.previous_summary_id,
                    summary.delta_notes,
                    summary.computed_at,
                ),
            )

    @storage_call
    def latest_summary(self, conversation_id: str) -> Optional[schemas.FeedbackSummary]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._SUMMARY_COLUMNS} FROM feedback_summaries
                WHERE conversation_id = %s
                ORDER BY computed_at DESC
                LIMIT 1
                """,
                (conversation_id,),
            )
            row = cur.fetchone()
        return schemas.FeedbackSummary(**row) if row else None
