"""Conversation queries and human-initiated lifecycle actions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from ..core.audit import AuditSink
from ..core.auth import AuthContext
from ..core.errors import NotFoundError, PermissionDeniedError
from ..core.locks import KeyedLockRegistry, conversation_key
from . import schemas, state
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationService:
    """Read access for participants and admins, plus the admin close action."""

    def __init__(
        self,
        repository: ConversationRepository,
        audit: AuditSink,
        locks: KeyedLockRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
        lock_timeout: float | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._locks = locks or KeyedLockRegistry()
        self._clock = clock
        self._lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    def list_conversations(self, actor: AuthContext, limit: int = 100) -> list[schemas.Conversation]:
        if actor.is_admin:
            return self._repository.list_for_company(actor.company_id, limit=limit)
        return self._repository.list_for_participant(actor.company_id, actor.user_id, limit=limit)

    def get_conversation(self, conversation_id: str, actor: AuthContext) -> schemas.ConversationDetail:
        """Return the conversation with its messages; admins also see the latest insights."""

        conversation = self._load(conversation_id, actor)
        return schemas.ConversationDetail(
            **conversation.model_dump(),
            messages=self._repository.list_messages(conversation.id),
            escalation=self._repository.get_open_escalation(conversation.id),
            summary=self._repository.latest_summary(conversation.id) if actor.is_admin else None,
        )

    def mark_read(self, conversation_id: str, actor: AuthContext) -> schemas.ConversationDetail:
        conversation = self._load(conversation_id, actor)
        if conversation.participant_id != actor.user_id:
            raise PermissionDeniedError("Only the participant can mark messages as read")
        with self._locks.hold(conversation_key(conversation.id), self._lock_timeout):
            self._repository.mark_agent_messages_read(conversation.id)
        return self.get_conversation(conversation.id, actor)

    def close_conversation(self, conversation_id: str, actor: AuthContext) -> schemas.ConversationDetail:
        """Close an active or escalated conversation on behalf of an HR admin."""

        if not actor.is_admin:
            raise PermissionDeniedError("Admin role required")
        self._load(conversation_id, actor)
        with self._locks.hold(conversation_key(conversation_id), self._lock_timeout):
            conversation = self._repository.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            moved = state.transition(
                conversation, "closed", state.HUMAN, actor=actor, now=self._clock()
            )
            self._repository.save(moved.conversation)
            if conversation.status == "escalated":
                self._repository.close_escalation(conversation.id)
            self._audit.record(moved.audit_event)
        logger.info("Conversation %s closed by %s", conversation_id, actor.user_id)
        return self.get_conversation(conversation_id, actor)

    # ------------------------------------------------------------------
    def _load(self, conversation_id: str, actor: AuthContext) -> schemas.Conversation:
        conversation = self._repository.get(conversation_id)
        if conversation is None or conversation.company_id != actor.company_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if not actor.is_admin and conversation.participant_id != actor.user_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation
