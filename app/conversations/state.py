"""Lifecycle rules for a single conversation.

``active`` is the only initial state. The orchestrator may escalate an active
conversation; closing is allowed from ``active`` by anyone and from
``escalated`` by a human only. Nothing returns to ``active``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from ..core.audit import AuditEvent
from ..core.auth import AuthContext
from ..core.errors import InvalidTransitionError
from .schemas import Conversation

SYSTEM = "system"
HUMAN = "human"

_TRANSITIONS: Mapping[tuple[str, str], tuple[str, frozenset[str]]] = {
    ("active", "escalated"): ("conversation_escalated", frozenset({SYSTEM})),
    ("active", "closed"): ("conversation_closed", frozenset({SYSTEM, HUMAN})),
    ("escalated", "closed"): ("conversation_closed", frozenset({HUMAN})),
}


@dataclass(frozen=True)
class Transition:
    conversation: Conversation
    audit_event: AuditEvent


def can_transition(current: str, target: str, actor_kind: str) -> bool:
    rule = _TRANSITIONS.get((current, target))
    return rule is not None and actor_kind in rule[1]


def transition(
    conversation: Conversation,
    target: str,
    actor_kind: str = SYSTEM,
    *,
    actor: AuthContext | None = None,
    now: datetime | None = None,
) -> Transition:
    """Return ``conversation`` moved to ``target`` plus the matching audit event.

    The input is left untouched; persisting both results is the caller's job.

    Raises:
        InvalidTransitionError: If the move is not allowed for ``actor_kind``.
    """

    current = conversation.status
    rule = _TRANSITIONS.get((current, target))
    if rule is None:
        raise InvalidTransitionError(current, target)
    action, actors = rule
    if actor_kind not in actors:
        raise InvalidTransitionError(current, target, reason=f"not allowed for {actor_kind} actor")

    moved = conversation.model_copy(
        update={"status": target, "updated_at": now or datetime.now(timezone.utc)}
    )
    event = AuditEvent(
        action=action,
        target_type="conversation",
        target_id=conversation.id,
        company_id=conversation.company_id,
        actor_id=actor.user_id if actor else None,
        actor_role=actor.role if actor else actor_kind,
        before_state={"status": current},
        after_state={"status": target},
    )
    return Transition(conversation=moved, audit_event=event)
