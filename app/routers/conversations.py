"""Conversation API routes."""

from fastapi import APIRouter, Depends, Request

from ..conversations import schemas as convo_schemas
from ..conversations.models import ReplyResult
from ..core.auth import AuthContext
from ..security.auth import get_current_actor, require_admin
from .context import REPLY_RATE_LIMIT, limiter, service_context

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def reply_response(result: ReplyResult) -> convo_schemas.ReplyResponse:
    return convo_schemas.ReplyResponse(
        message=result.message,
        employee_message=result.employee_message,
        escalated=result.escalated,
        warning=result.warning,
    )


@router.get("", response_model=convo_schemas.ConversationList)
def list_conversations(
    limit: int = 100,
    actor: AuthContext = Depends(get_current_actor),
) -> convo_schemas.ConversationList:
    with service_context() as svc:
        items = svc.conversations.list_conversations(actor, limit=limit)
    return convo_schemas.ConversationList(items=items, total=len(items))


@router.get("/{conversation_id}", response_model=convo_schemas.ConversationDetail)
def get_conversation(
    conversation_id: str,
    actor: AuthContext = Depends(get_current_actor),
) -> convo_schemas.ConversationDetail:
    with service_context() as svc:
        return svc.conversations.get_conversation(conversation_id, actor)


@router.post("/{conversation_id}/messages", response_model=convo_schemas.ReplyResponse)
@limiter.limit(REPLY_RATE_LIMIT)
def post_message(
    request: Request,
    conversation_id: str,
    payload: convo_schemas.MessageCreate,
    actor: AuthContext = Depends(get_current_actor),
) -> convo_schemas.ReplyResponse:
    with service_context() as svc:
        result = svc.orchestrator.handle_employee_reply(
            conversation_id, payload.content, actor.user_id
        )
    return reply_response(result)


@router.post("/{conversation_id}/read", response_model=convo_schemas.ConversationDetail)
def mark_read(
    conversation_id: str,
    actor: AuthContext = Depends(get_current_actor),
) -> convo_schemas.ConversationDetail:
    with service_context() as svc:
        return svc.conversations.mark_read(conversation_id, actor)


@router.post("/{conversation_id}/close", response_model=convo_schemas.ConversationDetail)
def close_conversation(
    conversation_id: str,
    actor: AuthContext = Depends(require_admin),
) -> convo_schemas.ConversationDetail:
    with service_context() as svc:
        return svc.conversations.close_conversation(conversation_id, actor)
