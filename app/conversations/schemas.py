"""Pydantic schemas for conversations, messages and escalations."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ConversationStatus = Literal["active", "escalated", "closed"]
SenderType = Literal["agent", "employee"]
ContentType = Literal["text", "escalation"]
EscalationType = Literal["safety", "harassment", "discrimination", "urgent"]
Severity = Literal["critical", "high", "medium", "low"]
Sentiment = Literal["positive", "neutral", "negative", "mixed"]


class Conversation(BaseModel):
    id: str
    company_id: str
    agent_instance_id: str
    participant_id: str
    status: ConversationStatus = "active"
    message_count: int = 0
    unread_count: int = 0
    nudge_count: int = 0
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status in ("active", "escalated")


class Message(BaseModel):
    id: str
    conversation_id: str
    seq: int
    sender_type: SenderType
    sender_id: str | None = None
    content: str
    content_type: ContentType = "text"
    is_read: bool = False
    created_at: datetime


class EscalationRecord(BaseModel):
    id: str
    conversation_id: str
    company_id: str
    trigger_message_id: str | None = None
    escalation_type: EscalationType
    severity: Severity
    description: str | None = None
    status: Literal["open", "closed"] = "open"
    created_at: datetime


class ActionItem(BaseModel):
    text: str
    confidence: float
    priority: Literal["low", "medium", "high"]
    category: str | None = None


class FeedbackSummary(BaseModel):
    """Insights computed from the employee side of a conversation.

    A new row is stored after every answered reply; each points at the one
    before it so changes between check-ins can be described.
    """

    id: str
    conversation_id: str
    company_id: str
    summary: str
    sentiment: Sentiment
    sentiment_score: float = 0.0
    tags: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    key_quotes: list[str] = Field(default_factory=list)
    message_range_start: str | None = None
    message_range_end: str | None = None
    previous_summary_id: str | None = None
    delta_notes: str | None = None
    computed_at: datetime


class ConversationDetail(Conversation):
    messages: list[Message] = Field(default_factory=list)
    escalation: EscalationRecord | None = None
    summary: FeedbackSummary | None = None


class ConversationList(BaseModel):
    items: list[Conversation]
    total: int


class MessageCreate(BaseModel):
    content: str


class ReplyResponse(BaseModel):
    message: Message
    employee_message: Message
    escalated: bool
    warning: str | None = None


class RunResultResponse(BaseModel):
    run_id: str
    messages_sent: int
    conversations_touched: int
    failures: list[dict[str, str]] = Field(default_factory=list)
    skipped: list[dict[str, str]] = Field(default_factory=list)
