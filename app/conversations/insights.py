"""Topic, sentiment and action-item extraction from employee messages.

Everything here is a pure function of the message list. The orchestrator
stores the resulting :class:`FeedbackSummary` after each answered reply, and
later follow-up check-ins pick up its topic tags.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from uuid import uuid4

from .schemas import ActionItem, Conversation, FeedbackSummary, Message


def _words(*words: str) -> re.Pattern[str]:
    """Match any of ``words`` as a whole word; a trailing ``*`` allows any suffix."""

    parts = [re.escape(w[:-1]) + r"\w*" if w.endswith("*") else re.escape(w) for w in words]
    return re.compile(r"\b(?:" + "|".join(parts) + r")\b", re.IGNORECASE)


# Topics are reported in this order.
TOPIC_PATTERNS: Mapping[str, re.Pattern[str]] = {
    "workload": _words(
        "overwhelm*", "too much", "busy", "stress*", "swamp*", "behind", "deadline*",
        "overwork*", "burnout", "exhausted", "workload", "work load", "tasks", "projects",
        "bandwidth",
    ),
    "manager": _words(
        "manager", "boss", "supervisor", "lead", "leadership", "1:1", "one-on-one",
        "check-in", "feedback",
    ),
    "compensation": _words(
        "salary", "pay", "compensation", "raise", "bonus", "equity", "stock", "benefits",
        "underpaid", "market rate", "promotion",
    ),
    "culture": _words(
        "culture", "values", "team", "environment", "atmosphere", "vibe", "toxic",
        "supportive", "inclusive", "diverse", "belonging",
    ),
    "tooling": _words(
        "tools", "software", "systems", "tech", "equipment", "laptop", "slow", "broken",
        "outdated", "frustrating", "clunky",
    ),
    "growth": _words(
        "growth", "career", "development", "learning", "promotion", "opportunity", "stuck",
        "stagnant", "ceiling", "path", "progression",
    ),
    "work_life_balance": _words(
        "balance", "hours", "overtime", "weekend", "evening", "family", "life", "burnout",
        "exhausted", "tired", "rest", "vacation", "pto",
    ),
    "communication": _words(
        "communication", "meeting*", "align*", "unclear", "confus*", "info", "update*",
        "siloed", "disconnected", "transparent", "visibility",
    ),
    "team_dynamics": _words(
        "team", "colleague*", "coworker*", "collaboration", "conflict*", "friction",
        "tension", "support", "help", "trust",
    ),
    "recognition": _words(
        "recogni*", "appreciat*", "acknowledged", "valued", "seen", "invisible", "thank*",
        "credit", "praised", "noticed",
    ),
}

_POSITIVE = _words(
    "great", "good", "love", "enjoy", "happy", "excited", "thrilled", "fantastic", "wonderful",
    "excellent", "grateful", "thankful", "appreciate", "blessed", "lucky", "satisfied",
    "improving", "better", "progress", "growing", "learning",
)
_NEGATIVE = _words(
    "bad", "terrible", "awful", "hate", "frustrated", "annoyed", "upset", "angry",
    "disappointed", "struggle", "difficult", "hard", "challenging", "problem", "issue",
    "worried", "concerned", "anxious", "stressed", "overwhelmed", "leaving", "quit", "resign",
    "looking for", "interview",
)
_BURNOUT = _words("burnout", "burning out", "exhausted", "overwhelmed")
_LEAVING = _words("leaving", "looking for", "interview", "quit", "resign")

SENTIMENT_THRESHOLD = 0.3
QUOTE_MIN_CHARS = 20
QUOTE_MAX_CHARS = 300

_SENTIMENT_PHRASES: Mapping[str, str] = {
    "positive": "is feeling positive",
    "neutral": "has a neutral outlook",
    "negative": "is experiencing some challenges",
    "mixed": "has mixed feelings",
}


def _employee_text(messages: Sequence[Message]) -> str:
    return " ".join(m.content for m in messages if m.sender_type == "employee")


def extract_topics(messages: Sequence[Message]) -> list[str]:
    text = _employee_text(messages)
    return [topic for topic, pattern in TOPIC_PATTERNS.items() if pattern.search(text)]


def analyze_sentiment(messages: Sequence[Message]) -> tuple[str, float]:
    """Return ``(sentiment, score)`` with ``score`` in ``[-1, 1]``.

    The score is the balance of positive and negative indicator words. Both
    kinds present without a clear lean is ``mixed``.
    """

    text = _employee_text(messages)
    positive = len(_POSITIVE.findall(text))
    negative = len(_NEGATIVE.findall(text))
    total = positive + negative
    if total == 0:
        return "neutral", 0.0
    score = (positive - negative) / total
    if score > SENTIMENT_THRESHOLD:
        sentiment = "positive"
    elif score < -SENTIMENT_THRESHOLD:
        sentiment = "negative"
    elif positive and negative:
        sentiment = "mixed"
    else:
        sentiment = "neutral"
    return sentiment, round(score, 2)


def extract_key_quotes(messages: Sequence[Message], max_quotes: int = 3) -> list[str]:
    """Return the longest employee messages of a quotable length."""

    candidates = [
        m.content
        for m in messages
        if m.sender_type == "employee" and QUOTE_MIN_CHARS < len(m.content) < QUOTE_MAX_CHARS
    ]
    candidates.sort(key=len, reverse=True)
    return candidates[:max_quotes]


def suggest_action_items(
    messages: Sequence[Message], topics: Sequence[str], sentiment: str
) -> list[ActionItem]:
    text = _employee_text(messages)
    items: list[ActionItem] = []
    if _BURNOUT.search(text) or _LEAVING.search(text):
        items.append(
            ActionItem(
                text=(
                    "Employee shows signs of burnout or may be considering leaving. "
                    "Schedule a 1:1 to discuss workload and career path."
                ),
                confidence=0.8,
                priority="high",
                category="retention_risk",
            )
        )
    if "workload" in topics and sentiment != "positive":
        items.append(
            ActionItem(
                text="Review the employee's workload and consider redistributing tasks or moving deadlines.",
                confidence=0.7,
                priority="medium",
                category="workload",
            )
        )
    if "manager" in topics and sentiment == "negative":
        items.append(
            ActionItem(
                text="The manager relationship may need attention. Consider facilitating a feedback session.",
                confidence=0.6,
                priority="medium",
                category="management",
            )
        )
    if "compensation" in topics:
        items.append(
            ActionItem(
                text="Compensation came up. Review market rates and discuss the total compensation package.",
                confidence=0.7,
                priority="medium",
                category="compensation",
            )
        )
    if "growth" in topics and sentiment != "positive":
        items.append(
            ActionItem(
                text="Employee is looking for growth. Discuss career development and learning paths.",
                confidence=0.7,
                priority="medium",
                category="development",
            )
        )
    if "tooling" in topics and sentiment == "negative":
        items.append(
            ActionItem(
                text="Review the tools and systems causing friction. Consider upgrades or training.",
                confidence=0.5,
                priority="low",
                category="tooling",
            )
        )
    return items


def describe(
    messages: Sequence[Message], topics: Sequence[str], sentiment: str, participant_name: str
) -> str:
    if not any(m.sender_type == "employee" for m in messages):
        return "No employee responses yet."
    text = f"{participant_name} {_SENTIMENT_PHRASES[sentiment]}."
    if topics:
        text += f" Topics discussed include {', '.join(topics[:3])}."
    return text


def compare_with_previous(
    previous: FeedbackSummary | None, sentiment: str, topics: Sequence[str]
) -> str | None:
    """Describe what changed since ``previous``; ``None`` for a first summary."""

    if previous is None:
        return None
    changes: list[str] = []
    if previous.sentiment != sentiment:
        if previous.sentiment == "negative" and sentiment in ("positive", "neutral"):
            changes.append("Sentiment has improved since last check-in")
        elif previous.sentiment in ("positive", "neutral") and sentiment == "negative":
            changes.append("Sentiment has declined since last check-in")
    new_topics = [t for t in topics if t not in previous.tags]
    dropped = [t for t in previous.tags if t not in topics]
    if new_topics:
        changes.append(f"New concerns: {', '.join(new_topics)}")
    if dropped:
        changes.append(f"No longer mentioned: {', '.join(dropped)}")
    if not changes:
        return "No significant changes from previous check-in."
    return ". ".join(changes)


def summarize_conversation(
    conversation: Conversation,
    messages: Sequence[Message],
    participant_name: str,
    previous: FeedbackSummary | None,
    now: datetime,
) -> FeedbackSummary | None:
    """Build the next :class:`FeedbackSummary`, or ``None`` below two messages."""

    if len(messages) < 2:
        return None
    topics = extract_topics(messages)
    sentiment, score = analyze_sentiment(messages)
    return FeedbackSummary(
        id=str(uuid4()),
        conversation_id=conversation.id,
        company_id=conversation.company_id,
        summary=describe(messages, topics, sentiment, participant_name),
        sentiment=sentiment,
        sentiment_score=score,
        tags=topics,
        action_items=suggest_action_items(messages, topics, sentiment),
        key_quotes=extract_key_quotes(messages),
        message_range_start=messages[0].id,
        message_range_end=messages[-1].id,
        previous_summary_id=previous.id if previous else None,
        delta_notes=compare_with_previous(previous, sentiment, topics),
        computed_at=now,
    )
