"""Prompt construction helpers for check-in agents."""

from __future__ import annotations

import zlib
from collections.abc import Mapping, Sequence

from .tone import TonePolicy

AGENT_TYPES = ("pulse_check", "onboarding", "exit_interview", "manager_coaching")
DEFAULT_AGENT_TYPE = "pulse_check"

# Seed rows for ``agent_templates``; identifiers are stable across environments.
TEMPLATE_SEEDS: Sequence[Mapping[str, str]] = (
    {
        "id": "tpl-pulse-check",
        "slug": "pulse-check",
        "name": "Weekly Pulse",
        "agent_type": "pulse_check",
        "description": "Gauge how employees feel about workload, team dynamics and blockers.",
    },
    {
        "id": "tpl-onboarding",
        "slug": "onboarding-buddy",
        "name": "Onboarding Buddy",
        "agent_type": "onboarding",
        "description": "Support new hires through their first weeks and surface missing resources.",
    },
    {
        "id": "tpl-exit-interview",
        "slug": "exit-interview",
        "name": "Exit Interview",
        "agent_type": "exit_interview",
        "description": "Collect honest feedback from departing employees.",
    },
    {
        "id": "tpl-manager-coaching",
        "slug": "manager-coaching",
        "name": "Manager Coach",
        "agent_type": "manager_coaching",
        "description": "Help managers reflect on their team and their leadership growth.",
    },
)

AGENT_GOALS: Mapping[str, str] = {
    "pulse_check": """Your goal is to gauge how the employee is feeling about work this week. Ask about:
- Their workload and stress levels
- Team dynamics and collaboration
- Any blockers or frustrations
- What's going well

Start with a friendly opener, then naturally progress through topics based on their responses.""",
    "onboarding": """Your goal is to support a new hire through their onboarding journey. Focus on:
- How their first days/weeks are going
- Whether they have the resources they need
- If they feel welcomed by their team
- Any questions or confusion about processes

Be extra encouraging and reassuring.""",
    "exit_interview": """Your goal is to gather honest feedback from a departing employee. Explore:
- Their overall experience at the company
- Reasons for leaving
- What could have been better
- What they'll miss

Be respectful and thank them for their honesty. This feedback is valuable.""",
    "manager_coaching": """Your goal is to help a manager reflect on their leadership. Ask about:
- How their team is performing
- Challenges they're facing as a leader
- How supported they feel by leadership
- Areas where they'd like to grow

Offer encouragement and validate their efforts.""",
}

OPENING_MESSAGES: Mapping[str, Sequence[str]] = {
    "pulse_check": (
        "Hey {first_name}! Quick check-in - how's your week going so far?",
        "Hi {first_name}! Just wanted to touch base. How are things going?",
        "Hey {first_name}! Time for our weekly pulse. How's everything feeling?",
    ),
    "onboarding": (
        "Welcome, {first_name}! I'm here to help you get settled. How's your first week going?",
        "Hi {first_name}! I'm your onboarding buddy. Do you have everything you need to get started?",
    ),
    "exit_interview": (
        "Thank you for taking a moment to share your experience with us, {first_name}. "
        "How would you describe your overall time here?",
    ),
    "manager_coaching": (
        "Hey {first_name}! Quick reflection check-in. How did your 1:1s go this week?",
        "Hi {first_name}! Let's do a quick leadership pulse. How's the team feeling?",
    ),
}

FOLLOW_UP_MESSAGES: Sequence[str] = (
    "Hey {first_name}! Quick pulse check - how's the week treating you?",
    "Hi {first_name}! Just checking in. How are you feeling about work lately?",
    "Hey {first_name}! What's been on your mind this week?",
)

# Follow-ups that pick up a topic from the last feedback summary, in priority order.
TOPIC_FOLLOW_UPS: Sequence[tuple[str, str]] = (
    ("workload", "Hey {first_name}! Last time we talked about workload - any better this week?"),
    ("manager", "Hi {first_name}! How are things with your manager going since we last checked in?"),
    (
        "work_life_balance",
        "Hey {first_name}! Last time work-life balance came up - have you had a chance to rest?",
    ),
    (
        "growth",
        "Hi {first_name}! We talked about growth last time - any progress on what you want to work toward?",
    ),
)

NUDGE_MESSAGES: Sequence[str] = (
    "Hey {first_name}! Just checking back - when you have a moment, I'd love to hear how things are going.",
    "Quick ping, {first_name}! No pressure, but I'm here whenever you want to chat.",
    "Hi {first_name}! Just a friendly nudge. Happy to pick up our conversation whenever works for you.",
)

_OPENING_INSTRUCTIONS: Mapping[str, str] = {
    "opening": """Generate a warm, engaging opening message that:
1. Greets them by first name
2. Explains you're checking in (briefly)
3. Asks ONE open-ended question to start

Keep it short and inviting.""",
    "follow_up": """Generate a short follow-up check-in that picks up from the previous conversation.
Greet them by first name and ask ONE open-ended question.""",
    "nudge": """They have not replied to your last message for a while. Write a gentle, no-pressure
reminder that you are around whenever they want to chat. Do not guilt-trip.""",
}

OUTBOUND_KINDS = tuple(_OPENING_INSTRUCTIONS)


def first_name(full_name: str | None) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else "there"


def participant_descriptor(
    name: str, title: str | None = None, department: str | None = None
) -> str:
    descriptor = name
    if title:
        descriptor += f", {title}"
    if department:
        descriptor += f" in {department}"
    return descriptor


class PromptBuilder:
    """Assemble system prompts from tone rules, agent goal and participant details."""

    def __init__(self, extra_goals: Mapping[str, str] | None = None):
        self._goals = dict(AGENT_GOALS)
        if extra_goals:
            self._goals.update(extra_goals)

    def goal(self, agent_type: str | None) -> str:
        key = (agent_type or "").lower()
        return self._goals.get(key) or self._goals[DEFAULT_AGENT_TYPE]

    def reply_prompt(
        self,
        tone: TonePolicy,
        agent_type: str | None,
        name: str,
        title: str | None = None,
        department: str | None = None,
    ) -> str:
        """Return the system prompt used to answer an employee message."""

        return (
            f"{tone.system_rules}\n\n"
            f"{self.goal(agent_type)}\n\n"
            f"You're talking with {participant_descriptor(name, title, department)}.\n\n"
            "Remember: Keep your response short and focused. "
            "One question or acknowledgment at a time."
        )

    def outbound_prompt(
        self,
        tone: TonePolicy,
        agent_type: str | None,
        kind: str,
        name: str,
        title: str | None = None,
        department: str | None = None,
        topics: Sequence[str] = (),
    ) -> str:
        """Return the system prompt for an agent-initiated message of ``kind``.

        Follow-ups mention the ``topics`` tagged in the previous check-in.
        """

        instructions = _OPENING_INSTRUCTIONS.get(kind, _OPENING_INSTRUCTIONS["opening"])
        if kind == "follow_up" and topics:
            labels = ", ".join(topic.replace("_", " ") for topic in topics[:3])
            instructions += f"\nLast time they talked about: {labels}. Ask how one of those is going now."
        verb = "starting a new conversation" if kind == "opening" else "continuing a conversation"
        return (
            f"{tone.system_rules}\n\n"
            f"{self.goal(agent_type)}\n\n"
            f"You're {verb} with {participant_descriptor(name, title, department)}.\n\n"
            f"{instructions}"
        )


def static_message(
    kind: str, agent_type: str | None, name: str, seed: str, topics: Sequence[str] = ()
) -> str:
    """Pick a deterministic canned message for ``kind``.

    ``seed`` (usually the participant id) selects among the variants with a
    stable hash so repeated runs produce the same text. A follow-up refers
    back to the first of ``TOPIC_FOLLOW_UPS`` found in ``topics``.
    """

    if kind == "nudge":
        options = NUDGE_MESSAGES
    elif kind == "follow_up":
        for topic, template in TOPIC_FOLLOW_UPS:
            if topic in topics:
                return template.format(first_name=first_name(name))
        options = FOLLOW_UP_MESSAGES
    else:
        options = OPENING_MESSAGES.get(
            (agent_type or "").lower(), OPENING_MESSAGES[DEFAULT_AGENT_TYPE]
        )
    index = zlib.crc32(seed.encode("utf-8")) % len(options)
    return options[index].format(first_name=first_name(name))
