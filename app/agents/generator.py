"""Reply generation with tone enforcement, retries and safe fallbacks."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .llm import LanguageModel
from .prompts import PromptBuilder, static_message
from .safety import SafetyClassifier, check_agent_message, empathy_response
from .tone import get_tone_policy

logger = logging.getLogger(__name__)

MODEL_NOT_CONFIGURED = "model_not_configured"

RETRY_FALLBACK = (
    "Thanks for sharing. I'm having a moment - could you tell me more about how things are going?"
)
UNCONFIGURED_FALLBACK = (
    "Thanks for sharing! I'm listening. Tell me more about how things are going."
)

_OUTBOUND_REQUEST = {
    "opening": "Generate an opening message.",
    "follow_up": "Generate a follow-up check-in message.",
    "nudge": "Generate a gentle reminder message.",
}


@dataclass(frozen=True)
class HistoryEntry:
    role: str  # "user" (employee) or "assistant" (agent)
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationContext:
    employee_name: str
    agent_type: str
    tone_preset: str
    history: list[HistoryEntry] = field(default_factory=list)
    employee_title: str | None = None
    department: str | None = None
    participant_id: str | None = None
    # Topic tags from the latest feedback summary, used by follow-ups.
    topics: list[str] = field(default_factory=list)

    def latest_user_message(self) -> str:
        for entry in reversed(self.history):
            if entry.role == "user":
                return entry.content
        return ""


@dataclass(frozen=True)
class GeneratedReply:
    content: str
    should_escalate: bool = False
    escalation_type: str | None = None
    escalation_reason: str | None = None
    warning: str | None = None
    used_model: bool = False
    attempts: int = 0


class ResponseGenerator:
    """Produce agent messages through an external language model.

    ``model`` is ``None`` when no credential is configured; no call is
    attempted in that case. ``sleep`` is injected so tests can observe the
    backoff schedule without waiting.
    """

    def __init__(
        self,
        model: LanguageModel | None,
        classifier: SafetyClassifier | None = None,
        prompts: PromptBuilder | None = None,
        *,
        max_attempts: int = 3,
        timeout: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.model = model
        self.classifier = classifier or SafetyClassifier()
        self.prompts = prompts or PromptBuilder()
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return self.model is not None

    # ------------------------------------------------------------------
    # Replies to employee messages
    # ------------------------------------------------------------------
    def generate(self, context: GenerationContext) -> GeneratedReply:
        """Return the agent reply for the latest employee message in ``context``.

        Flagged content short-circuits to a fixed empathetic message. Model
        failures are retried with exponential backoff and end in a fixed
        fallback; errors never propagate to the caller.
        """

        latest = context.latest_user_message()
        result = self.classifier.classify(latest)
        if result.flagged:
            return GeneratedReply(
                content=empathy_response(result.category),
                should_escalate=True,
                escalation_type=result.category,
                escalation_reason=(
                    f'Detected safety keyword: "{result.matched_term}" in employee message'
                ),
            )

        tone = get_tone_policy(context.tone_preset)
        if self.model is None:
            return GeneratedReply(
                content=tone.truncate(UNCONFIGURED_FALLBACK),
                warning=MODEL_NOT_CONFIGURED,
            )

        system_prompt = self.prompts.reply_prompt(
            tone,
            context.agent_type,
            context.employee_name,
            context.employee_title,
            context.department,
        )
        history = [entry.as_message() for entry in context.history]
        text, attempts = self._complete(system_prompt, history, tone.max_tokens, self.max_attempts)
        if text is None:
            return GeneratedReply(content=tone.truncate(RETRY_FALLBACK), attempts=attempts)
        return GeneratedReply(content=tone.truncate(text), used_model=True, attempts=attempts)

    # ------------------------------------------------------------------
    # Agent-initiated messages
    # ------------------------------------------------------------------
    def generate_opening(self, context: GenerationContext, kind: str = "opening") -> GeneratedReply:
        """Return an outbound ``opening``, ``follow_up`` or ``nudge`` message.

        Falls back to deterministic canned text when the model is missing or
        fails; outbound messages are attempted once so a slow model does not
        stall a run over many employees.
        """

        tone = get_tone_policy(context.tone_preset)
        seed = context.participant_id or context.employee_name
        canned = tone.truncate(
            static_message(kind, context.agent_type, context.employee_name, seed, context.topics)
        )
        if self.model is None:
            return GeneratedReply(content=canned, warning=MODEL_NOT_CONFIGURED)

        system_prompt = self.prompts.outbound_prompt(
            tone,
            context.agent_type,
            kind,
            context.employee_name,
            context.employee_title,
            context.department,
            topics=context.topics,
        )
        history = [entry.as_message() for entry in context.history]
        history.append({"role": "user", "content": _OUTBOUND_REQUEST.get(kind, _OUTBOUND_REQUEST["opening"])})
        text, attempts = self._complete(system_prompt, history, tone.max_tokens, 1)
        if text is None:
            return GeneratedReply(content=canned, attempts=attempts)
        return GeneratedReply(content=tone.truncate(text), used_model=True, attempts=attempts)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        max_tokens: int,
        max_attempts: int,
    ) -> tuple[str | None, int]:
        """Call the model up to ``max_attempts`` times.

        Returns the accepted text (or ``None`` once attempts are exhausted or
        the reply fails the outbound check) and the number of attempts made.
        """

        assert self.model is not None
        for attempt in range(1, max_attempts + 1):
            try:
                text = self.model.complete(system_prompt, history, max_tokens, self.timeout)
            except Exception as exc:
                logger.warning(
                    "Model call failed (attempt %s/%s): %s", attempt, max_attempts, exc,
                    extra={"attempt": attempt},
                )
                if attempt >= max_attempts:
                    logger.error("Model call failed after %s attempts", max_attempts)
                    return None, attempt
                delay = 2**attempt * 0.5
                logger.info("Retrying model call in %.1fs", delay)
                self._sleep(delay)
                continue
            check = check_agent_message(text)
            if not check.allowed:
                logger.warning(
                    "Discarding model reply: %s",
                    ", ".join(v.type for v in check.violations),
                )
                return None, attempt
            return text, attempt
        return None, max_attempts
