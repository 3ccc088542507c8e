"""Keyword based safety classification for employee and agent messages."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

ESCALATION_CATEGORIES = ("safety", "harassment", "discrimination", "urgent")


def _check_category(category: str) -> None:
    if category not in ESCALATION_CATEGORIES:
        raise ValueError(f"Unknown escalation category: {category}")


@dataclass(frozen=True)
class KeywordTable:
    """Versioned, immutable list of trigger terms, each tagged with a category.

    Terms are checked in list order and the first term found in the text
    wins, whatever its category.
    """

    version: str
    entries: tuple[tuple[str, str], ...]

    @classmethod
    def from_entries(cls, version: str, entries: Iterable[tuple[str, str]]) -> "KeywordTable":
        normalized = []
        for term, category in entries:
            _check_category(category)
            term = term.strip().lower()
            if term:
                normalized.append((term, category))
        return cls(version=version, entries=tuple(normalized))

    @classmethod
    def from_mapping(cls, version: str, mapping: Mapping[str, Iterable[str]]) -> "KeywordTable":
        """Build a table from ``category -> terms``; categories keep mapping order."""

        for category in mapping:
            _check_category(category)
        return cls.from_entries(
            version, ((term, category) for category, terms in mapping.items() for term in terms)
        )

    def terms(self) -> list[str]:
        return [term for term, _ in self.entries]


DEFAULT_KEYWORD_TABLE = KeywordTable.from_entries(
    "2024-02",
    (
        ("suicide", "safety"),
        ("kill myself", "safety"),
        ("end my life", "safety"),
        ("self-harm", "safety"),
        ("self harm", "safety"),
        ("harming myself", "safety"),
        ("hurt myself", "safety"),
        ("want to die", "safety"),
        ("don't want to live", "safety"),
        ("harassment", "harassment"),
        ("harassed", "harassment"),
        ("harassing", "harassment"),
        ("harass", "harassment"),
        ("bullying", "harassment"),
        ("bullied", "harassment"),
        ("discriminate", "discrimination"),
        ("discrimination", "discrimination"),
        ("discriminated", "discrimination"),
        ("discriminating", "discrimination"),
        ("hostile work", "harassment"),
        ("unsafe", "safety"),
        ("assault", "safety"),
        ("threatened", "harassment"),
        ("abuse", "safety"),
    ),
)


@dataclass(frozen=True)
class SafetyResult:
    flagged: bool
    category: str | None = None
    matched_term: str | None = None

    @property
    def severity(self) -> str | None:
        if not self.flagged:
            return None
        return "critical" if self.category == "safety" else "high"


class SafetyClassifier:
    """Classify text against a :class:`KeywordTable`.

    The classifier is pure: it holds no state besides the table and never
    performs I/O, so one instance can be shared across threads.
    """

    def __init__(self, table: KeywordTable = DEFAULT_KEYWORD_TABLE):
        self.table = table

    def classify(self, text: str | None) -> SafetyResult:
        lowered = (text or "").lower()
        if not lowered:
            return SafetyResult(flagged=False)
        for term, category in self.table.entries:
            if term in lowered:
                return SafetyResult(flagged=True, category=category, matched_term=term)
        return SafetyResult(flagged=False)


EMPATHY_RESPONSES: Mapping[str, str] = {
    "safety": (
        "I hear you, and I want you to know that your wellbeing matters. I've flagged this "
        "for our HR team who will reach out to support you directly. You're not alone."
    ),
    "harassment": (
        "Thank you for trusting me with this. What you're describing sounds serious and you "
        "deserve support. I've flagged this for HR who will follow up with you confidentially."
    ),
    "discrimination": (
        "I appreciate you sharing this. Discrimination is never okay, and this deserves proper "
        "attention. I've flagged this for our HR team to follow up with you directly and "
        "confidentially."
    ),
    "urgent": (
        "Thank you for sharing. This seems important and I've flagged it for our HR team to "
        "follow up with you personally."
    ),
}


def empathy_response(category: str | None) -> str:
    return EMPATHY_RESPONSES.get(category or "urgent", EMPATHY_RESPONSES["urgent"])


# Redaction ----------------------------------------------------------------

_SSN_RE = re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b")
_CARD_RE = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_ACCOUNT_RE = re.compile(r"\b(account|routing)[\s#:]+\d{6,17}\b", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask SSNs, card numbers and account numbers in ``text``."""

    redacted = _CARD_RE.sub("[CC REDACTED]", text)
    redacted = _SSN_RE.sub("[SSN REDACTED]", redacted)
    return _ACCOUNT_RE.sub("[ACCOUNT REDACTED]", redacted)


def escalation_description(content: str, result: SafetyResult, limit: int = 200) -> str:
    """Build the human-facing escalation summary: redacted excerpt plus matched term."""

    excerpt = redact(" ".join(content.split()))
    suffix = f' (matched "{result.matched_term}")' if result.matched_term else ""
    room = max(limit - len(suffix), 0)
    if len(excerpt) > room:
        excerpt = excerpt[: max(room - 3, 0)] + "..."
    return (excerpt + suffix)[:limit]


# Outbound checks ----------------------------------------------------------


@dataclass(frozen=True)
class PolicyViolation:
    type: str
    severity: str
    description: str


@dataclass(frozen=True)
class AgentMessageCheck:
    violations: list[PolicyViolation] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not any(v.severity in {"high", "critical"} for v in self.violations)


_SENSITIVE_REQUESTS = (
    (re.compile(r"what('s| is) your (ssn|social security)", re.IGNORECASE), "ssn_request"),
    (re.compile(r"bank (account|routing|details)", re.IGNORECASE), "bank_request"),
    (re.compile(r"credit card|card number", re.IGNORECASE), "card_request"),
    (re.compile(r"medical (history|condition|diagnosis)", re.IGNORECASE), "medical_request"),
    (re.compile(r"immigration (status|visa)", re.IGNORECASE), "immigration_request"),
)

_MANIPULATION_PATTERNS = (
    re.compile(r"you (have to|must|need to) (tell|share|respond)", re.IGNORECASE),
    re.compile(r"why (won't|don't) you (answer|respond|tell)", re.IGNORECASE),
    re.compile(r"disappointed (in|with) you", re.IGNORECASE),
    re.compile(r"everyone else (is|has)", re.IGNORECASE),
)


def check_agent_message(content: str) -> AgentMessageCheck:
    """Inspect an outbound agent message for requests of sensitive data.

    Manipulative phrasing is reported at medium severity and does not block
    the message; sensitive data requests do.
    """

    violations: list[PolicyViolation] = []
    for pattern, kind in _SENSITIVE_REQUESTS:
        if pattern.search(content):
            subject = kind.removesuffix("_request")
            violations.append(
                PolicyViolation(kind, "high", f"Agent asked for {subject} data")
            )
    for pattern in _MANIPULATION_PATTERNS:
        if pattern.search(content):
            violations.append(
                PolicyViolation(
                    "manipulation_attempt",
                    "medium",
                    "Message contains potentially manipulative language",
                )
            )
            break
    return AgentMessageCheck(violations=violations)
