"""Domain results returned by the run orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from .schemas import Message


@dataclass
class EmployeeOutcome:
    """Why one employee did not receive a message during a run."""

    employee_id: str
    reason: str
    conversation_id: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RunResult:
    run_id: str
    messages_sent: int = 0
    conversations_touched: int = 0
    failures: list[EmployeeOutcome] = field(default_factory=list)
    skipped: list[EmployeeOutcome] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "messages_sent": self.messages_sent,
            "conversations_touched": self.conversations_touched,
            "failures": [f.as_dict() for f in self.failures],
            "skipped": [s.as_dict() for s in self.skipped],
        }


@dataclass
class ReplyResult:
    message: Message
    escalated: bool
    employee_message: Message
    warning: str | None = None
