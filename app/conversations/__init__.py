"""Conversation lifecycle, persistence and run orchestration."""

from . import schemas
from .models import EmployeeOutcome, ReplyResult, RunResult
from .orchestrator import RunOrchestrator
from .service import ConversationService

__all__ = [
    "ConversationService",
    "EmployeeOutcome",
    "ReplyResult",
    "RunOrchestrator",
    "RunResult",
    "schemas",
]
