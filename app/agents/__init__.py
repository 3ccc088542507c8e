"""Agent templates, instance administration and reply generation."""

from . import schemas
from .generator import GeneratedReply, GenerationContext, HistoryEntry, ResponseGenerator
from .safety import DEFAULT_KEYWORD_TABLE, KeywordTable, SafetyClassifier, SafetyResult
from .scheduler import Scheduler, next_run_at
from .service import AgentInstanceService, InMemoryAgentInstanceRepository
from .tone import TonePolicy, get_tone_policy

__all__ = [
    "AgentInstanceService",
    "DEFAULT_KEYWORD_TABLE",
    "GeneratedReply",
    "GenerationContext",
    "HistoryEntry",
    "InMemoryAgentInstanceRepository",
    "KeywordTable",
    "ResponseGenerator",
    "SafetyClassifier",
    "SafetyResult",
    "Scheduler",
    "TonePolicy",
    "get_tone_policy",
    "next_run_at",
    "schemas",
]
