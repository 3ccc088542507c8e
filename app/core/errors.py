"""Error taxonomy shared by the orchestrator services and HTTP routers."""

from __future__ import annotations

__all__ = [
    "ConversationClosedError",
    "ConversationEscalatedError",
    "InstanceNotActiveError",
    "InvalidTransitionError",
    "ModelUnavailableError",
    "NotFoundError",
    "OrchestratorError",
    "PermissionDeniedError",
    "StorageError",
    "ValidationError",
]


class OrchestratorError(RuntimeError):
    """Base class for errors reported to orchestrator callers."""


class ValidationError(OrchestratorError):
    """Raised when a request is malformed or misses required fields."""


class PermissionDeniedError(OrchestratorError):
    """Raised when the caller's role or identity does not allow the action."""


class NotFoundError(OrchestratorError):
    """Raised when an instance, conversation or template cannot be located."""


class InstanceNotActiveError(OrchestratorError):
    """Raised when a run is triggered for an agent instance that is not active."""


class ConversationClosedError(OrchestratorError):
    """Raised when a message is sent to a closed conversation."""


class ConversationEscalatedError(OrchestratorError):
    """Raised when an escalated conversation would receive an automated reply.

    Escalated conversations wait for human contact.
    """


class InvalidTransitionError(OrchestratorError):
    """Raised when a conversation status change is not permitted."""

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Invalid transition from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class ModelUnavailableError(OrchestratorError):
    """Raised by language-model adapters; absorbed by the response generator."""


class StorageError(OrchestratorError):
    """Raised when the persistence collaborator fails."""
