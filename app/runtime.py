"""Process-wide wiring of repositories, generator and locks.

One :class:`Runtime` is shared by the HTTP routers and the polling tool. The
lock registry and the response generator live on it so every request in the
process serializes on the same per-conversation locks.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from .agents.directory import EmployeeDirectory, InMemoryEmployeeDirectory, PostgresEmployeeDirectory
from .agents.generator import ResponseGenerator
from .agents.llm import OpenAIChatModel
from .agents.providers import ProviderRegistry
from .agents.safety import SafetyClassifier
from .agents.scheduler import Scheduler
from .agents.service import (
    AgentInstanceRepository,
    AgentInstanceService,
    InMemoryAgentInstanceRepository,
    PostgresAgentInstanceRepository,
)
from .conversations.orchestrator import RunOrchestrator
from .conversations.repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    PostgresConversationRepository,
)
from .conversations.service import ConversationService
from .core.audit import AuditSink, InMemoryAuditSink, PostgresAuditSink
from .core.company_context import get_current_company_id
from .core.db import apply_company_settings, connection_from_dsn
from .core.locks import KeyedLockRegistry
from .core.settings import OrchestratorSettings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    instances: AgentInstanceService
    conversations: ConversationService
    orchestrator: RunOrchestrator


def build_generator(
    settings: OrchestratorSettings, registry: ProviderRegistry | None = None
) -> ResponseGenerator:
    """Create the response generator; no model client is built without a credential."""

    registry = registry or ProviderRegistry()
    credentials = registry.get_credentials(settings.llm_provider)
    model = None
    if credentials.configured:
        model = OpenAIChatModel(credentials, settings.llm_model)
    else:
        logger.warning(
            "No credential for provider %s; replies will use fallback text", settings.llm_provider
        )
    return ResponseGenerator(
        model,
        max_attempts=settings.llm_max_attempts,
        timeout=settings.llm_timeout_seconds,
    )


class Runtime:
    """Hand out service objects backed by PostgreSQL or by in-memory stores."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        generator: ResponseGenerator,
        *,
        locks: KeyedLockRegistry | None = None,
        directory: EmployeeDirectory | None = None,
        instance_repository: AgentInstanceRepository | None = None,
        conversation_repository: ConversationRepository | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.generator = generator
        self.locks = locks or KeyedLockRegistry()
        self.classifier: SafetyClassifier = generator.classifier
        self.scheduler = Scheduler(settings.default_timezone)
        self.clock = clock
        self.use_database = bool(settings.database_url) and instance_repository is None
        self.directory = directory or InMemoryEmployeeDirectory()
        self.instance_repository = instance_repository or InMemoryAgentInstanceRepository()
        self.conversation_repository = conversation_repository or InMemoryConversationRepository()
        self.audit = audit or InMemoryAuditSink()
        # A non-positive setting waits for the lock indefinitely.
        self.lock_timeout = (
            settings.lock_timeout_seconds if settings.lock_timeout_seconds > 0 else None
        )

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings | None = None) -> "Runtime":
        settings = settings or OrchestratorSettings.from_env()
        return cls(settings, build_generator(settings))

    def _services(
        self,
        instances: AgentInstanceRepository,
        conversations: ConversationRepository,
        directory: EmployeeDirectory,
        audit: AuditSink,
    ) -> Services:
        return Services(
            instances=AgentInstanceService(instances, audit, self.scheduler, clock=self.clock),
            conversations=ConversationService(
                conversations,
                audit,
                self.locks,
                clock=self.clock,
                lock_timeout=self.lock_timeout,
            ),
            orchestrator=RunOrchestrator(
                instances,
                conversations,
                directory,
                self.generator,
                audit,
                classifier=self.classifier,
                locks=self.locks,
                scheduler=self.scheduler,
                settings=self.settings,
                clock=self.clock,
                lock_timeout=self.lock_timeout,
            ),
        )

    @contextmanager
    def open_services(self) -> Iterator[Services]:
        if not self.use_database:
            yield self._services(
                self.instance_repository,
                self.conversation_repository,
                self.directory,
                self.audit,
            )
            return

        with connection_from_dsn(self.settings.database_url, autocommit=True) as conn:
            company_id = get_current_company_id()
            if company_id:
                apply_company_settings(conn, company_id)
            yield self._services(
                PostgresAgentInstanceRepository(conn),
                PostgresConversationRepository(conn),
                PostgresEmployeeDirectory(conn),
                PostgresAuditSink(conn),
            )


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime.from_settings()
        return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Replace the process runtime; ``None`` rebuilds it from the environment on next use."""

    global _runtime
    with _runtime_lock:
        _runtime = runtime
