import pathlib
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.agents import schemas as agent_schemas
from app.agents.directory import Employee, InMemoryEmployeeDirectory
from app.agents.generator import ResponseGenerator
from app.agents.scheduler import Scheduler
from app.agents.service import AgentInstanceService, InMemoryAgentInstanceRepository
from app.app_logging import init_logging
from app.conversations.orchestrator import RunOrchestrator
from app.conversations.repository import InMemoryConversationRepository
from app.conversations.service import ConversationService
from app.core.audit import InMemoryAuditSink
from app.core.auth import AuthContext
from app.core.errors import ModelUnavailableError
from app.core.locks import KeyedLockRegistry
from app.core.settings import OrchestratorSettings
from app.security import create_access_token, reset_jwt_settings_cache

COMPANY = "acme"
OTHER_COMPANY = "globex"
START = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)  # a Monday


class FakeModel:
    """Scripted language model: pops queued replies, raising queued exceptions."""

    def __init__(self, replies=None, default: str = "Thanks for sharing! What's one thing that went well?"):
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict] = []

    def complete(self, system_prompt, history, max_tokens, timeout):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": list(history),
                "max_tokens": max_tokens,
                "timeout": timeout,
            }
        )
        if self.replies:
            reply = self.replies.pop(0)
        else:
            reply = self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


def failing(message: str = "upstream timeout") -> ModelUnavailableError:
    return ModelUnavailableError(message)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def actor(user_id: str = "hr-1", company_id: str = COMPANY, role: str = "admin") -> AuthContext:
    return AuthContext(
        user_id=user_id,
        company_id=company_id,
        role=role,
        is_admin=role in {"owner", "admin", "hr_manager"},
    )


def default_employees() -> list[Employee]:
    return [
        Employee("emp-1", COMPANY, "Alice Smith", "Engineer", "Engineering", "team-a"),
        Employee("emp-2", COMPANY, "Bob Jones", "Designer", "Product", "team-b"),
        Employee("emp-3", COMPANY, "Carol Gone", is_active=False, team_id="team-a"),
        Employee("emp-9", OTHER_COMPANY, "Xavier Other"),
    ]


@dataclass
class Harness:
    """In-memory wiring of the orchestrator used across service tests."""

    model: FakeModel
    clock: Clock
    settings: OrchestratorSettings
    directory: InMemoryEmployeeDirectory
    instances: InMemoryAgentInstanceRepository
    conversations: InMemoryConversationRepository
    audit: InMemoryAuditSink
    locks: KeyedLockRegistry
    generator: ResponseGenerator
    orchestrator: RunOrchestrator
    instance_service: AgentInstanceService
    conversation_service: ConversationService
    sleeps: list[float] = field(default_factory=list)
    admin: AuthContext = field(default_factory=actor)

    def create_instance(self, template_id: str = "tpl-pulse-check", **config) -> agent_schemas.AgentInstanceDetail:
        payload = {"template_id": template_id, "name": "Weekly pulse", "config": config}
        return self.instance_service.create_instance(payload, self.admin)

    def open_conversation(self, employee_id: str = "emp-1", **config):
        """Run an instance for one employee and return ``(instance, conversation)``."""

        instance = self.create_instance(**config)
        self.orchestrator.trigger_run(instance.id, "manual", [employee_id], self.admin)
        conversation = self.conversations.list_for_participant(COMPANY, employee_id)[0]
        return instance, conversation


def build_harness(model: FakeModel | None = None, *, configured: bool = True, **overrides) -> Harness:
    model = model or FakeModel()
    clock = Clock()
    settings = OrchestratorSettings(**overrides)
    sleeps: list[float] = []
    directory = InMemoryEmployeeDirectory(default_employees())
    instances = InMemoryAgentInstanceRepository()
    conversations = InMemoryConversationRepository()
    audit = InMemoryAuditSink()
    locks = KeyedLockRegistry()
    scheduler = Scheduler(settings.default_timezone)
    generator = ResponseGenerator(
        model if configured else None,
        max_attempts=settings.llm_max_attempts,
        timeout=settings.llm_timeout_seconds,
        sleep=sleeps.append,
    )
    orchestrator = RunOrchestrator(
        instances,
        conversations,
        directory,
        generator,
        audit,
        locks=locks,
        scheduler=scheduler,
        settings=settings,
        clock=clock,
        lock_timeout=settings.lock_timeout_seconds,
    )
    return Harness(
        model=model,
        clock=clock,
        settings=settings,
        directory=directory,
        instances=instances,
        conversations=conversations,
        audit=audit,
        locks=locks,
        generator=generator,
        orchestrator=orchestrator,
        instance_service=AgentInstanceService(instances, audit, scheduler, clock=clock),
        conversation_service=ConversationService(
            conversations, audit, locks, clock=clock, lock_timeout=settings.lock_timeout_seconds
        ),
        sleeps=sleeps,
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configure bearer token validation for the API and middleware."""

    monkeypatch.setenv("AUTH_TOKEN_SECRET", "secret-key")
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", "people-ops")
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", "auth.people-ops")
    monkeypatch.setenv("AUTH_TOKEN_ALGORITHM", "HS256")
    reset_jwt_settings_cache()
    yield
    reset_jwt_settings_cache()


def auth_header(user_id: str, company_id: str = COMPANY, role: str = "employee") -> dict[str, str]:
    token, _ = create_access_token(user_id, company_id, role)
    return {"Authorization": f"Bearer {token}"}


@dataclass
class ApiContext:
    client: object
    harness: Harness

    def admin(self, company_id: str = COMPANY) -> dict[str, str]:
        return auth_header("hr-1", company_id, "admin")

    def employee(self, user_id: str = "emp-1", company_id: str = COMPANY) -> dict[str, str]:
        return auth_header(user_id, company_id, "employee")


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch, tmp_path, token_env) -> ApiContext:
    """A TestClient bound to an in-memory runtime."""

    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    from fastapi.testclient import TestClient

    from app.main import app
    from app.routers.context import limiter
    from app.runtime import Runtime, set_runtime

    harness = build_harness()
    runtime = Runtime(
        harness.settings,
        harness.generator,
        locks=harness.locks,
        directory=harness.directory,
        instance_repository=harness.instances,
        conversation_repository=harness.conversations,
        audit=harness.audit,
        clock=harness.clock,
    )
    set_runtime(runtime)
    limiter.reset()
    with TestClient(app) as client:
        yield ApiContext(client=client, harness=harness)
    set_runtime(None)


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
