"""Service layer for agent templates, company instances, schedules and runs."""
from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import psycopg
import pydantic
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.audit import AuditEvent, AuditSink
from ..core.auth import AuthContext
from ..core.db import storage_call
from ..core.errors import NotFoundError, PermissionDeniedError, ValidationError
from . import schemas
from .prompts import TEMPLATE_SEEDS
from .scheduler import Scheduler


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentInstanceRepository(Protocol):
    """Persistence abstraction used by :class:`AgentInstanceService` and the run orchestrator."""

    def list_templates(self) -> List[schemas.AgentTemplate]: ...

    def get_template(self, template_id: str) -> Optional[schemas.AgentTemplate]: ...

    def create_instance(self, instance: schemas.AgentInstance, schedule: schemas.Schedule) -> None: ...

    def get_instance(self, instance_id: str) -> Optional[schemas.AgentInstance]: ...

    def list_instances(self, company_id: str) -> List[schemas.AgentInstance]: ...

    def save_instance(self, instance: schemas.AgentInstance) -> None: ...

    def get_schedule(self, instance_id: str) -> Optional[schemas.Schedule]: ...

    def save_schedule(self, schedule: schemas.Schedule) -> None: ...

    def list_due_schedules(self, now: datetime) -> List[schemas.Schedule]: ...

    def create_run(self, run: schemas.RunRecord) -> None: ...

    def save_run(self, run: schemas.RunRecord) -> None: ...

    def list_runs(self, instance_id: str, limit: int = 20) -> List[schemas.RunRecord]: ...


class AgentInstanceService:
    """Administration of company agent instances.

    Reads are allowed for any member of the owning company; every mutation
    requires an admin-equivalent actor.
    """

    def __init__(
        self,
        repository: AgentInstanceRepository,
        audit: AuditSink,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._scheduler = scheduler or Scheduler()
        self._clock = clock

    # ------------------------------------------------------------------
    # Templates

    def list_templates(self) -> List[schemas.AgentTemplate]:
        return self._repository.list_templates()

    # ------------------------------------------------------------------
    # Instances

    def create_instance(
        self, payload: schemas.AgentInstanceCreate | Mapping[str, Any], actor: AuthContext
    ) -> schemas.AgentInstanceDetail:
        _require_admin(actor)
        data = _parse(schemas.AgentInstanceCreate, payload)
        template = self._repository.get_template(data.template_id)
        if template is None:
            raise ValidationError(f"Unknown agent template {data.template_id}")
        tz_name = _validate_timezone(data.schedule.timezone or self._scheduler.default_timezone)

        now = self._clock()
        instance = schemas.AgentInstance(
            id=str(uuid4()),
            company_id=actor.company_id,
            template_id=template.id,
            name=data.name.strip(),
            created_by=actor.user_id,
            config=data.config,
            status="active",
            created_at=now,
            updated_at=now,
        )
        schedule = schemas.Schedule(
            agent_instance_id=instance.id,
            cadence=data.schedule.cadence,
            cron_expression=data.schedule.cron_expression,
            timezone=tz_name,
            next_run_at=self._scheduler.next_run_at(data.schedule.cadence, now, tz_name),
            is_active=data.schedule.is_active,
        )
        self._repository.create_instance(instance, schedule)
        self._audit.record(
            AuditEvent(
                action="agent_instance_created",
                target_type="agent_instance",
                target_id=instance.id,
                company_id=actor.company_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                after_state={"name": instance.name, "template_id": template.id},
            )
        )
        return self.get_instance(instance.id, actor)

    def get_instance(self, instance_id: str, actor: AuthContext) -> schemas.AgentInstanceDetail:
        instance = self._load(instance_id, actor)
        return schemas.AgentInstanceDetail(
            **instance.model_dump(),
            template=self._repository.get_template(instance.template_id),
            schedule=self._repository.get_schedule(instance.id),
        )

    def list_instances(self, actor: AuthContext) -> List[schemas.AgentInstance]:
        return self._repository.list_instances(actor.company_id)

    def update_instance(
        self,
        instance_id: str,
        payload: schemas.AgentInstanceUpdate | Mapping[str, Any],
        actor: AuthContext,
    ) -> schemas.AgentInstanceDetail:
        _require_admin(actor)
        data = _parse(schemas.AgentInstanceUpdate, payload)
        existing = self._load(instance_id, actor)
        changes: Dict[str, Any] = data.model_dump(exclude_none=True, exclude={"config"})
        if data.config is not None:
            changes["config"] = data.config
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        updated = existing.model_copy(update={**changes, "updated_at": self._clock()})
        self._repository.save_instance(updated)
        self._audit.record(
            AuditEvent(
                action="agent_instance_updated",
                target_type="agent_instance",
                target_id=instance_id,
                company_id=actor.company_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                before_state={"name": existing.name, "status": existing.status},
                after_state={"name": updated.name, "status": updated.status},
            )
        )
        return self.get_instance(instance_id, actor)

    def archive_instance(self, instance_id: str, actor: AuthContext) -> schemas.AgentInstanceDetail:
        _require_admin(actor)
        existing = self._load(instance_id, actor)
        if existing.status != "archived":
            self._repository.save_instance(
                existing.model_copy(update={"status": "archived", "updated_at": self._clock()})
            )
            schedule = self._repository.get_schedule(instance_id)
            if schedule is not None and schedule.is_active:
                self._repository.save_schedule(schedule.model_copy(update={"is_active": False}))
            self._audit.record(
                AuditEvent(
                    action="agent_instance_archived",
                    target_type="agent_instance",
                    target_id=instance_id,
                    company_id=actor.company_id,
                    actor_id=actor.user_id,
                    actor_role=actor.role,
                    before_state={"status": existing.status},
                    after_state={"status": "archived"},
                )
            )
        return self.get_instance(instance_id, actor)

    # ------------------------------------------------------------------
    # Schedules & runs

    def update_schedule(
        self,
        instance_id: str,
        payload: schemas.ScheduleUpdate | Mapping[str, Any],
        actor: AuthContext,
    ) -> schemas.Schedule:
        _require_admin(actor)
        data = _parse(schemas.ScheduleUpdate, payload)
        instance = self._load(instance_id, actor)
        current = self._repository.get_schedule(instance.id) or schemas.Schedule(
            agent_instance_id=instance.id, timezone=self._scheduler.default_timezone
        )
        changes = data.model_dump(exclude_none=True)
        if "timezone" in changes:
            changes["timezone"] = _validate_timezone(changes["timezone"])
        schedule = current.model_copy(update=changes)
        if {"cadence", "timezone", "is_active"} & changes.keys():
            next_run = None
            if schedule.is_active:
                next_run = self._scheduler.next_run_at(
                    schedule.cadence, self._clock(), schedule.timezone
                )
            schedule = schedule.model_copy(update={"next_run_at": next_run})
        self._repository.save_schedule(schedule)
        return schedule

    def list_runs(self, instance_id: str, actor: AuthContext, limit: int = 20) -> List[schemas.RunRecord]:
        instance = self._load(instance_id, actor)
        return self._repository.list_runs(instance.id, limit=limit)

    # ------------------------------------------------------------------

    def _load(self, instance_id: str, actor: AuthContext) -> schemas.AgentInstance:
        instance = self._repository.get_instance(instance_id)
        if instance is None or instance.company_id != actor.company_id:
            raise NotFoundError(f"Agent instance {instance_id} not found")
        return instance


def _require_admin(actor: AuthContext) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError("Admin role required")


def _parse(model: type[pydantic.BaseModel], payload: Any):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


def _validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone {name!r}") from exc
    return name


# ---------------------------------------------------------------------------
# Postgres repository implementation


class PostgresAgentInstanceRepository:
    """PostgreSQL-backed instance repository."""

    _INSTANCE_COLUMNS = (
        "id, company_id, template_id, name, created_by, config, status, created_at, updated_at"
    )
    _SCHEDULE_COLUMNS = (
        "agent_instance_id, cadence, cron_expression, timezone, next_run_at, last_run_at, is_active"
    )
    _RUN_COLUMNS = (
        "id, agent_instance_id, trigger_kind, status, started_at, finished_at, "
        "messages_sent, conversations_touched, error_message"
    )

    def __init__(self, connection: psycopg.Connection):
        self._conn = connection

    def cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    @storage_call
    def list_templates(self) -> List[schemas.AgentTemplate]:
        with self.cursor() as cur:
            cur.execute(
                "SELECT id, slug, name, agent_type, description FROM agent_templates ORDER BY name"
            )
            return [schemas.AgentTemplate(**row) for row in cur.fetchall()]

    @storage_call
    def get_template(self, template_id: str) -> Optional[schemas.AgentTemplate]:
        with self.cursor() as cur:
            cur.execute(
                "SELECT id, slug, name, agent_type, description FROM agent_templates "
                "WHERE id = %s OR slug = %s",
                (template_id, template_id),
            )
            row = cur.fetchone()
        return schemas.AgentTemplate(**row) if row else None

    @storage_call
    def create_instance(self, instance: schemas.AgentInstance, schedule: schemas.Schedule) -> None:
        with self.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO agent_instances ({self._INSTANCE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    instance.id,
                    instance.company_id,
                    instance.template_id,
                    instance.name,
                    instance.created_by,
                    Jsonb(instance.config.model_dump()),
                    instance.status,
                    instance.created_at,
                    instance.updated_at,
                ),
            )
        self.save_schedule(schedule)

    @storage_call
    def get_instance(self, instance_id: str) -> Optional[schemas.AgentInstance]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self._INSTANCE_COLUMNS} FROM agent_instances WHERE id = %s",
                (instance_id,),
            )
            row = cur.fetchone()
        return schemas.AgentInstance(**row) if row else None

    @storage_call
    def list_instances(self, company_id: str) -> List[schemas.AgentInstance]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self._INSTANCE_COLUMNS} FROM agent_instances "
                "WHERE company_id = %s ORDER BY created_at DESC",
                (company_id,),
            )
            return [schemas.AgentInstance(**row) for row in cur.fetchall()]

    @storage_call
    def save_instance(self, instance: schemas.AgentInstance) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE agent_instances
                   SET name = %s, config = %s, status = %s, updated_at = %s
                 WHERE id = %s
                """,
                (
                    instance.name,
                    Jsonb(instance.config.model_dump()),
                    instance.status,
                    instance.updated_at,
                    instance.id,
                ),
            )

    @storage_call
    def get_schedule(self, instance_id: str) -> Optional[schemas.Schedule]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self._SCHEDULE_COLUMNS} FROM agent_schedules WHERE agent_instance_id = %s",
                (instance_id,),
            )
            row = cur.fetchone()
        return schemas.Schedule(**row) if row else None

    @storage_call
    def save_schedule(self, schedule: schemas.Schedule) -> None:
        with self.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO agent_schedules ({self._SCHEDULE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (agent_instance_id) DO UPDATE SET
                    cadence = EXCLUDED.cadence,
                    cron_expression = EXCLUDED.cron_expression,
                    timezone = EXCLUDED.timezone,
                    next_run_at = EXCLUDED.next_run_at,
                    last_run_at = EXCLUDED.last_run_at,
                    is_active = EXCLUDED.is_active
                """,
                (
                    schedule.agent_instance_id,
                    schedule.cadence,
                    schedule.cron_expression,
                    schedule.timezone,
                    schedule.next_run_at,
                    schedule.last_run_at,
                    schedule.is_active,
                ),
            )

    @storage_call
    def list_due_schedules(self, now: datetime) -> List[schemas.Schedule]:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT s.agent_instance_id, s.cadence, s.cron_expression, s.timezone,
                       s.next_run_at, s.last_run_at, s.is_active
                  FROM agent_schedules s
                  JOIN agent_instances i ON i.id = s.agent_instance_id
                 WHERE s.is_active AND i.status = 'active' AND s.next_run_at <= %s
                 ORDER BY s.next_run_at
                """,
                (now,),
            )
            return [schemas.Schedule(**row) for row in cur.fetchall()]

    @storage_call
    def create_run(self, run: schemas.RunRecord) -> None:
        with self.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO agent_runs ({self._RUN_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    run.id,
                    run.agent_instance_id,
                    run.trigger_kind,
                    run.status,
                    run.started_at,
                    run.finished_at,
                    run.messages_sent,
                    run.conversations_touched,
                    run.error_message,
                ),
            )

    @storage_call
    def save_run(self, run: schemas.RunRecord) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE agent_runs
                   SET status = %s, finished_at = %s, messages_sent = %s,
                       conversations_touched = %s, error_message = %s
                 WHERE id = %s
                """,
                (
                    run.status,
                    run.finished_at,
                    run.messages_sent,
                    run.conversations_touched,
                    run.error_message,
                    run.id,
                ),
            )

    @storage_call
    def list_runs(self, instance_id: str, limit: int = 20) -> List[schemas.RunRecord]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self._RUN_COLUMNS} FROM agent_runs WHERE agent_instance_id = %s "
                "ORDER BY started_at DESC LIMIT %s",
                (instance_id, limit),
            )
            return [schemas.RunRecord(**row) for row in cur.fetchall()]


@storage_call
def seed_templates(connection: psycopg.Connection) -> int:
    """Insert the system templates, leaving existing rows untouched."""

    inserted = 0
    with connection.cursor() as cur:
        for template in TEMPLATE_SEEDS:
            cur.execute(
                """
                INSERT INTO agent_templates (id, slug, name, agent_type, description)
                VALUES (%(id)s, %(slug)s, %(name)s, %(agent_type)s, %(description)s)
                ON CONFLICT (id) DO NOTHING
                """,
                template,
            )
            inserted += cur.rowcount
    return inserted


# ---------------------------------------------------------------------------
# In-memory repository (useful for testing and sandbox environments)


class InMemoryAgentInstanceRepository:
    def __init__(self, templates: Optional[List[schemas.AgentTemplate]] = None) -> None:
        seeds = templates if templates is not None else [
            schemas.AgentTemplate(**row) for row in TEMPLATE_SEEDS
        ]
        self._lock = threading.Lock()
        self._templates: Dict[str, schemas.AgentTemplate] = {t.id: t for t in seeds}
        self._instances: Dict[str, schemas.AgentInstance] = {}
        self._schedules: Dict[str, schemas.Schedule] = {}
        self._runs: Dict[str, schemas.RunRecord] = {}

    def list_templates(self) -> List[schemas.AgentTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.name)

    def get_template(self, template_id: str) -> Optional[schemas.AgentTemplate]:
        template = self._templates.get(template_id)
        if template is None:
            template = next((t for t in self._templates.values() if t.slug == template_id), None)
        return template

    def create_instance(self, instance: schemas.AgentInstance, schedule: schemas.Schedule) -> None:
        with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)
            self._schedules[instance.id] = schedule.model_copy()

    def get_instance(self, instance_id: str) -> Optional[schemas.AgentInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def list_instances(self, company_id: str) -> List[schemas.AgentInstance]:
        with self._lock:
            items = [i.model_copy(deep=True) for i in self._instances.values() if i.company_id == company_id]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items

    def save_instance(self, instance: schemas.AgentInstance) -> None:
        with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)

    def get_schedule(self, instance_id: str) -> Optional[schemas.Schedule]:
        with self._lock:
            schedule = self._schedules.get(instance_id)
            return schedule.model_copy() if schedule else None

    def save_schedule(self, schedule: schemas.Schedule) -> None:
        with self._lock:
            self._schedules[schedule.agent_instance_id] = schedule.model_copy()

    def list_due_schedules(self, now: datetime) -> List[schemas.Schedule]:
        with self._lock:
            active_ids = {i.id for i in self._instances.values() if i.status == "active"}
            candidates = [
                s.model_copy() for s in self._schedules.values() if s.agent_instance_id in active_ids
            ]
        return Scheduler().due(candidates, now)

    def create_run(self, run: schemas.RunRecord) -> None:
        with self._lock:
            self._runs[run.id] = run.model_copy()

    def save_run(self, run: schemas.RunRecord) -> None:
        with self._lock:
            self._runs[run.id] = run.model_copy()

    def list_runs(self, instance_id: str, limit: int = 20) -> List[schemas.RunRecord]:
        with self._lock:
            runs = [r.model_copy() for r in self._runs.values() if r.agent_instance_id == instance_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]
