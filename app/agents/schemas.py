"""Pydantic schemas for agent templates, instances, schedules and runs."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

AgentType = Literal["pulse_check", "onboarding", "exit_interview", "manager_coaching"]
TonePreset = Literal["poke_lite", "friendly_peer", "professional_hr", "witty_safe"]
AudienceType = Literal["company_wide", "team", "individual"]
Cadence = Literal["once", "daily", "weekly", "biweekly", "monthly"]
InstanceStatus = Literal["active", "archived"]
TriggerKind = Literal["scheduled", "manual"]
RunStatus = Literal["running", "completed", "failed"]


class AgentTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str
    agent_type: AgentType
    description: str


class AudienceSelector(BaseModel):
    """Who an instance talks to; validated so bad selectors never reach a run."""

    model_config = ConfigDict(extra="forbid")

    type: AudienceType = "company_wide"
    team_id: str | None = None
    employee_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_selector(self) -> "AudienceSelector":
        if self.type == "team" and not self.team_id:
            raise ValueError("team audience requires team_id")
        if self.type == "individual" and not self.employee_ids:
            raise ValueError("individual audience requires at least one employee id")
        return self


class InstanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tone_preset: TonePreset = "friendly_peer"
    audience: AudienceSelector = Field(default_factory=AudienceSelector)
    department: str | None = None
    employee_title: str | None = None


class Schedule(BaseModel):
    agent_instance_id: str
    cadence: Cadence = "weekly"
    cron_expression: str | None = None
    timezone: str = "America/New_York"
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    is_active: bool = True


class AgentInstance(BaseModel):
    id: str
    company_id: str
    template_id: str
    name: str
    created_by: str | None = None
    config: InstanceConfig
    status: InstanceStatus = "active"
    created_at: datetime
    updated_at: datetime


class AgentInstanceDetail(AgentInstance):
    template: AgentTemplate | None = None
    schedule: Schedule | None = None


class ScheduleInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cadence: Cadence = "weekly"
    cron_expression: str | None = None
    timezone: str | None = None
    is_active: bool = True


class AgentInstanceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: str
    name: str = Field(..., min_length=1, max_length=200)
    config: InstanceConfig = Field(default_factory=InstanceConfig)
    schedule: ScheduleInput = Field(default_factory=ScheduleInput)


class AgentInstanceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    config: InstanceConfig | None = None
    status: InstanceStatus | None = None


class ScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cadence: Cadence | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    is_active: bool | None = None


class RunRecord(BaseModel):
    id: str
    agent_instance_id: str
    trigger_kind: TriggerKind
    status: RunStatus = "running"
    started_at: datetime
    finished_at: datetime | None = None
    messages_sent: int = 0
    conversations_touched: int = 0
    error_message: str | None = None


class TriggerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    employee_ids: list[str] | None = None


class RespondRequest(BaseModel):
    conversation_id: str
    message_content: str


class AgentTemplateList(BaseModel):
    items: list[AgentTemplate]
    total: int


class AgentInstanceList(BaseModel):
    items: list[AgentInstance]
    total: int


class RunRecordList(BaseModel):
    items: list[RunRecord]
    total: int
