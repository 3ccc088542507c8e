"""Agent template, instance and run API routes."""

from fastapi import APIRouter, Body, Depends, Request, status

from ..agents import schemas
from ..conversations import schemas as convo_schemas
from ..core.auth import AuthContext
from ..security.auth import get_current_actor, require_admin
from .context import REPLY_RATE_LIMIT, limiter, service_context
from .conversations import reply_response

router = APIRouter(prefix="/api/agents", tags=["agents"])


@router.get("/templates", response_model=schemas.AgentTemplateList)
def list_templates(actor: AuthContext = Depends(get_current_actor)) -> schemas.AgentTemplateList:
    with service_context() as svc:
        templates = svc.instances.list_templates()
    return schemas.AgentTemplateList(items=templates, total=len(templates))


@router.get("/instances", response_model=schemas.AgentInstanceList)
def list_instances(actor: AuthContext = Depends(get_current_actor)) -> schemas.AgentInstanceList:
    with service_context() as svc:
        instances = svc.instances.list_instances(actor)
    return schemas.AgentInstanceList(items=instances, total=len(instances))


@router.post(
    "/instances",
    response_model=schemas.AgentInstanceDetail,
    status_code=status.HTTP_201_CREATED,
)
def create_instance(
    payload: schemas.AgentInstanceCreate,
    actor: AuthContext = Depends(require_admin),
) -> schemas.AgentInstanceDetail:
    with service_context() as svc:
        return svc.instances.create_instance(payload, actor)


@router.get("/instances/{instance_id}", response_model=schemas.AgentInstanceDetail)
def get_instance(
    instance_id: str, actor: AuthContext = Depends(get_current_actor)
) -> schemas.AgentInstanceDetail:
    with service_context() as svc:
        return svc.instances.get_instance(instance_id, actor)


@router.patch("/instances/{instance_id}", response_model=schemas.AgentInstanceDetail)
def update_instance(
    instance_id: str,
    payload: schemas.AgentInstanceUpdate,
    actor: AuthContext = Depends(require_admin),
) -> schemas.AgentInstanceDetail:
    with service_context() as svc:
        return svc.instances.update_instance(instance_id, payload, actor)


@router.delete("/instances/{instance_id}", response_model=schemas.AgentInstanceDetail)
def archive_instance(
    instance_id: str, actor: AuthContext = Depends(require_admin)
) -> schemas.AgentInstanceDetail:
    with service_context() as svc:
        return svc.instances.archive_instance(instance_id, actor)


@router.put("/instances/{instance_id}/schedule", response_model=schemas.Schedule)
def update_schedule(
    instance_id: str,
    payload: schemas.ScheduleUpdate,
    actor: AuthContext = Depends(require_admin),
) -> schemas.Schedule:
    with service_context() as svc:
        return svc.instances.update_schedule(instance_id, payload, actor)


@router.get("/instances/{instance_id}/runs", response_model=schemas.RunRecordList)
def list_runs(
    instance_id: str,
    limit: int = 20,
    actor: AuthContext = Depends(get_current_actor),
) -> schemas.RunRecordList:
    with service_context() as svc:
        runs = svc.instances.list_runs(instance_id, actor, limit=limit)
    return schemas.RunRecordList(items=runs, total=len(runs))


@router.post("/instances/{instance_id}/trigger", response_model=convo_schemas.RunResultResponse)
def trigger_instance(
    instance_id: str,
    payload: schemas.TriggerRequest | None = Body(default=None),
    actor: AuthContext = Depends(require_admin),
) -> convo_schemas.RunResultResponse:
    employee_ids = payload.employee_ids if payload else None
    with service_context() as svc:
        result = svc.orchestrator.trigger_run(instance_id, "manual", employee_ids, actor)
    return convo_schemas.RunResultResponse(**result.as_dict())


@router.post("/respond", response_model=convo_schemas.ReplyResponse)
@limiter.limit(REPLY_RATE_LIMIT)
def respond(
    request: Request,
    payload: schemas.RespondRequest,
    actor: AuthContext = Depends(get_current_actor),
) -> convo_schemas.ReplyResponse:
    """Answer an employee message; the caller must be the conversation participant."""

    with service_context() as svc:
        result = svc.orchestrator.handle_employee_reply(
            payload.conversation_id, payload.message_content, actor.user_id
        )
    return reply_response(result)
