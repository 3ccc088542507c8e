"""Run orchestration: outbound check-ins and inbound employee replies.

Every read-modify-write of a conversation's status or counters happens while
holding that conversation's lock from :class:`KeyedLockRegistry`. Model calls
never run under the lock; state is re-read after they return.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from ..agents.directory import Employee, EmployeeDirectory
from ..agents.generator import GenerationContext, HistoryEntry, ResponseGenerator
from ..agents.safety import SafetyClassifier, SafetyResult, empathy_response, escalation_description
from ..agents.scheduler import Scheduler
from ..agents.schemas import AgentInstance, AgentTemplate, RunRecord
from ..agents.service import AgentInstanceRepository
from ..core.audit import AuditEvent, AuditSink
from ..core.auth import AuthContext
from ..core.errors import (
    ConversationClosedError,
    ConversationEscalatedError,
    InstanceNotActiveError,
    NotFoundError,
    OrchestratorError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from ..core.locks import KeyedLockRegistry, conversation_key, participant_key
from ..core.settings import OrchestratorSettings
from . import insights, state
from .models import EmployeeOutcome, ReplyResult, RunResult
from .repository import ConversationRepository
from .schemas import Conversation, EscalationRecord, Message

logger = logging.getLogger(__name__)

TRIGGER_KINDS = ("scheduled", "manual")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _guard_open(conversation: Conversation) -> None:
    if conversation.status == "closed":
        raise ConversationClosedError(f"Conversation {conversation.id} is closed")
    if conversation.status == "escalated":
        raise ConversationEscalatedError(
            f"Conversation {conversation.id} is escalated and awaiting human follow-up"
        )


class RunOrchestrator:
    """Coordinate agent runs and employee replies for all companies."""

    def __init__(
        self,
        instances: AgentInstanceRepository,
        conversations: ConversationRepository,
        directory: EmployeeDirectory,
        generator: ResponseGenerator,
        audit: AuditSink,
        *,
        classifier: SafetyClassifier | None = None,
        locks: KeyedLockRegistry | None = None,
        scheduler: Scheduler | None = None,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        lock_timeout: float | None = None,
    ) -> None:
        self._instances = instances
        self._conversations = conversations
        self._directory = directory
        self._generator = generator
        self._audit = audit
        self._classifier = classifier or generator.classifier
        self._locks = locks or KeyedLockRegistry()
        self._settings = settings or OrchestratorSettings()
        self._scheduler = scheduler or Scheduler(self._settings.default_timezone)
        self._clock = clock
        self._lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Outbound runs
    # ------------------------------------------------------------------
    def trigger_run(
        self,
        instance_id: str,
        trigger_kind: str = "manual",
        target_employee_ids: Iterable[str] | None = None,
        actor: AuthContext | None = None,
        *,
        now: datetime | None = None,
    ) -> RunResult:
        """Send the next message of ``instance_id`` to each employee in its audience.

        Per-employee failures are collected in the result and never abort the
        run. An unexpected failure outside the per-employee loop marks the run
        record ``failed`` and propagates.
        """

        if trigger_kind not in TRIGGER_KINDS:
            raise ValidationError(f"Unknown trigger kind {trigger_kind!r}")
        instance = self._instances.get_instance(instance_id)
        if instance is None or (actor is not None and actor.company_id != instance.company_id):
            raise NotFoundError(f"Agent instance {instance_id} not found")
        if trigger_kind == "manual" and (actor is None or not actor.is_admin):
            raise PermissionDeniedError("Manual runs require an admin")
        if instance.status != "active":
            raise InstanceNotActiveError(f"Agent instance {instance_id} is {instance.status}")
        template = self._instances.get_template(instance.template_id)
        if template is None:
            raise NotFoundError(f"Agent template {instance.template_id} not found")

        started = now or self._clock()
        run = RunRecord(
            id=str(uuid4()),
            agent_instance_id=instance.id,
            trigger_kind=trigger_kind,
            status="running",
            started_at=started,
        )
        self._instances.create_run(run)
        result = RunResult(run_id=run.id)
        logger.info(
            "Run %s started for instance %s (%s)", run.id, instance.id, trigger_kind,
            extra={"run_id": run.id, "instance_id": instance.id, "company_id": instance.company_id},
        )

        try:
            employees = self._resolve_audience(instance, target_employee_ids, result)
            for employee in employees:
                self._reach_employee(instance, template, employee, result)
        except Exception as exc:
            self._instances.save_run(
                run.model_copy(
                    update={
                        "status": "failed",
                        "finished_at": self._clock(),
                        "messages_sent": result.messages_sent,
                        "conversations_touched": result.conversations_touched,
                        "error_message": str(exc)[:500],
                    }
                )
            )
            logger.exception("Run %s failed", run.id, extra={"run_id": run.id})
            raise

        self._instances.save_run(
            run.model_copy(
                update={
                    "status": "completed",
                    "finished_at": self._clock(),
                    "messages_sent": result.messages_sent,
                    "conversations_touched": result.conversations_touched,
                }
            )
        )
        self._audit.record(
            AuditEvent(
                action="agent_triggered",
                target_type="agent_instance",
                target_id=instance.id,
                company_id=instance.company_id,
                actor_id=actor.user_id if actor else None,
                actor_role=actor.role if actor else "system",
                after_state={
                    "run_id": run.id,
                    "trigger_kind": trigger_kind,
                    "messages_sent": result.messages_sent,
                },
            )
        )
        if trigger_kind == "scheduled":
            schedule = self._instances.get_schedule(instance.id)
            if schedule is not None:
                self._instances.save_schedule(self._scheduler.advance(schedule, started))

        logger.info(
            "Run %s finished: sent=%s failures=%s skipped=%s",
            run.id,
            result.messages_sent,
            len(result.failures),
            len(result.skipped),
        )
        return result

    def run_due_schedules(self, now: datetime | None = None) -> list[RunResult]:
        """Trigger every due schedule once. Failures are logged per instance."""

        now = now or self._clock()
        results: list[RunResult] = []
        for schedule in self._instances.list_due_schedules(now):
            try:
                results.append(
                    self.trigger_run(schedule.agent_instance_id, "scheduled", now=now)
                )
            except OrchestratorError as exc:
                logger.warning(
                    "Scheduled run for instance %s skipped: %s", schedule.agent_instance_id, exc
                )
        return results

    def _resolve_audience(
        self,
        instance: AgentInstance,
        target_employee_ids: Iterable[str] | None,
        result: RunResult,
    ) -> list[Employee]:
        explicit = [str(e) for e in (target_employee_ids or []) if str(e).strip()]
        if not explicit:
            return self._directory.resolve(instance.company_id, instance.config.audience)
        employees = self._directory.get_many(instance.company_id, explicit)
        known = {e.id for e in employees}
        for employee_id in dict.fromkeys(explicit):
            if employee_id not in known:
                result.failures.append(EmployeeOutcome(employee_id, "unknown_employee"))
        return employees

    def _reach_employee(
        self,
        instance: AgentInstance,
        template: AgentTemplate,
        employee: Employee,
        result: RunResult,
    ) -> None:
        conversation_id: str | None = None
        try:
            now = self._clock()
            with self._locks.hold(participant_key(instance.id, employee.id), self._lock_timeout):
                conversation, created = self._conversations.get_or_create_open(
                    instance.company_id, instance.id, employee.id, now
                )
            conversation_id = conversation.id
            result.conversations_touched += 1
            if created:
                logger.debug("Run %s opened conversation %s", result.run_id, conversation.id)

            with self._locks.hold(conversation_key(conversation.id), self._lock_timeout):
                conversation = self._conversations.get(conversation.id) or conversation
                kind, reason = self._plan_outbound(conversation, now)
                history = self._history(conversation.id) if kind in ("follow_up", "nudge") else []
                topics = self._previous_topics(conversation.id) if kind == "follow_up" else []
            if kind is None:
                result.skipped.append(EmployeeOutcome(employee.id, reason or "skipped", conversation.id))
                return

            context = self._context(instance, template, employee, history, topics)
            reply = self._generator.generate_opening(context, kind)

            with self._locks.hold(conversation_key(conversation.id), self._lock_timeout):
                current = self._conversations.get(conversation.id)
                if current is None or current.status != "active":
                    status = current.status if current else "missing"
                    result.skipped.append(
                        EmployeeOutcome(employee.id, f"conversation_{status}", conversation.id)
                    )
                    return
                if current.message_count != conversation.message_count:
                    result.skipped.append(
                        EmployeeOutcome(employee.id, "conversation_changed", conversation.id)
                    )
                    return
                sent_at = self._clock()
                message = Message(
                    id=str(uuid4()),
                    conversation_id=current.id,
                    seq=current.message_count + 1,
                    sender_type="agent",
                    sender_id=instance.id,
                    content=reply.content,
                    created_at=sent_at,
                )
                updated = current.model_copy(
                    update={
                        "message_count": current.message_count + 1,
                        "unread_count": current.unread_count + 1,
                        "nudge_count": current.nudge_count + (1 if kind == "nudge" else 0),
                        "last_message_at": sent_at,
                        "updated_at": sent_at,
                    }
                )
                self._conversations.append_message(updated, message)
        except Exception as exc:
            logger.warning(
                "Run %s: could not reach employee %s: %s", result.run_id, employee.id, exc,
                extra={"run_id": result.run_id, "employee_id": employee.id},
            )
            result.failures.append(EmployeeOutcome(employee.id, str(exc), conversation_id))
            return

        result.messages_sent += 1

    def _plan_outbound(
        self, conversation: Conversation, now: datetime
    ) -> tuple[str | None, str | None]:
        """Return ``(kind, None)`` for the message to send or ``(None, reason)`` to skip."""

        if conversation.status != "active":
            return None, f"conversation_{conversation.status}"
        if conversation.message_count == 0:
            return "opening", None
        recent = self._conversations.list_messages(conversation.id, limit=2)
        if not recent or recent[-1].sender_type == "employee":
            return "follow_up", None
        last_at = conversation.last_message_at or recent[-1].created_at
        if now - last_at < timedelta(days=self._settings.stale_after_days):
            return None, "awaiting_reply"
        # The agent's last word answered the employee: start the next check-in.
        if len(recent) == 2 and recent[0].sender_type == "employee":
            return "follow_up", None
        if conversation.nudge_count >= self._settings.max_nudges:
            return None, "nudge_limit"
        return "nudge", None

    # ------------------------------------------------------------------
    # Inbound replies
    # ------------------------------------------------------------------
    def handle_employee_reply(
        self, conversation_id: str, content: str, employee_id: str
    ) -> ReplyResult:
        """Store the employee's message and answer it.

        The employee message is kept whatever happens afterwards. Flagged
        messages escalate the conversation with a fixed empathetic reply;
        others are answered through the response generator, and the answered
        conversation gets a fresh feedback summary.
        """

        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content is required")
        if len(text) > self._settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {self._settings.max_message_length} characters"
            )

        snapshot = self._conversations.get(conversation_id)
        if snapshot is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if snapshot.participant_id != str(employee_id):
            raise PermissionDeniedError("Conversation belongs to another employee")
        _guard_open(snapshot)
        instance = self._instances.get_instance(snapshot.agent_instance_id)
        if instance is None:
            raise NotFoundError(f"Agent instance {snapshot.agent_instance_id} not found")
        template = self._instances.get_template(instance.template_id)
        if template is None:
            raise NotFoundError(f"Agent template {instance.template_id} not found")
        employees = self._directory.get_many(snapshot.company_id, [snapshot.participant_id])
        employee = employees[0] if employees else Employee(
            id=snapshot.participant_id, company_id=snapshot.company_id, full_name=""
        )

        key = conversation_key(conversation_id)
        with self._locks.hold(key, self._lock_timeout):
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            _guard_open(conversation)
            now = self._clock()
            employee_message = Message(
                id=str(uuid4()),
                conversation_id=conversation.id,
                seq=conversation.message_count + 1,
                sender_type="employee",
                sender_id=str(employee_id),
                content=text,
                is_read=True,
                created_at=now,
            )
            conversation = conversation.model_copy(
                update={
                    "message_count": conversation.message_count + 1,
                    "nudge_count": 0,
                    "last_message_at": now,
                    "updated_at": now,
                }
            )
            self._conversations.append_message(conversation, employee_message)

            verdict = self._classifier.classify(text)
            if verdict.flagged:
                agent_message = self._escalate(conversation, employee_message, verdict)
                return ReplyResult(agent_message, True, employee_message)
            history = self._history(conversation.id)

        context = self._context(instance, template, employee, history)
        reply = self._generator.generate(context)

        with self._locks.hold(key, self._lock_timeout):
            current = self._conversations.get(conversation_id)
            if current is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            _guard_open(current)
            if reply.should_escalate:
                verdict = SafetyResult(True, reply.escalation_type or "urgent", None)
                agent_message = self._escalate(current, employee_message, verdict)
                return ReplyResult(agent_message, True, employee_message)
            sent_at = self._clock()
            agent_message = Message(
                id=str(uuid4()),
                conversation_id=current.id,
                seq=current.message_count + 1,
                sender_type="agent",
                sender_id=instance.id,
                content=reply.content,
                created_at=sent_at,
            )
            updated = current.model_copy(
                update={
                    "message_count": current.message_count + 1,
                    "unread_count": current.unread_count + 1,
                    "last_message_at": sent_at,
                    "updated_at": sent_at,
                }
            )
            self._conversations.append_message(updated, agent_message)
            self._record_insights(updated, employee)

        if reply.warning:
            logger.warning(
                "Reply for conversation %s degraded: %s",
                conversation_id,
                reply.warning,
                extra={"conversation_id": conversation_id, "reason": reply.warning},
            )
        return ReplyResult(agent_message, False, employee_message, reply.warning)

    def _escalate(
        self, conversation: Conversation, trigger: Message, verdict: SafetyResult
    ) -> Message:
        """Escalate ``conversation`` and append the empathetic reply. Caller holds the lock."""

        now = self._clock()
        category = verdict.category or "urgent"
        if self._conversations.get_open_escalation(conversation.id) is None:
            record = EscalationRecord(
                id=str(uuid4()),
                conversation_id=conversation.id,
                company_id=conversation.company_id,
                trigger_message_id=trigger.id,
                escalation_type=category,
                severity="critical" if category == "safety" else "high",
                description=escalation_description(trigger.content, verdict),
                created_at=now,
            )
            self._conversations.create_escalation(record)
            self._audit.record(
                AuditEvent(
                    action="agent_escalation_created",
                    target_type="agent_escalation",
                    target_id=record.id,
                    company_id=conversation.company_id,
                    actor_role="system",
                    after_state={
                        "conversation_id": conversation.id,
                        "escalation_type": record.escalation_type,
                        "severity": record.severity,
                    },
                )
            )
            logger.warning(
                "Conversation %s escalated (%s, %s)", conversation.id, category, record.severity,
                extra={"conversation_id": conversation.id, "category": category},
            )

        moved = state.transition(conversation, "escalated", state.SYSTEM, now=now)
        self._conversations.save(moved.conversation)
        self._audit.record(moved.audit_event)

        current = moved.conversation
        agent_message = Message(
            id=str(uuid4()),
            conversation_id=current.id,
            seq=current.message_count + 1,
            sender_type="agent",
            content=empathy_response(category),
            content_type="escalation",
            created_at=now,
        )
        updated = current.model_copy(
            update={
                "message_count": current.message_count + 1,
                "unread_count": current.unread_count + 1,
                "last_message_at": now,
                "updated_at": now,
            }
        )
        self._conversations.append_message(updated, agent_message)
        return agent_message

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _history(self, conversation_id: str) -> list[HistoryEntry]:
        messages = self._conversations.list_messages(
            conversation_id, limit=self._settings.history_window
        )
        return [
            HistoryEntry(
                role="user" if m.sender_type == "employee" else "assistant",
                content=m.content,
            )
            for m in messages
        ]

    def _previous_topics(self, conversation_id: str) -> list[str]:
        summary = self._conversations.latest_summary(conversation_id)
        return list(summary.tags) if summary else []

    def _record_insights(self, conversation: Conversation, employee: Employee) -> None:
        """Store a fresh feedback summary. Caller holds the lock.

        The reply is already stored, so a storage failure here is logged and
        does not reach the employee.
        """

        try:
            messages = self._conversations.list_messages(
                conversation.id, limit=self._settings.summary_window
            )
            summary = insights.summarize_conversation(
                conversation,
                messages,
                employee.full_name or "The employee",
                self._conversations.latest_summary(conversation.id),
                self._clock(),
            )
            if summary is not None:
                self._conversations.add_summary(summary)
        except StorageError as exc:
            logger.warning(
                "Could not store insights for conversation %s: %s", conversation.id, exc,
                extra={"conversation_id": conversation.id},
            )

    @staticmethod
    def _context(
        instance: AgentInstance,
        template: AgentTemplate,
        employee: Employee,
        history: list[HistoryEntry],
        topics: list[str] | None = None,
    ) -> GenerationContext:
        config = instance.config
        return GenerationContext(
            employee_name=employee.full_name or "there",
            agent_type=template.agent_type,
            tone_preset=config.tone_preset,
            history=history,
            employee_title=employee.job_title or config.employee_title,
            department=employee.department or config.department,
            participant_id=employee.id,
            topics=list(topics or []),
        )
