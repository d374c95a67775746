"""Handlers for workflow action steps.

Each :class:`~leadflow.models.ActionKind` maps to exactly one coroutine in
:data:`ACTION_HANDLERS`. A handler returns a JSON-serialisable result dict,
or raises :class:`~leadflow.errors.ActionFailed` (or any other exception) to
let the scheduler retry.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from .assignment import pick_advisor
from .errors import ActionFailed
from .models import ActionKind, ActionStep, Channel, Lead, NotificationEvent, WorkflowDefinition, WorkflowEnrollment
from .notifications import NotificationDispatcher
from .persistence.models import Task
from .persistence.repository import AutomationRepository

if TYPE_CHECKING:
    from .transitions import StageTransitionEvaluator

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class ActionContext:
    enrollment: WorkflowEnrollment
    workflow: WorkflowDefinition
    step: ActionStep
    lead: Lead
    now: datetime
    repository: AutomationRepository
    dispatcher: NotificationDispatcher
    transitions: Optional["StageTransitionEvaluator"] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.enrollment.id}:{self.step.index}"

    def option(self, *keys: str, default: Any = None) -> Any:
        """First configured value among ``keys`` (snake_case or builder camelCase)."""
        for key in keys:
            value = self.step.config.get(key)
            if value not in (None, ""):
                return value
        return default


def personalize(template: str, lead: Lead) -> str:
    """Fill ``{{firstName}}``-style placeholders from the lead."""
    if not template:
        return ""
    values = {
        "firstName": lead.first_name,
        "lastName": lead.last_name,
        "email": lead.email or "",
        "phone": lead.phone or "",
        "leadName": lead.full_name,
        "programName": lead.program_interest or "",
        "leadId": lead.id,
        "city": str(lead.custom_fields.get("city", "")),
        "country": str(lead.custom_fields.get("country", "")),
    }
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def _split(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value]


async def send_email(ctx: ActionContext) -> Dict[str, Any]:
    if not ctx.lead.email:
        raise ActionFailed(f"Lead {ctx.lead.id} has no email address", retryable=False)
    subject = personalize(ctx.option("subject", default=""), ctx.lead)
    body = personalize(ctx.option("content", "body", default=""), ctx.lead)
    result = await ctx.dispatcher.deliver(
        Channel.EMAIL,
        ctx.lead.email,
        subject,
        body,
        idempotency_key=ctx.idempotency_key,
        user_id=ctx.lead.user_id,
    )
    return {"to": ctx.lead.email, "subject": subject, "status": result.status.value}


async def send_sms(ctx: ActionContext) -> Dict[str, Any]:
    if not ctx.lead.phone:
        raise ActionFailed(f"Lead {ctx.lead.id} has no phone number", retryable=False)
    body = personalize(ctx.option("content", "body", default=""), ctx.lead)
    if ctx.option("include_opt_out", "includeOptOut", default=False):
        opt_out = ctx.option("opt_out_message", "optOutMessage", default="Reply STOP to unsubscribe")
        body = f"{body}\n\n{opt_out}"
    result = await ctx.dispatcher.deliver(
        Channel.SMS,
        ctx.lead.phone,
        "",
        body,
        idempotency_key=ctx.idempotency_key,
        user_id=ctx.lead.user_id,
    )
    return {"to": ctx.lead.phone, "status": result.status.value}


async def create_task(ctx: ActionContext) -> Dict[str, Any]:
    due_in_days = float(ctx.option("due_in_days", "dueInDays", default=1))
    assign_to = ctx.option("assign_to", "assignTo", default="owner")
    assignee = ctx.workflow.owner_id
    if assign_to == "lead_advisor" and ctx.lead.assigned_to:
        assignee = ctx.lead.assigned_to
    elif assign_to == "specific":
        assignee = ctx.option("specific_assignee", "specificAssignee", default=assignee)

    task = Task(
        lead_id=ctx.lead.id,
        title=personalize(ctx.option("title", "taskTitle", default=ctx.step.title), ctx.lead),
        description=personalize(ctx.option("description", "taskDescription", default=""), ctx.lead),
        task_type=ctx.option("task_type", "taskType", default="follow_up"),
        priority=ctx.option("priority", default="medium"),
        due_date=ctx.now + timedelta(days=due_in_days),
        assigned_to=assignee,
        created_at=ctx.now,
    )
    await ctx.repository.add_task(task)
    return {"task_id": task.id, "assigned_to": assignee}


async def update_lead(ctx: ActionContext) -> Dict[str, Any]:
    update_type = ctx.option("update_type", "updateType")
    if update_type == "stage":
        if ctx.transitions is None:
            raise ActionFailed("Stage updates need a transition evaluator", retryable=False)
        target = ctx.option("stage_id", "stageId")
        if not target:
            raise ActionFailed("Stage update has no target stage", retryable=False)
        log = await ctx.transitions.request_transition(
            ctx.lead.id, target, ctx.now, triggered_by=f"workflow:{ctx.workflow.id}"
        )
        return {"stage_id": target, "transitioned": log is not None}

    # re-read so the update is applied to the freshest stored state
    lead = await ctx.repository.get_lead(ctx.lead.id) or ctx.lead
    updates: Dict[str, Any] = {}
    if update_type == "status":
        updates["status"] = ctx.option("new_status", "newStatus")
    elif update_type == "tags":
        tags = _split(ctx.option("tags"))
        action = ctx.option("tags_action", "tagsAction", default="replace")
        if action == "add":
            updates["tags"] = lead.tags + [t for t in tags if t not in lead.tags]
        elif action == "remove":
            updates["tags"] = [t for t in lead.tags if t not in tags]
        else:
            updates["tags"] = tags
    elif update_type == "score":
        updates["lead_score"] = lead.lead_score + int(ctx.option("score_change", "scoreChange", default=0))
    elif update_type == "priority":
        updates["priority"] = ctx.option("priority")
    elif update_type == "program":
        updates["program_interest"] = ctx.option("program_interest", "programInterest")
    else:
        raise ActionFailed(f"Unknown lead update type '{update_type}'", retryable=False)

    for key, value in updates.items():
        setattr(lead, key, value)
    await ctx.repository.save_lead(lead)
    ctx.lead = lead
    return updates


async def assign_advisor(ctx: ActionContext) -> Dict[str, Any]:
    advisors = await ctx.repository.list_advisors()
    if ctx.option("assignment_method", "assignmentMethod") == "specific":
        advisor_id = ctx.option("specific_advisor_id", "specificAdvisorId")
        advisor = next((a for a in advisors if a.id == advisor_id), None)
        if advisor is None:
            raise ActionFailed(f"Advisor {advisor_id} does not exist", retryable=False)
    else:
        advisor = pick_advisor(advisors)
        advisor_id = advisor.id if advisor else None
    if not advisor_id:
        raise ActionFailed("No available advisor found")

    lead = await ctx.repository.get_lead(ctx.lead.id) or ctx.lead
    lead.assigned_to = advisor_id
    lead.assigned_at = ctx.now
    await ctx.repository.save_lead(lead)
    ctx.lead = lead
    advisor.active_assignments += 1
    await ctx.repository.save_advisor(advisor)

    if ctx.option("notify_advisor", "notifyAdvisor", default=False):
        await ctx.dispatcher.send(
            NotificationEvent(
                user_id=advisor_id,
                type="lead_assigned",
                title="New Lead Assigned",
                message=f"You have been assigned a new lead: {lead.full_name}",
                data={"lead_id": lead.id},
                idempotency_key=f"{ctx.idempotency_key}:advisor",
            ),
            ctx.now,
        )
    logger.info(f"Assigned lead {lead.id} to advisor {advisor_id}")
    return {"assigned_to": advisor_id}


async def send_notification(ctx: ActionContext) -> Dict[str, Any]:
    recipient_type = ctx.option("recipient_type", "recipientType", default="lead_advisor")
    if recipient_type == "lead_advisor":
        recipients = [ctx.lead.assigned_to] if ctx.lead.assigned_to else []
    else:
        recipients = _split(ctx.option("recipients", "specificRecipients"))

    message = personalize(ctx.option("message", default=""), ctx.lead)
    for recipient in recipients:
        await ctx.dispatcher.send(
            NotificationEvent(
                user_id=recipient,
                type="workflow_notification",
                title=personalize(ctx.option("subject", default=ctx.step.title), ctx.lead),
                message=message,
                data={"lead_id": ctx.lead.id, "action_url": ctx.option("action_url", "actionUrl")},
                priority=ctx.option("priority", default="normal"),
                idempotency_key=f"{ctx.idempotency_key}:{recipient}",
            ),
            ctx.now,
        )
    return {"notified": len(recipients)}


ActionHandler = Callable[[ActionContext], Awaitable[Dict[str, Any]]]

ACTION_HANDLERS: Dict[ActionKind, ActionHandler] = {
    ActionKind.SEND_EMAIL: send_email,
    ActionKind.SEND_SMS: send_sms,
    ActionKind.CREATE_TASK: create_task,
    ActionKind.UPDATE_LEAD: update_lead,
    ActionKind.ASSIGN_ADVISOR: assign_advisor,
    ActionKind.SEND_NOTIFICATION: send_notification,
}

_missing = set(ActionKind) - set(ACTION_HANDLERS)
if _missing:
    raise RuntimeError(f"Action kinds without handlers: {sorted(k.value for k in _missing)}")
