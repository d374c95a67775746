"""Stage transition evaluation for leads moving through a pipeline."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .errors import InvalidTriggerConfiguration, LeadflowError, LeadNotFound
from .models import (
    ApprovalStatus,
    EventKind,
    FormSubmission,
    Lead,
    LeadDocument,
    ManualApproval,
    NotificationEvent,
    Payment,
    PipelineStage,
    Requirement,
    StageTransitionTrigger,
    TriggerConfig,
    TriggerType,
    as_utc,
    new_id,
)
from .notifications import NotificationDispatcher
from .persistence.models import StageTransitionLog
from .persistence.repository import AutomationRepository

if TYPE_CHECKING:
    from .scheduler import WorkflowScheduler

logger = logging.getLogger(__name__)

# trigger types worth re-checking when a given kind of fact changes
EVENT_TRIGGER_TYPES: Dict[EventKind, Tuple[TriggerType, ...]] = {
    EventKind.DOCUMENT_APPROVED: (
        TriggerType.ALL_DOCUMENTS_APPROVED,
        TriggerType.SPECIFIC_DOCUMENT_APPROVED,
        TriggerType.ALL_REQUIREMENTS_COMPLETED,
    ),
    EventKind.REQUIREMENT_COMPLETED: (TriggerType.ALL_REQUIREMENTS_COMPLETED,),
    EventKind.PAYMENT_RECEIVED: (TriggerType.PAYMENT_RECEIVED,),
    EventKind.FORM_SUBMITTED: (TriggerType.FORM_SUBMITTED,),
    EventKind.MANUAL_APPROVAL: (TriggerType.MANUAL_APPROVAL,),
    EventKind.TIME_ELAPSED: (TriggerType.TIME_ELAPSED,),
}

# config fields a trigger cannot work without
_REQUIRED_CONFIG: Dict[TriggerType, Callable[[TriggerConfig], bool]] = {
    TriggerType.SPECIFIC_DOCUMENT_APPROVED: lambda c: bool(c.document_id or c.document_types),
    TriggerType.PAYMENT_RECEIVED: lambda c: c.payment_amount is not None,
    TriggerType.FORM_SUBMITTED: lambda c: bool(c.form_id),
    TriggerType.TIME_ELAPSED: lambda c: c.elapsed_duration is not None,
}


def _stage_documents(lead: Lead, stage_id: str) -> List[LeadDocument]:
    return [
        d for d in lead.documents if d.required and d.stage_id in (None, stage_id)
    ]


def _all_documents_approved(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    documents = _stage_documents(lead, trigger.stage_id)
    if trigger.config.document_types:
        documents = [d for d in documents if d.document_type in trigger.config.document_types]
    if not documents:
        return False
    return all(d.status == ApprovalStatus.APPROVED for d in documents)


def _specific_document_approved(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    approved = [d for d in lead.documents if d.status == ApprovalStatus.APPROVED]
    if trigger.config.document_id:
        return any(d.id == trigger.config.document_id for d in approved)
    approved_types = {d.document_type for d in approved}
    return all(t in approved_types for t in trigger.config.document_types)


def _all_requirements_completed(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    requirements = [
        r for r in lead.requirements if r.stage_id == trigger.stage_id and r.mandatory
    ]
    if trigger.config.requirement_ids:
        wanted = set(trigger.config.requirement_ids)
        requirements = [r for r in requirements if r.id in wanted]
        if len(requirements) < len(wanted):
            return False
    if not requirements:
        return True
    if not all(r.status == ApprovalStatus.APPROVED for r in requirements):
        return False
    if any(r.requirement_type == "document" for r in requirements):
        documents = _stage_documents(lead, trigger.stage_id)
        return all(d.status == ApprovalStatus.APPROVED for d in documents)
    return True


def _payment_received(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    config = trigger.config
    for payment in lead.payments:
        if config.payment_context and payment.context != config.payment_context:
            continue
        if payment.amount >= (config.payment_amount or 0):
            return True
    return False


def _form_submitted(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    return any(s.form_id == trigger.config.form_id for s in lead.form_submissions)


def _manual_approval(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    entered = as_utc(lead.stage_entered_at) if lead.stage_entered_at else None
    for approval in lead.manual_approvals:
        if approval.stage_id != trigger.stage_id:
            continue
        # approvals granted during an earlier visit to the stage do not count
        if entered is None or as_utc(approval.approved_at) >= entered:
            return True
    return False


def _time_elapsed(trigger: StageTransitionTrigger, lead: Lead, now: datetime) -> bool:
    duration = trigger.config.elapsed_duration
    if duration is None or lead.stage_entered_at is None:
        return False
    return as_utc(now) - as_utc(lead.stage_entered_at) >= duration


_PREDICATES: Dict[TriggerType, Callable[[StageTransitionTrigger, Lead, datetime], bool]] = {
    TriggerType.ALL_DOCUMENTS_APPROVED: _all_documents_approved,
    TriggerType.SPECIFIC_DOCUMENT_APPROVED: _specific_document_approved,
    TriggerType.ALL_REQUIREMENTS_COMPLETED: _all_requirements_completed,
    TriggerType.PAYMENT_RECEIVED: _payment_received,
    TriggerType.FORM_SUBMITTED: _form_submitted,
    TriggerType.MANUAL_APPROVAL: _manual_approval,
    TriggerType.TIME_ELAPSED: _time_elapsed,
}


def _record_fact(lead: Lead, kind: EventKind, payload: Dict[str, Any], now: datetime) -> bool:
    """Apply the fact carried by an event to the lead. Returns True if it changed."""
    if kind == EventKind.DOCUMENT_APPROVED:
        document_id = payload["document_id"]
        for document in lead.documents:
            if document.id == document_id:
                if document.status == ApprovalStatus.APPROVED:
                    return False
                document.status = ApprovalStatus.APPROVED
                return True
        lead.documents.append(
            LeadDocument(
                id=document_id,
                document_type=payload.get("document_type", "general"),
                status=ApprovalStatus.APPROVED,
                required=payload.get("required", True),
                stage_id=payload.get("stage_id"),
            )
        )
        return True

    if kind == EventKind.REQUIREMENT_COMPLETED:
        requirement_id = payload["requirement_id"]
        for requirement in lead.requirements:
            if requirement.id == requirement_id:
                if requirement.status == ApprovalStatus.APPROVED:
                    return False
                requirement.status = ApprovalStatus.APPROVED
                return True
        lead.requirements.append(
            Requirement(
                id=requirement_id,
                stage_id=payload.get("stage_id") or lead.stage_id,
                requirement_type=payload.get("requirement_type", "document"),
                mandatory=payload.get("mandatory", True),
                status=ApprovalStatus.APPROVED,
            )
        )
        return True

    if kind == EventKind.PAYMENT_RECEIVED:
        payment_id = payload.get("payment_id") or new_id()
        if any(p.id == payment_id for p in lead.payments):
            return False
        lead.payments.append(
            Payment(
                id=payment_id,
                amount=float(payload["amount"]),
                context=payload.get("context"),
                received_at=now,
            )
        )
        return True

    if kind == EventKind.FORM_SUBMITTED:
        submission_id = payload.get("submission_id") or new_id()
        if any(s.id == submission_id for s in lead.form_submissions):
            return False
        lead.form_submissions.append(
            FormSubmission(id=submission_id, form_id=payload["form_id"], submitted_at=now)
        )
        return True

    return False


class StageTransitionEvaluator:
    """Move leads to the next pipeline stage when a configured trigger holds.

    Triggers for a stage are checked in creation order and the first one
    satisfied wins. The stage change itself is a compare-and-set on the
    lead's current stage, so duplicate events never transition twice.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: NotificationDispatcher,
        scheduler: Optional["WorkflowScheduler"] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.scheduler = scheduler

    # ------------------------------------------------------------------
    # Configuration
    async def add_trigger(self, trigger: StageTransitionTrigger) -> StageTransitionTrigger:
        """Validate and store a stage trigger.

        All active triggers on one stage must lead to the same target stage.
        """
        stage = await self.repository.get_stage(trigger.stage_id)
        if stage is None:
            raise InvalidTriggerConfiguration(f"Stage {trigger.stage_id} does not exist")
        if trigger.target_stage_id is not None:
            if trigger.target_stage_id == trigger.stage_id:
                raise InvalidTriggerConfiguration("A trigger cannot target its own stage")
            if await self.repository.get_stage(trigger.target_stage_id) is None:
                raise InvalidTriggerConfiguration(
                    f"Target stage {trigger.target_stage_id} does not exist"
                )
        check = _REQUIRED_CONFIG.get(trigger.trigger_type)
        if check is not None and not check(trigger.config):
            raise InvalidTriggerConfiguration(
                f"{trigger.trigger_type.value} trigger is missing required configuration"
            )

        if trigger.is_active:
            target = await self._resolve_target(stage, trigger)
            for sibling in await self.repository.list_triggers(trigger.stage_id):
                if not sibling.is_active or sibling.id == trigger.id:
                    continue
                if await self._resolve_target(stage, sibling) != target:
                    raise InvalidTriggerConfiguration(
                        f"Stage {stage.name!r} already has a trigger targeting a different stage"
                    )

        await self.repository.save_trigger(trigger)
        logger.info(f"Added {trigger.trigger_type.value} trigger {trigger.id} to stage {stage.name}")
        return trigger

    async def _next_stage(self, stage: PipelineStage) -> Optional[PipelineStage]:
        for candidate in await self.repository.list_stages(stage.pipeline_id):
            if candidate.order_index > stage.order_index:
                return candidate
        return None

    async def _resolve_target(
        self, stage: PipelineStage, trigger: StageTransitionTrigger
    ) -> Optional[str]:
        if trigger.target_stage_id:
            return trigger.target_stage_id
        next_stage = await self._next_stage(stage)
        return next_stage.id if next_stage else None

    # ------------------------------------------------------------------
    # Events
    async def on_event(
        self,
        entity_id: str,
        event_kind: EventKind,
        payload: Optional[Dict[str, Any]],
        now: datetime,
    ) -> Optional[StageTransitionLog]:
        """Record a fact about the lead and fire the first satisfied trigger."""
        event_kind = EventKind(event_kind)
        payload = payload or {}
        if event_kind == EventKind.MANUAL_APPROVAL:
            return await self.approve(
                entity_id,
                payload.get("approved_by"),
                now,
                stage_id=payload.get("stage_id"),
                approval_id=payload.get("approval_id"),
            )

        lead = await self._get_lead(entity_id)
        try:
            changed = _record_fact(lead, event_kind, payload, now)
        except KeyError as exc:
            raise LeadflowError(f"{event_kind.value} event is missing '{exc.args[0]}'") from exc
        if not changed and event_kind != EventKind.TIME_ELAPSED:
            # a repeated fact was already evaluated against the stage it arrived in
            logger.info(f"Ignoring repeated {event_kind.value} event for lead {entity_id}")
            return None
        if changed:
            await self.repository.save_lead(lead)
            if self.scheduler is not None:
                await self.scheduler.on_entity_event(entity_id, now)
            lead = await self._get_lead(entity_id)
        return await self.evaluate(lead, EVENT_TRIGGER_TYPES[event_kind], now)

    async def approve(
        self,
        entity_id: str,
        approved_by: Optional[str],
        now: datetime,
        stage_id: Optional[str] = None,
        approval_id: Optional[str] = None,
    ) -> Optional[StageTransitionLog]:
        """Grant manual approval for a stage of the lead.

        ``stage_id`` names the stage the approval was issued for and defaults
        to the lead's current stage. An approval for a stage the lead has
        already left, or one whose ``approval_id`` was already recorded, is a
        no-op.
        """
        lead = await self._get_lead(entity_id)
        if lead.stage_id is None:
            return None
        if stage_id is not None and stage_id != lead.stage_id:
            logger.info(f"Approval for stage {stage_id} ignored; lead {entity_id} is in {lead.stage_id}")
            return None
        if approval_id is not None and any(a.id == approval_id for a in lead.manual_approvals):
            logger.info(f"Approval {approval_id} for lead {entity_id} already recorded")
            return None
        lead.manual_approvals.append(
            ManualApproval(
                id=approval_id, stage_id=lead.stage_id, approved_by=approved_by, approved_at=now
            )
        )
        await self.repository.save_lead(lead)
        return await self.evaluate(lead, (TriggerType.MANUAL_APPROVAL,), now)

    async def sweep_elapsed(self, now: datetime) -> List[StageTransitionLog]:
        """Check time-elapsed triggers for every lead that has a stage."""
        fired: List[StageTransitionLog] = []
        for lead in await self.repository.list_leads():
            if lead.stage_id is None:
                continue
            log = await self.evaluate(lead, (TriggerType.TIME_ELAPSED,), now)
            if log is not None:
                fired.append(log)
        return fired

    async def evaluate(
        self, lead: Lead, trigger_types: Tuple[TriggerType, ...], now: datetime
    ) -> Optional[StageTransitionLog]:
        """Fire the first active trigger of ``trigger_types`` that holds for the lead."""
        if lead.stage_id is None:
            return None
        stage = await self.repository.get_stage(lead.stage_id)
        if stage is None:
            logger.warning(f"Lead {lead.id} is in unknown stage {lead.stage_id}")
            return None

        for trigger in await self.repository.list_triggers(stage.id):
            if not trigger.is_active or trigger.trigger_type not in trigger_types:
                continue
            try:
                satisfied = _PREDICATES[trigger.trigger_type](trigger, lead, now)
            except Exception as exc:
                logger.warning(f"Trigger {trigger.id} evaluation failed closed: {exc}")
                satisfied = False
            if not satisfied:
                continue

            target = await self._resolve_target(stage, trigger)
            if target is None:
                logger.info(f"Trigger {trigger.id} satisfied but stage {stage.name} is the last one")
                return None
            return await self._transition(lead, stage, target, now, trigger=trigger)
        return None

    async def request_transition(
        self,
        entity_id: str,
        target_stage_id: str,
        now: datetime,
        triggered_by: str = "system",
    ) -> Optional[StageTransitionLog]:
        """Move a lead to ``target_stage_id`` on request, e.g. from a workflow action."""
        lead = await self._get_lead(entity_id)
        if lead.stage_id == target_stage_id:
            return None
        if await self.repository.get_stage(target_stage_id) is None:
            raise InvalidTriggerConfiguration(f"Stage {target_stage_id} does not exist")
        stage = await self.repository.get_stage(lead.stage_id) if lead.stage_id else None
        return await self._transition(lead, stage, target_stage_id, now, triggered_by=triggered_by)

    async def history(self, entity_id: str) -> List[StageTransitionLog]:
        return await self.repository.list_transition_logs(entity_id)

    # ------------------------------------------------------------------
    async def _get_lead(self, entity_id: str) -> Lead:
        lead = await self.repository.get_lead(entity_id)
        if lead is None:
            raise LeadNotFound(f"Lead {entity_id} not found")
        return lead

    async def _transition(
        self,
        lead: Lead,
        stage: Optional[PipelineStage],
        target_stage_id: str,
        now: datetime,
        trigger: Optional[StageTransitionTrigger] = None,
        triggered_by: str = "system",
    ) -> Optional[StageTransitionLog]:
        from_stage_id = stage.id if stage else None
        moved = await self.repository.compare_and_set_stage(
            lead.id, from_stage_id, target_stage_id, now
        )
        if not moved:
            logger.info(f"Lead {lead.id} already left stage {from_stage_id}; skipping transition")
            return None

        log = StageTransitionLog(
            lead_id=lead.id,
            from_stage_id=from_stage_id,
            to_stage_id=target_stage_id,
            trigger_id=trigger.id if trigger else None,
            trigger_type=trigger.trigger_type.value if trigger else None,
            triggered_by=triggered_by,
            created_at=now,
            data={"auto_triggered": trigger is not None},
        )
        await self.repository.add_transition_log(log)
        logger.info(f"Lead {lead.id} moved from {from_stage_id} to {target_stage_id}")

        if trigger is not None:
            await self._notify(lead, stage, target_stage_id, trigger, log, now)
        if self.scheduler is not None:
            await self.scheduler.on_stage_entered(lead.id, target_stage_id, now)
        return log

    async def _notify(
        self,
        lead: Lead,
        stage: Optional[PipelineStage],
        target_stage_id: str,
        trigger: StageTransitionTrigger,
        log: StageTransitionLog,
        now: datetime,
    ) -> None:
        target = await self.repository.get_stage(target_stage_id)
        from_name = stage.name if stage else "Previous Stage"
        to_name = target.name if target else "Next Stage"
        data = {
            "lead_id": lead.id,
            "from_stage_id": log.from_stage_id,
            "to_stage_id": target_stage_id,
        }

        events: List[NotificationEvent] = []
        if trigger.notify_student and lead.user_id:
            events.append(
                NotificationEvent(
                    user_id=lead.user_id,
                    type="stage_transition",
                    title="Application Progress",
                    message=f"Your application has moved to \"{to_name}\"",
                    data=data,
                    idempotency_key=f"transition:{log.id}:student",
                )
            )
        admin = (stage.admin_user_id if stage else None) or lead.assigned_to
        if trigger.notify_admin and admin:
            events.append(
                NotificationEvent(
                    user_id=admin,
                    type="stage_transition",
                    title="Stage Transition",
                    message=f"{lead.full_name or 'Unknown Lead'} has moved from \"{from_name}\" to \"{to_name}\"",
                    data=data,
                    idempotency_key=f"transition:{log.id}:admin",
                )
            )

        for event in events:
            try:
                await self.dispatcher.send(event, now)
            except Exception:
                logger.exception(f"Transition notification to {event.user_id} failed")
