"""In-memory implementation of the automation repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models import (
    Advisor,
    Channel,
    EnrollmentStatus,
    Lead,
    NotificationPreference,
    PipelineStage,
    StageTransitionTrigger,
    UserContact,
    WorkflowDefinition,
    WorkflowEnrollment,
    as_utc,
)
from .models import (
    DeliveryRecord,
    DeliveryStatus,
    Notification,
    StageTransitionLog,
    StepExecution,
    Task,
)
from .repository import AutomationRepository


class InMemoryAutomationRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each method completes without
    awaiting, so every call is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._enrollments: Dict[str, WorkflowEnrollment] = {}
        self._steps: Dict[Tuple[str, int], StepExecution] = {}
        self._leads: Dict[str, Lead] = {}
        self._stages: Dict[str, PipelineStage] = {}
        self._triggers: Dict[str, StageTransitionTrigger] = {}
        self._transition_logs: List[StageTransitionLog] = []
        self._preferences: Dict[Tuple[str, str, Channel], NotificationPreference] = {}
        self._contacts: Dict[str, UserContact] = {}
        self._notifications: List[Notification] = []
        self._deliveries: List[DeliveryRecord] = []
        self._tasks: List[Task] = []
        self._advisors: Dict[str, Advisor] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: WorkflowEnrollment
    ) -> tuple[WorkflowEnrollment, bool]:
        if enrollment.status == EnrollmentStatus.ACTIVE:
            existing = self._find_active(enrollment.workflow_id, enrollment.entity_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment, True

    async def save_enrollment(self, enrollment: WorkflowEnrollment) -> None:
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    def _find_active(self, workflow_id: str, entity_id: str) -> WorkflowEnrollment | None:
        for enrollment in self._enrollments.values():
            if (
                enrollment.workflow_id == workflow_id
                and enrollment.entity_id == entity_id
                and enrollment.status == EnrollmentStatus.ACTIVE
            ):
                return enrollment
        return None

    async def find_active_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> WorkflowEnrollment | None:
        enrollment = self._find_active(workflow_id, entity_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[WorkflowEnrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (entity_id is None or e.entity_id == entity_id)
            and (status is None or e.status == status)
        ]

    async def list_due_enrollments(self, now: datetime) -> list[WorkflowEnrollment]:
        now = as_utc(now)
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE
            and e.next_wake_at is not None
            and as_utc(e.next_wake_at) <= now
        ]

    # ------------------------------------------------------------------
    async def claim_step(self, execution: StepExecution) -> bool:
        key = (execution.enrollment_id, execution.step_index)
        if key in self._steps:
            return False
        self._steps[key] = execution.model_copy(deep=True)
        return True

    async def update_step(self, execution: StepExecution) -> None:
        key = (execution.enrollment_id, execution.step_index)
        self._steps[key] = execution.model_copy(deep=True)

    async def get_step(self, enrollment_id: str, step_index: int) -> StepExecution | None:
        step = self._steps.get((enrollment_id, step_index))
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, enrollment_id: str) -> list[StepExecution]:
        steps = [s for (eid, _), s in self._steps.items() if eid == enrollment_id]
        return [s.model_copy(deep=True) for s in sorted(steps, key=lambda s: s.started_at)]

    # ------------------------------------------------------------------
    async def save_lead(self, lead: Lead) -> None:
        self._leads[lead.id] = lead.model_copy(deep=True)

    async def get_lead(self, lead_id: str) -> Lead | None:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def list_leads(self) -> list[Lead]:
        return [lead.model_copy(deep=True) for lead in self._leads.values()]

    async def compare_and_set_stage(
        self,
        lead_id: str,
        expected_stage_id: Optional[str],
        new_stage_id: str,
        now: datetime,
    ) -> bool:
        lead = self._leads.get(lead_id)
        if lead is None or lead.stage_id != expected_stage_id:
            return False
        lead.stage_id = new_stage_id
        lead.stage_entered_at = now
        return True

    async def save_stage(self, stage: PipelineStage) -> None:
        self._stages[stage.id] = stage.model_copy(deep=True)

    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        stage = self._stages.get(stage_id)
        return stage.model_copy(deep=True) if stage else None

    async def list_stages(self, pipeline_id: str) -> list[PipelineStage]:
        stages = [s for s in self._stages.values() if s.pipeline_id == pipeline_id]
        return [s.model_copy(deep=True) for s in sorted(stages, key=lambda s: s.order_index)]

    async def save_trigger(self, trigger: StageTransitionTrigger) -> None:
        # dict preserves first insertion order, which is creation order
        self._triggers[trigger.id] = trigger.model_copy(deep=True)

    async def list_triggers(self, stage_id: str) -> list[StageTransitionTrigger]:
        return [
            t.model_copy(deep=True)
            for t in self._triggers.values()
            if t.stage_id == stage_id
        ]

    async def add_transition_log(self, log: StageTransitionLog) -> None:
        self._transition_logs.append(log.model_copy(deep=True))

    async def list_transition_logs(self, lead_id: str) -> list[StageTransitionLog]:
        return [log.model_copy(deep=True) for log in self._transition_logs if log.lead_id == lead_id]

    # ------------------------------------------------------------------
    async def get_preferences(
        self, user_id: str, notification_type: str
    ) -> list[NotificationPreference]:
        return [
            p.model_copy(deep=True)
            for (uid, ntype, _), p in self._preferences.items()
            if uid == user_id and ntype == notification_type
        ]

    async def save_preference(self, preference: NotificationPreference) -> None:
        key = (preference.user_id, preference.notification_type, preference.channel)
        self._preferences[key] = preference.model_copy(deep=True)

    async def save_contact(self, contact: UserContact) -> None:
        self._contacts[contact.user_id] = contact.model_copy(deep=True)

    async def get_contact(self, user_id: str) -> UserContact | None:
        contact = self._contacts.get(user_id)
        return contact.model_copy(deep=True) if contact else None

    async def add_notification(self, notification: Notification) -> None:
        self._notifications.append(notification.model_copy(deep=True))

    async def list_notifications(self, user_id: str) -> list[Notification]:
        return [n.model_copy(deep=True) for n in self._notifications if n.user_id == user_id]

    async def add_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries.append(record.model_copy(deep=True))

    async def has_delivery(self, idempotency_key: str, channel: Channel) -> bool:
        return any(
            d.idempotency_key == idempotency_key
            and d.channel == channel
            and d.status == DeliveryStatus.DELIVERED
            for d in self._deliveries
        )

    async def list_deliveries(self, user_id: Optional[str] = None) -> list[DeliveryRecord]:
        return [
            d.model_copy(deep=True)
            for d in self._deliveries
            if user_id is None or d.user_id == user_id
        ]

    # ------------------------------------------------------------------
    async def add_task(self, task: Task) -> None:
        self._tasks.append(task.model_copy(deep=True))

    async def list_tasks(self, lead_id: Optional[str] = None) -> list[Task]:
        return [t.model_copy(deep=True) for t in self._tasks if lead_id is None or t.lead_id == lead_id]

    async def save_advisor(self, advisor: Advisor) -> None:
        self._advisors[advisor.id] = advisor.model_copy(deep=True)

    async def list_advisors(self) -> list[Advisor]:
        return [a.model_copy(deep=True) for a in self._advisors.values()]
