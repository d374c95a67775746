"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

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
)
from .models import DeliveryRecord, Notification, StageTransitionLog, StepExecution, Task


class AutomationRepository(Protocol):
    """Protocol for automation state persistence backends."""

    # Workflows ---------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(self) -> list[WorkflowDefinition]:
        """Return all workflow definitions."""

    # Enrollments -------------------------------------------------------
    async def create_enrollment(
        self, enrollment: WorkflowEnrollment
    ) -> tuple[WorkflowEnrollment, bool]:
        """Insert an enrollment.

        Returns the stored enrollment and ``True``, or the already active
        enrollment for the same (workflow, entity) pair and ``False``.
        """

    async def save_enrollment(self, enrollment: WorkflowEnrollment) -> None:
        """Persist enrollment position and status."""

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        """Retrieve an enrollment by id."""

    async def find_active_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> WorkflowEnrollment | None:
        """Return the active enrollment for the pair, if any."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[WorkflowEnrollment]:
        """Return enrollments matching all given filters."""

    async def list_due_enrollments(self, now: datetime) -> list[WorkflowEnrollment]:
        """Return active enrollments whose ``next_wake_at`` is at or before ``now``."""

    # Step guard --------------------------------------------------------
    async def claim_step(self, execution: StepExecution) -> bool:
        """Insert the execution record unless one exists for the same step."""

    async def update_step(self, execution: StepExecution) -> None:
        """Persist an updated execution record."""

    async def get_step(
        self, enrollment_id: str, step_index: int
    ) -> StepExecution | None:
        """Retrieve the execution record for a step."""

    async def list_steps(self, enrollment_id: str) -> list[StepExecution]:
        """Return execution records ordered by step start."""

    # Leads and stages --------------------------------------------------
    async def save_lead(self, lead: Lead) -> None:
        """Insert or replace a lead snapshot."""

    async def get_lead(self, lead_id: str) -> Lead | None:
        """Retrieve a lead by id."""

    async def list_leads(self) -> list[Lead]:
        """Return all leads."""

    async def compare_and_set_stage(
        self,
        lead_id: str,
        expected_stage_id: Optional[str],
        new_stage_id: str,
        now: datetime,
    ) -> bool:
        """Move the lead to ``new_stage_id`` only if it is still in ``expected_stage_id``."""

    async def save_stage(self, stage: PipelineStage) -> None:
        """Insert or replace a pipeline stage."""

    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        """Retrieve a stage by id."""

    async def list_stages(self, pipeline_id: str) -> list[PipelineStage]:
        """Return the pipeline's stages ordered by ``order_index``."""

    async def save_trigger(self, trigger: StageTransitionTrigger) -> None:
        """Insert or replace a stage trigger, keeping creation order."""

    async def list_triggers(self, stage_id: str) -> list[StageTransitionTrigger]:
        """Return the stage's triggers in creation order."""

    async def add_transition_log(self, log: StageTransitionLog) -> None:
        """Append a stage transition to the audit log."""

    async def list_transition_logs(self, lead_id: str) -> list[StageTransitionLog]:
        """Return a lead's transitions, oldest first."""

    # Notifications -----------------------------------------------------
    async def get_preferences(
        self, user_id: str, notification_type: str
    ) -> list[NotificationPreference]:
        """Return preference rows for the (user, type) pair."""

    async def save_preference(self, preference: NotificationPreference) -> None:
        """Insert or replace a preference row."""

    async def save_contact(self, contact: UserContact) -> None:
        """Insert or replace a user's contact details."""

    async def get_contact(self, user_id: str) -> UserContact | None:
        """Retrieve contact details for a user."""

    async def add_notification(self, notification: Notification) -> None:
        """Persist an in-app notification."""

    async def list_notifications(self, user_id: str) -> list[Notification]:
        """Return a user's in-app notifications, oldest first."""

    async def add_delivery(self, record: DeliveryRecord) -> None:
        """Append a channel delivery record."""

    async def has_delivery(self, idempotency_key: str, channel: Channel) -> bool:
        """True if a delivered record exists for the key and channel."""

    async def list_deliveries(self, user_id: Optional[str] = None) -> list[DeliveryRecord]:
        """Return delivery records, optionally for one user."""

    # Tasks and advisors ------------------------------------------------
    async def add_task(self, task: Task) -> None:
        """Persist a task created by a workflow action."""

    async def list_tasks(self, lead_id: Optional[str] = None) -> list[Task]:
        """Return tasks, optionally for one lead."""

    async def save_advisor(self, advisor: Advisor) -> None:
        """Insert or replace an advisor."""

    async def list_advisors(self) -> list[Advisor]:
        """Return all advisors."""
